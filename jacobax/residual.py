import inspect
from typing import Callable, Optional

import equinox as eqx
import jax
import jax.numpy as jnp


def _count_required_positional(fn: Callable) -> Optional[int]:
    """Number of positional parameters without defaults, or None if unknown."""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    kinds = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    return sum(
        1 for p in sig.parameters.values()
        if p.kind in kinds and p.default is inspect.Parameter.empty
    )


class ResidualFunction(eqx.Module):
    """
    A residual ``F`` normalised to the pure form ``u -> F(u)``.

    Two user forms are accepted:

    - pure: ``fn(u)`` returns the residual;
    - in-place: ``fn(out, u)`` receives a zero-filled buffer of length
      ``out_size`` and returns it with the residual written in, e.g.
      ``out.at[0].set(u[0] ** 2 - 2)``. JAX arrays cannot be mutated, so the
      updated buffer must be returned.

    Attributes:
        fn: The user function.
        in_place: Whether ``fn`` uses the in-place (destination-passing) form.
        out_size: Length of the output buffer handed to in-place functions.
    """
    fn: Callable = eqx.field(static=True)
    in_place: bool = eqx.field(static=True, default=False)
    out_size: Optional[int] = eqx.field(static=True, default=None)

    def __check_init__(self):
        if self.in_place and self.out_size is None:
            raise ValueError("In-place residual functions need `out_size` to allocate their output.")

    def __call__(self, u: jax.Array) -> jax.Array:
        if not self.in_place:
            return jnp.asarray(self.fn(u))

        out = jnp.zeros(self.out_size, dtype=u.dtype)
        result = self.fn(out, u)
        if result is None:
            raise TypeError(
                f"In-place residual {getattr(self.fn, '__name__', self.fn)!r} returned None. "
                "JAX arrays are immutable: write with `out.at[i].set(...)` and return `out`."
            )
        return jnp.asarray(result)


def as_residual(fn: Callable,
                out_size: Optional[int] = None,
                in_place: Optional[bool] = None) -> ResidualFunction:
    """Wraps ``fn`` as a :class:`ResidualFunction`.

    The form is inferred from the signature when ``in_place`` is None: two
    required positional parameters mean ``fn(out, u)``, anything else means
    ``fn(u)``.

    Args:
        fn: A pure or in-place residual, or an existing ``ResidualFunction``
            (returned unchanged unless it lacks an ``out_size`` that is now known).
        out_size: Residual length M. Required for in-place functions.
        in_place: Force the form instead of inferring it.

    Returns:
        ResidualFunction: The normalised residual.
    """
    if isinstance(fn, ResidualFunction):
        if fn.in_place and fn.out_size is None and out_size is not None:
            return ResidualFunction(fn.fn, in_place=True, out_size=out_size)
        return fn

    if in_place is None:
        in_place = _count_required_positional(fn) == 2

    return ResidualFunction(fn, in_place=in_place, out_size=out_size if in_place else None)
