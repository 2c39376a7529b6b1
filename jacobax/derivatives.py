"""
Directional Derivative Providers
================================

A provider answers two questions about a residual ``F`` at a point ``u``:

- ``jvp(F, u, v)``  -> ``(F(u), J(u) @ v)``  (forward mode)
- ``vjp(F, u, w)``  -> ``w @ J(u)``          (reverse mode)

Seeds are always explicit: the caller passes the direction or cotangent,
nothing is inferred from the return type of ``F``. Providers hold no
derivative state between calls, so repeated calls never accumulate.

Classes:
    AbstractDerivativeProvider: Interface shared by all providers.
    AutoDiff:                   Exact derivatives via ``jax.jvp`` / ``jax.vjp``.
    FiniteDifference:           Forward or central difference approximation of
                                the JVP. No reverse mode.
"""

from typing import Callable, Optional, Tuple

import equinox as eqx
import jax
import jax.numpy as jnp


class AbstractDerivativeProvider(eqx.Module):
    """Interface for directional-derivative capabilities.

    Subclasses must be pure: both methods are traced under ``jax.vmap`` and
    inside Krylov loops.
    """

    def jvp(self, fn: Callable, point: jax.Array, direction: jax.Array) -> Tuple[jax.Array, jax.Array]:
        """Returns ``(fn(point), J(point) @ direction)``."""
        raise NotImplementedError

    def vjp(self, fn: Callable, point: jax.Array, vector: jax.Array) -> jax.Array:
        """Returns ``vector @ J(point)``."""
        raise NotImplementedError

    @property
    def supports_transpose(self) -> bool:
        return True


class AutoDiff(AbstractDerivativeProvider):
    """Exact directional derivatives from JAX's forward and reverse mode."""

    def jvp(self, fn, point, direction):
        return jax.jvp(fn, (point,), (direction,))

    def vjp(self, fn, point, vector):
        y, pullback = jax.vjp(fn, point)
        (out,) = pullback(jnp.asarray(vector, dtype=y.dtype))
        return out


class FiniteDifference(AbstractDerivativeProvider):
    """
    Finite-difference approximation of the Jacobian-vector product.

    - ``order=1``: ``(F(u + eps*v) - F(u)) / eps`` with ``eps = sqrt(machine eps)``.
    - ``order=2``: ``(F(u + eps*v) - F(u - eps*v)) / (2*eps)`` with
      ``eps = cbrt(machine eps / 2)``.

    The step is not scaled by ``|v|``; choosing ``epsilon`` for badly scaled
    problems is left to the caller. Points where ``F`` is only defined on one
    side (``log`` at 0) produce NaN here where AD would produce a finite value.

    Attributes:
        order: 1 for forward differences, 2 for central differences.
        epsilon: Step size. ``None`` picks the dtype-dependent default above.
    """
    order: int = eqx.field(static=True, default=1)
    epsilon: Optional[float] = eqx.field(static=True, default=None)

    def __check_init__(self):
        if self.order not in (1, 2):
            raise ValueError(f"FiniteDifference order must be 1 or 2, got {self.order}.")

    def step_size(self, dtype) -> float:
        if self.epsilon is not None:
            return self.epsilon
        eps = float(jnp.finfo(dtype).eps)
        return eps ** 0.5 if self.order == 1 else (eps / 2.0) ** (1.0 / 3.0)

    def jvp(self, fn, point, direction):
        h = self.step_size(point.dtype)
        f0 = fn(point)
        if self.order == 1:
            return f0, (fn(point + h * direction) - f0) / h
        return f0, (fn(point + h * direction) - fn(point - h * direction)) / (2.0 * h)

    def vjp(self, fn, point, vector):
        raise NotImplementedError(
            "FiniteDifference only approximates Jacobian-vector products; "
            "use AutoDiff for vector-Jacobian products."
        )

    @property
    def supports_transpose(self) -> bool:
        return False
