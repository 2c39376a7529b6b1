"""
Matrix-Free Jacobian Operator
=============================

:class:`JacobianOperator` represents "the Jacobian of ``F`` at ``u``" as a
linear operator. It never forms the matrix: every product is one
directional-derivative evaluation through a provider.

There are two entry points for each direction:

- ``mv`` / ``rmv`` are pure and traceable. Krylov solvers call them inside
  ``jax.lax`` loops and ``jax.vmap``.
- ``apply`` / ``apply_transpose`` are the eager, user-facing versions. They
  check dimensions and reject non-finite results.

The operator is an immutable Equinox module over immutable JAX arrays, so it
carries no scratch state between calls and is safe to share.
"""

from typing import Callable, Optional, Tuple, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import lineax as lx
import numpy as np

from jacobax.derivatives import AbstractDerivativeProvider, AutoDiff
from jacobax.errors import DimensionMismatch, InadmissibleValue, NonFiniteResult
from jacobax.residual import ResidualFunction, as_residual


def _as_float_array(x) -> jax.Array:
    x = jnp.asarray(x)
    if not jnp.issubdtype(x.dtype, jnp.inexact):
        x = x.astype(jnp.result_type(float))
    return x


def _check_length(vec: jax.Array, expected: int, what: str) -> None:
    if vec.ndim != 1 or vec.shape[0] != expected:
        raise DimensionMismatch(
            f"{what} expects a vector of length {expected}, got shape {tuple(vec.shape)}."
        )


def _check_finite(result: jax.Array, what: str, *inputs: jax.Array) -> None:
    if bool(jnp.all(jnp.isfinite(result))):
        return
    bad = int(np.sum(~np.isfinite(np.asarray(result))))
    if all(bool(jnp.all(jnp.isfinite(x))) for x in inputs):
        raise InadmissibleValue(
            f"{what} produced {bad} non-finite entries although the residual and its inputs "
            "are finite: the derivative is undefined at this point."
        )
    raise NonFiniteResult(f"{what} produced {bad} non-finite entries.")


class JacobianOperator(eqx.Module):
    """
    The Jacobian ``J = dF/du`` at ``u``, applied matrix-free.

    Attributes:
        fn (ResidualFunction): The residual, normalised to ``u -> F(u)``.
            Shared with the caller and never modified.
        out (jax.Array): Output template of length M. Only its length is used;
            callers typically pass the current residual.
        u (jax.Array): Linearisation point of length N. Held by reference.
        provider (AbstractDerivativeProvider): Supplies JVPs and VJPs.

    Example::

        def G(u):
            return jnp.array([u[0]**4 - 3, jnp.exp(u[1]) - 2, jnp.log(u[0]) - u[1]**2])

        op = JacobianOperator(G, jnp.zeros(3), jnp.array([1.0, 1.0]))
        op.apply(jnp.array([1.0, 0.0]))       # first column of J
        op.apply_transpose(jnp.array([1.0, 0.0, 0.0]))  # first row of J
    """
    fn: ResidualFunction
    out: jax.Array
    u: jax.Array
    provider: AbstractDerivativeProvider

    def __init__(self,
                 fn: Callable,
                 out: jax.Array,
                 u: jax.Array,
                 provider: Optional[AbstractDerivativeProvider] = None,
                 in_place: Optional[bool] = None):
        u = _as_float_array(u)
        out = jnp.asarray(out)
        if u.ndim != 1:
            raise DimensionMismatch(f"The linearisation point must be a vector, got shape {tuple(u.shape)}.")
        if out.ndim != 1:
            raise DimensionMismatch(f"The output buffer must be a vector, got shape {tuple(out.shape)}.")

        self.fn = as_residual(fn, out_size=out.shape[0], in_place=in_place)
        self.out = out.astype(u.dtype)
        self.u = u
        self.provider = AutoDiff() if provider is None else provider

    # --- Shape information ---
    def size(self) -> Tuple[int, int]:
        """Returns ``(M, N)``: residual length and input length."""
        return (self.out.shape[0], self.u.shape[0])

    @property
    def shape(self) -> Tuple[int, int]:
        return self.size()

    @property
    def dtype(self):
        return self.u.dtype

    def in_structure(self) -> jax.ShapeDtypeStruct:
        return jax.ShapeDtypeStruct(self.u.shape, self.u.dtype)

    def out_structure(self) -> jax.ShapeDtypeStruct:
        return jax.ShapeDtypeStruct(self.out.shape, self.u.dtype)

    # --- Traceable products ---
    def mv(self, v: jax.Array) -> jax.Array:
        """J @ v via a single forward-mode evaluation."""
        _, jv = self.provider.jvp(self.fn, self.u, v)
        return jv

    def rmv(self, w: jax.Array) -> jax.Array:
        """w @ J via a single reverse-mode evaluation."""
        return self.provider.vjp(self.fn, self.u, w)

    # --- Eager, validated products ---
    def apply(self, v: jax.Array) -> jax.Array:
        """Computes ``J @ v``.

        Raises:
            DimensionMismatch: If ``v`` is not a vector of length N.
            InadmissibleValue: If ``F(u)`` is finite but the product is not.
            NonFiniteResult: If the product contains NaN or Inf otherwise.
        """
        v = jnp.asarray(v, dtype=self.dtype)
        _check_length(v, self.size()[1], "JacobianOperator.apply")
        fu, jv = self.provider.jvp(self.fn, self.u, v)
        _check_finite(jv, "JacobianOperator.apply", fu, self.u, v)
        return jv

    def apply_transpose(self, w: jax.Array) -> jax.Array:
        """Computes ``w @ J``.

        ``w`` is copied into a fresh JAX array before differentiation, so a
        caller-owned NumPy buffer is never read and written at once.

        Raises:
            DimensionMismatch: If ``w`` is not a vector of length M.
            InadmissibleValue: If ``F(u)`` is finite but the product is not.
            NonFiniteResult: If the product contains NaN or Inf otherwise.
            NotImplementedError: If the provider has no reverse mode.
        """
        if not self.supports_transpose:
            raise NotImplementedError(
                f"{type(self.provider).__name__} has no vector-Jacobian product; use AutoDiff for apply_transpose."
            )
        w = jnp.array(w, dtype=self.dtype, copy=True)
        _check_length(w, self.size()[0], "JacobianOperator.apply_transpose")
        wj = self.rmv(w)
        _check_finite(wj, "JacobianOperator.apply_transpose", self.fn(self.u), self.u, w)
        return wj

    @property
    def supports_transpose(self) -> bool:
        """Whether ``rmv`` / ``apply_transpose`` are available."""
        return self.provider.supports_transpose

    # --- Views and conversions ---
    @property
    def T(self) -> "TransposedJacobianOperator":
        return TransposedJacobianOperator(self)

    def as_lineax(self) -> lx.FunctionLinearOperator:
        """Wraps ``mv`` as a Lineax operator for use with Lineax solvers."""
        return lx.FunctionLinearOperator(self.mv, self.in_structure())

    def as_matrix(self) -> jax.Array:
        """Materialises the dense Jacobian (N operator applications)."""
        from jacobax.assembly import assemble_dense
        return assemble_dense(self)


class TransposedJacobianOperator(eqx.Module):
    """The transpose ``J^T`` of a :class:`JacobianOperator`."""
    parent: JacobianOperator

    def size(self) -> Tuple[int, int]:
        m, n = self.parent.size()
        return (n, m)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.size()

    @property
    def dtype(self):
        return self.parent.dtype

    def in_structure(self) -> jax.ShapeDtypeStruct:
        return self.parent.out_structure()

    def out_structure(self) -> jax.ShapeDtypeStruct:
        return self.parent.in_structure()

    def mv(self, w: jax.Array) -> jax.Array:
        return self.parent.rmv(w)

    def rmv(self, v: jax.Array) -> jax.Array:
        return self.parent.mv(v)

    def apply(self, w: jax.Array) -> jax.Array:
        return self.parent.apply_transpose(w)

    def apply_transpose(self, v: jax.Array) -> jax.Array:
        return self.parent.apply(v)

    @property
    def supports_transpose(self) -> bool:
        return self.parent.supports_transpose

    def as_lineax(self) -> lx.FunctionLinearOperator:
        return lx.FunctionLinearOperator(self.mv, self.in_structure())

    @property
    def T(self) -> JacobianOperator:
        return self.parent


AnyJacobianOperator = Union[JacobianOperator, TransposedJacobianOperator]
