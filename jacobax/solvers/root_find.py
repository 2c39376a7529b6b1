"""Jit-compiled Newton-Krylov via Optimistix.

:func:`root_find` is the traceable counterpart of
:class:`~jacobax.solvers.newton.NewtonKrylovSolver`: the whole iteration is
one compiled ``lax.while_loop``, the Newton step is solved matrix-free by
Lineax GMRES on Optimistix's Jacobian operator, and termination follows
Optimistix's Cauchy criterion (small step and small residual) instead of the
relative-residual test. There is no per-iterate callback.
"""

from typing import Callable, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import lineax as lx
import optimistix as optx

from jacobax.residual import as_residual


@eqx.filter_jit
def _root_find(fn, u0, solver, max_steps, throw):
    return optx.root_find(lambda y, args: fn(y), solver, u0, max_steps=max_steps, throw=throw)


def root_find(fn: Callable,
              u0: jax.Array,
              rtol: float = 1e-8,
              atol: float = 1e-8,
              max_steps: int = 50,
              linear_solver: Optional[lx.AbstractLinearSolver] = None,
              throw: bool = True,
              in_place: Optional[bool] = None) -> optx.Solution:
    """Solves ``F(u) = 0`` with Optimistix's Newton method and a Krylov inner solve.

    Args:
        fn: The residual, pure ``fn(u)`` or in-place ``fn(out, u)`` (square
            systems only).
        u0: Initial guess vector.
        rtol: Relative tolerance of the Cauchy termination test.
        atol: Absolute tolerance of the Cauchy termination test.
        max_steps: Maximum number of Newton steps.
        linear_solver: A Lineax solver for the Newton step. Defaults to
            ``lx.GMRES`` with tolerances a hundred times tighter than the outer ones.
        throw: Raise a runtime error if the solve fails, as in
            ``optimistix.root_find``. If False, inspect ``solution.result``.
        in_place: Force the residual form instead of inferring it.

    Returns:
        optimistix.Solution: ``value`` holds the root, ``result`` the outcome
        and ``stats["num_steps"]`` the number of steps.
    """
    u0 = jnp.asarray(u0)
    if not jnp.issubdtype(u0.dtype, jnp.inexact):
        u0 = u0.astype(jnp.result_type(float))
    residual = as_residual(fn, out_size=u0.shape[0] if u0.ndim else None, in_place=in_place)

    if linear_solver is None:
        linear_solver = lx.GMRES(rtol=rtol * 1e-2, atol=atol * 1e-2)
    solver = optx.Newton(rtol=rtol, atol=atol, linear_solver=linear_solver)

    return _root_find(residual, u0, solver, max_steps, throw)
