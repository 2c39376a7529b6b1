"""
Newton-Krylov root finding.

Solves ``F(u) = 0`` with full Newton steps ``u <- u + x`` where ``x`` solves
``J(u) x = -F(u)``. The Jacobian is never formed by default: each step wraps
``F`` at the current iterate in a :class:`~jacobax.operator.JacobianOperator`
and hands it to a matrix-free linear solver.

The loop runs eagerly in Python so that a callback can observe every iterate
and failures surface as ordinary exceptions. For a jit-compiled alternative
see :func:`jacobax.solvers.root_find.root_find`.
"""

import enum
import math
from functools import wraps
from typing import Callable, List, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp

from jacobax import logger
from jacobax.derivatives import AbstractDerivativeProvider, AutoDiff
from jacobax.errors import DimensionMismatch, SolverDiverged
from jacobax.operator import JacobianOperator
from jacobax.residual import ResidualFunction, as_residual
from jacobax.solvers.linear import GMRESSolver, LinearSolver, is_successful


class NewtonStatus(enum.Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    DIVERGED = "diverged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"


class NewtonResult(NamedTuple):
    """
    Outcome of a Newton-Krylov solve.

    Attributes:
        value: The final iterate, in the shape of the initial guess.
        status: Terminal state of the iteration.
        num_steps: Outer Newton steps taken.
        residual_norm: ``|F(value)|``.
        initial_residual_norm: ``|F(u0)|``.
        residual_history: Residual norm after each step, starting with ``|F(u0)|``.
        linear_failures: Steps whose linear solve missed its tolerance.
        reason: Why the solve stopped, when it did not converge.
    """
    value: jax.Array
    status: NewtonStatus
    num_steps: int
    residual_norm: float
    initial_residual_norm: float
    residual_history: List[float]
    linear_failures: int = 0
    reason: Optional[str] = None

    @property
    def solved(self) -> bool:
        return self.status is NewtonStatus.CONVERGED


def lift_scalar(fn: Callable) -> Callable:
    """Wraps a scalar residual ``f(x) -> y`` to act on length-1 vectors."""

    @wraps(fn)
    def lifted(u: jax.Array) -> jax.Array:
        return jnp.reshape(jnp.asarray(fn(u[0])), (-1,))

    return lifted


class NewtonKrylovSolver(eqx.Module):
    """
    Newton's method with a matrix-free linear solve per step.

    Converges when ``|F(u)| <= tol_abs + tol_rel * |F(u0)|`` (2-norm).
    Stops with ``DIVERGED`` when the residual becomes NaN or Inf and with
    ``MAX_ITER_EXCEEDED`` after ``max_niter`` steps. Steps are never damped.

    Attributes:
        tol_rel (float): Relative tolerance, scaled by the initial residual norm.
        tol_abs (float): Absolute tolerance.
        max_niter (int): Maximum number of outer Newton steps. At most
            ``max_niter`` steps are taken: the count is checked before a step,
            so ``MAX_ITER_EXCEEDED`` is reported once ``max_niter`` steps have
            failed to converge, not after a further step.
        linear_solver (LinearSolver): Strategy for ``J x = -F(u)``.
        provider (AbstractDerivativeProvider): Supplies the JVPs (and VJPs).
        throw (bool): Raise :class:`~jacobax.errors.SolverDiverged` on divergence.
            If False, the divergent result is returned instead.
    """
    tol_rel: float = 1e-6
    tol_abs: float = 1e-12
    max_niter: int = eqx.field(static=True, default=50)
    linear_solver: LinearSolver = eqx.field(default_factory=GMRESSolver)
    provider: AbstractDerivativeProvider = eqx.field(default_factory=AutoDiff)
    throw: bool = eqx.field(static=True, default=True)

    def solve(self,
              fn: Callable,
              u0: jax.Array,
              callback: Optional[Callable[[jax.Array], object]] = None,
              in_place: Optional[bool] = None) -> NewtonResult:
        """
        Finds ``u`` with ``F(u) = 0`` starting from ``u0``.

        Args:
            fn: The residual, pure ``fn(u)`` or in-place ``fn(out, u)``. For a
                scalar ``u0`` it is called with scalars.
            u0: Initial guess, a vector or a scalar.
            callback: Called with the iterate before the first step and after
                every step. Its return value is ignored.
            in_place: Force the residual form instead of inferring it.
                Scalar problems are always pure.

        Returns:
            NewtonResult: The final iterate and how the iteration ended.

        Raises:
            SolverDiverged: If the residual becomes non-finite and ``throw`` is True.
            DimensionMismatch: If the system is non-square and the linear solver
                cannot handle it.
            ValueError: If ``in_place=True`` is given with a scalar ``u0``.
        """
        u0 = jnp.asarray(u0)
        if not jnp.issubdtype(u0.dtype, jnp.inexact):
            u0 = u0.astype(jnp.result_type(float))
        scalar = u0.ndim == 0
        if scalar:
            if in_place:
                raise ValueError("In-place residuals need a vector initial guess; got a scalar.")
            residual = as_residual(lift_scalar(fn), in_place=False)
            u = jnp.reshape(u0, (1,))
        elif u0.ndim == 1:
            u = u0
            residual = self._residual(fn, u, in_place)
        else:
            raise DimensionMismatch(f"The initial guess must be a scalar or a vector, got shape {tuple(u0.shape)}.")

        def report(x: jax.Array) -> None:
            if callback is not None:
                callback(jnp.reshape(x, ()) if scalar else x)

        # 1. Initial residual
        r = residual(u)
        m, n = r.shape[0], u.shape[0]
        if m != n and not self.linear_solver.allows_rectangular:
            raise DimensionMismatch(
                f"The residual has length {m} but the state has length {n}; "
                f"{type(self.linear_solver).__name__} needs a square system."
            )
        r_norm = float(jnp.linalg.norm(r))
        r0_norm = r_norm
        tol = self.tol_rel * r0_norm + self.tol_abs
        history = [r_norm]
        report(u)
        logger.debug(f"Newton-Krylov start: |F(u0)| = {r0_norm:.3e}, tol = {tol:.3e}")

        status = NewtonStatus.RUNNING
        reason = None
        num_steps = 0
        linear_failures = 0
        if not math.isfinite(r_norm):
            status = NewtonStatus.DIVERGED
            reason = f"Initial residual norm is {r_norm}"

        # 2. Newton loop
        while status is NewtonStatus.RUNNING:
            if r_norm <= tol:
                status = NewtonStatus.CONVERGED
                break
            if num_steps >= self.max_niter:
                status = NewtonStatus.MAX_ITER_EXCEEDED
                reason = f"No convergence after {num_steps} steps (|F(u)| = {r_norm:.3e} > {tol:.3e})"
                break

            # J(u) x = -F(u)
            op = JacobianOperator(residual, r, u, provider=self.provider)
            sol = self.linear_solver.solve(op, -r)
            if not is_successful(sol):
                linear_failures += 1
                logger.warning(f"Linear solve in Newton step {num_steps + 1} missed its tolerance ({sol.result})")

            u = u + sol.value
            r = residual(u)
            r_norm = float(jnp.linalg.norm(r))
            num_steps += 1
            history.append(r_norm)
            report(u)
            logger.debug(f"Newton step {num_steps}: |F(u)| = {r_norm:.3e}")

            if not math.isfinite(r_norm):
                status = NewtonStatus.DIVERGED
                reason = f"Solver blew up: residual norm is {r_norm} after step {num_steps}"

        result = NewtonResult(
            value=jnp.reshape(u, ()) if scalar else u,
            status=status,
            num_steps=num_steps,
            residual_norm=r_norm,
            initial_residual_norm=r0_norm,
            residual_history=history,
            linear_failures=linear_failures,
            reason=reason,
        )

        if status is NewtonStatus.CONVERGED:
            logger.info(f"Newton-Krylov converged in {num_steps} steps, |F(u)| = {r_norm:.3e}")
        elif status is NewtonStatus.MAX_ITER_EXCEEDED:
            logger.warning(f"Newton-Krylov: {reason}")
        else:
            logger.warning(f"Newton-Krylov diverged: {reason}")
            if self.throw:
                raise SolverDiverged(reason, result=result)
        return result

    @staticmethod
    def _residual(fn: Callable, u: jax.Array, in_place: Optional[bool]) -> ResidualFunction:
        residual = as_residual(fn, in_place=in_place)
        if residual.in_place and residual.out_size is None:
            # Square system unless told otherwise
            residual = as_residual(residual, out_size=u.shape[0])
        return residual


def newton_krylov(fn: Callable,
                  u0: jax.Array,
                  *,
                  tol_rel: float = 1e-6,
                  tol_abs: float = 1e-12,
                  max_niter: int = 50,
                  callback: Optional[Callable[[jax.Array], object]] = None,
                  linear_solver: Optional[LinearSolver] = None,
                  provider: Optional[AbstractDerivativeProvider] = None,
                  throw: bool = True,
                  in_place: Optional[bool] = None) -> NewtonResult:
    """Solves ``F(u) = 0`` with Newton-Krylov.

    Functional front end to :class:`NewtonKrylovSolver`; see there for the
    meaning of each option.

    Example::

        result = newton_krylov(lambda x: x**2 - 2, 37.0)
        result.value   # ~1.41421
        result.solved  # True
    """
    solver = NewtonKrylovSolver(
        tol_rel=tol_rel,
        tol_abs=tol_abs,
        max_niter=max_niter,
        linear_solver=GMRESSolver() if linear_solver is None else linear_solver,
        provider=AutoDiff() if provider is None else provider,
        throw=throw,
    )
    return solver.solve(fn, u0, callback=callback, in_place=in_place)
