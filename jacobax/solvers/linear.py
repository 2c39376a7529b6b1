"""
Linear Solver Strategies
========================

This module defines the interchangeable linear solvers used for the Newton
step ``J x = b``. Every strategy takes a :class:`~jacobax.operator.JacobianOperator`
and a right-hand side and returns a ``lineax.Solution``, so the Newton loop
never needs to know whether the matrix was formed.

Architecture
------------
Matrix-free strategies only call ``operator.mv`` (and ``operator.rmv`` for
the normal-equation solver). Direct strategies materialise the Jacobian
through :mod:`jacobax.assembly` first.

Classes:
    LinearSolver:       Abstract base defining the interface and tolerances.
    GMRESSolver:        Lineax GMRES. Default. Square systems.
    BiCGStabSolver:     JAX's BiCGStab. Square systems, short recurrences.
    NormalCGSolver:     CG on J^T J x = J^T b. Any shape, needs reverse mode.
    DenseDirectSolver:  Dense assembly + LU (least squares if non-square).
    SparseDirectSolver: Colored sparse assembly + SuperLU on the host.

A solve that misses its tolerance is not an error: the returned solution
carries ``lineax.RESULTS.max_steps_reached`` and the caller decides.
"""

from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import lineax as lx
import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from jacobax import logger
from jacobax.assembly import assemble_dense
from jacobax.errors import DimensionMismatch
from jacobax.operator import AnyJacobianOperator, JacobianOperator
from jacobax.sparsity import SparsityCache


def _solution(x: jax.Array, converged: bool, stats: Optional[dict] = None) -> lx.Solution:
    result = lx.RESULTS.successful if converged else lx.RESULTS.max_steps_reached
    return lx.Solution(value=x, result=result, state=None, stats={} if stats is None else stats)


def is_successful(solution: lx.Solution) -> bool:
    """True if a linear solve reached its tolerance."""
    return bool(solution.result == lx.RESULTS.successful)


@eqx.filter_jit
def _lineax_solve(operator: AnyJacobianOperator, vector: jax.Array, solver: lx.AbstractLinearSolver, options: dict) -> lx.Solution:
    sol = lx.linear_solve(operator.as_lineax(), vector, solver, options=options, throw=False)
    # The solver state holds the closure-converted operator; don't return it
    return lx.Solution(value=sol.value, result=sol.result, state=None, stats=sol.stats)


# ==============================================================================
# 1. ABSTRACT BASE CLASS
# ==============================================================================

class LinearSolver(eqx.Module):
    """
    Abstract base class for all linear solver strategies.

    Attributes:
        rtol (float): Relative tolerance on the residual ``|J x - b|``.
        atol (float): Absolute tolerance on the residual.
        max_steps (int | None): Iteration cap for iterative methods.
            ``None`` uses the method's own default.
    """
    rtol: float = 1e-8
    atol: float = 1e-12
    max_steps: Optional[int] = eqx.field(static=True, default=None)

    # Whether non-square operators are supported (least-squares solution).
    allows_rectangular = False
    # Whether the strategy calls ``operator.rmv``.
    requires_transpose = False

    def solve(self, operator: AnyJacobianOperator, vector: jax.Array, x0: Optional[jax.Array] = None) -> lx.Solution:
        """
        Solves ``operator @ x = vector``.

        Args:
            operator: A ``JacobianOperator`` or its transpose.
            vector: Right-hand side of length M.
            x0: Initial guess of length N for iterative strategies.

        Returns:
            lineax.Solution: ``value`` holds x; ``result`` is ``successful`` or
            ``max_steps_reached``.
        """
        raise NotImplementedError

    def check_operator(self, operator: AnyJacobianOperator, vector: jax.Array) -> None:
        m, n = operator.size()
        if vector.shape != (m,):
            raise DimensionMismatch(f"Right-hand side has shape {tuple(vector.shape)}, expected ({m},).")
        if m != n and not self.allows_rectangular:
            raise DimensionMismatch(
                f"{type(self).__name__} needs a square operator, got {m} x {n}. "
                "Use NormalCGSolver or DenseDirectSolver for least-squares problems."
            )
        if self.requires_transpose and not operator.supports_transpose:
            raise ValueError(
                f"{type(self).__name__} needs vector-Jacobian products, which the operator's "
                "derivative provider does not support. Use AutoDiff or a forward-only strategy."
            )

    def _converged(self, operator: AnyJacobianOperator, x: jax.Array, vector: jax.Array) -> bool:
        res = jnp.linalg.norm(operator.mv(x) - vector)
        return bool(res <= self.atol + self.rtol * jnp.linalg.norm(vector))


# ==============================================================================
# 2. MATRIX-FREE KRYLOV SOLVERS
# ==============================================================================

class GMRESSolver(LinearSolver):
    """
    Restarted GMRES from Lineax, applied to the operator through ``mv`` only.

    Best For:
        - General nonsymmetric Jacobians.
        - The default Newton-Krylov inner solve.

    Attributes:
        restart (int): Krylov subspace size before restarting.
    """
    restart: int = eqx.field(static=True, default=20)

    def solve(self, operator, vector, x0=None):
        vector = jnp.asarray(vector, dtype=operator.dtype)
        self.check_operator(operator, vector)
        gmres = lx.GMRES(rtol=self.rtol, atol=self.atol, restart=self.restart, max_steps=self.max_steps)
        options = {} if x0 is None else {"y0": jnp.asarray(x0, dtype=operator.dtype)}
        sol = _lineax_solve(operator, vector, gmres, options)
        logger.debug(f"GMRES finished: {sol.result}, stats = {sol.stats}")
        return sol


class BiCGStabSolver(LinearSolver):
    """
    JAX's iterative BiCGStab. Convergence is judged from the true residual
    after the solve, since ``jax.scipy`` does not report it.
    """

    def solve(self, operator, vector, x0=None):
        vector = jnp.asarray(vector, dtype=operator.dtype)
        self.check_operator(operator, vector)
        x, _ = jax.scipy.sparse.linalg.bicgstab(
            operator.mv, vector, x0=x0, tol=self.rtol, atol=self.atol, maxiter=self.max_steps
        )
        converged = self._converged(operator, x, vector)
        logger.debug(f"BiCGStab finished: converged = {converged}")
        return _solution(x, converged)


class NormalCGSolver(LinearSolver):
    """
    Conjugate gradients on the normal equations ``J^T J x = J^T b``.

    Uses one forward and one reverse product per iteration, so the operator's
    provider must support reverse mode. For non-square ``J`` this yields the
    least-squares solution, which turns the Newton loop into Gauss-Newton.
    The condition number is squared; prefer GMRES for square systems.
    """
    allows_rectangular = True
    requires_transpose = True

    def solve(self, operator, vector, x0=None):
        vector = jnp.asarray(vector, dtype=operator.dtype)
        self.check_operator(operator, vector)

        def normal_matvec(x: jax.Array) -> jax.Array:
            return operator.rmv(operator.mv(x))

        rhs = operator.rmv(vector)
        x, _ = jax.scipy.sparse.linalg.cg(
            normal_matvec, rhs, x0=x0, tol=self.rtol, atol=self.atol, maxiter=self.max_steps
        )
        res = jnp.linalg.norm(normal_matvec(x) - rhs)
        converged = bool(res <= self.atol + self.rtol * jnp.linalg.norm(rhs))
        logger.debug(f"Normal-equation CG finished: converged = {converged}")
        return _solution(x, converged)


# ==============================================================================
# 3. DIRECT SOLVERS (ASSEMBLED JACOBIAN)
# ==============================================================================

class DenseDirectSolver(LinearSolver):
    """
    Assembles the dense Jacobian (N JVPs) and solves with LU.

    Best For:
        - Small systems (N < a few thousand).
        - Checking an iterative solve against an exact one.

    Non-square systems are solved in the least-squares sense.
    """
    allows_rectangular = True

    def solve(self, operator, vector, x0=None):
        vector = jnp.asarray(vector, dtype=operator.dtype)
        self.check_operator(operator, vector)
        J = assemble_dense(operator)
        m, n = operator.size()
        if m == n:
            x = jnp.linalg.solve(J, vector)
        else:
            x, *_ = jnp.linalg.lstsq(J, vector)
        converged = bool(jnp.all(jnp.isfinite(x)))
        return _solution(x, converged)


class SparseDirectSolver(LinearSolver):
    """
    Assembles the Jacobian by column coloring and solves with SciPy's SuperLU.

    The coloring is cached per residual and region in ``cache`` and reused
    across Newton iterations, so each solve costs ``ncolors`` JVPs plus the
    factorisation. The default cache detects with ``method="sampled"``, which
    keeps entries that happen to vanish at the first iterate.
    Runs on the host (CPU); not traceable.

    Attributes:
        cache (SparsityCache): Pattern/coloring cache shared across solves.
    """
    cache: SparsityCache = eqx.field(static=True, default_factory=SparsityCache)

    def solve(self, operator, vector, x0=None):
        if not isinstance(operator, JacobianOperator):
            raise TypeError(f"{type(self).__name__} detects sparsity from the residual and needs a JacobianOperator.")
        vector = jnp.asarray(vector, dtype=operator.dtype)
        self.check_operator(operator, vector)
        J = self.cache.assemble(operator)

        # SuperLU needs mutable host arrays in CSC form
        indices = np.array(J.indices, copy=True)
        data = np.array(J.data, copy=True)
        A = scipy.sparse.coo_matrix((data, (indices[:, 0], indices[:, 1])), shape=J.shape).tocsc()
        x = scipy.sparse.linalg.spsolve(A, np.array(vector, copy=True))
        x = jnp.asarray(np.atleast_1d(x), dtype=operator.dtype)
        converged = bool(jnp.all(jnp.isfinite(x)))
        return _solution(x, converged)


backends = {'default': GMRESSolver,
            'gmres': GMRESSolver,
            'bicgstab': BiCGStabSolver,
            'normal_cg': NormalCGSolver,
            'dense': DenseDirectSolver,
            'sparse': SparseDirectSolver}


def get_linear_solver(backend: str = 'default', **kwargs: Any) -> LinearSolver:
    """Builds a linear solver strategy by name.

    Args:
        backend (str, optional): One of 'gmres', 'bicgstab', 'normal_cg',
            'dense' and 'sparse'. Defaults to 'default', which is GMRES.
        **kwargs: Forwarded to the strategy (e.g. ``rtol``, ``restart``).

    Returns:
        LinearSolver: The configured strategy.

    Raises:
        ValueError: If the backend is not supported.
    """
    solver_class = backends.get(backend)
    if solver_class is None:
        raise ValueError(
            f"Unknown backend: '{backend}'. "
            f"Available backends are {list(backends.keys())}"
        )
    return solver_class(**kwargs)
