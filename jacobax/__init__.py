"""jacobax: matrix-free Jacobian operators and Newton-Krylov solvers in JAX."""
import logging

logger = logging.getLogger("jacobax")
logger.addHandler(logging.NullHandler())

from jacobax.assembly import assemble_colored, assemble_dense
from jacobax.derivatives import AbstractDerivativeProvider, AutoDiff, FiniteDifference
from jacobax.errors import (
    ColoringInvariantViolated,
    DimensionMismatch,
    InadmissibleValue,
    JacobaxError,
    NonFiniteResult,
    SolverDiverged,
)
from jacobax.operator import JacobianOperator
from jacobax.residual import ResidualFunction, as_residual
from jacobax.sparsity import (
    ColumnColoring,
    SparsityCache,
    SparsityPattern,
    detect_sparsity,
    greedy_coloring,
)
from jacobax.solvers import (
    NewtonKrylovSolver,
    NewtonResult,
    NewtonStatus,
    get_linear_solver,
    newton_krylov,
    root_find,
)
