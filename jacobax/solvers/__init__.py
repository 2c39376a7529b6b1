"""Linear and nonlinear solvers."""

from .linear import (
    BiCGStabSolver,
    DenseDirectSolver,
    GMRESSolver,
    LinearSolver,
    NormalCGSolver,
    SparseDirectSolver,
    backends,
    get_linear_solver,
)
from .newton import NewtonKrylovSolver, NewtonResult, NewtonStatus, newton_krylov
from .root_find import root_find

__all__ = [
    "BiCGStabSolver",
    "DenseDirectSolver",
    "GMRESSolver",
    "LinearSolver",
    "NewtonKrylovSolver",
    "NewtonResult",
    "NewtonStatus",
    "NormalCGSolver",
    "SparseDirectSolver",
    "backends",
    "get_linear_solver",
    "newton_krylov",
    "root_find",
]
