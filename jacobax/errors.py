"""Exception types raised by jacobax.

Every error derives from :class:`JacobaxError` and from the builtin exception
that best describes it, so callers can catch either.
"""

from typing import Any, Optional


class JacobaxError(Exception):
    """Base class for all jacobax errors."""


class DimensionMismatch(JacobaxError, ValueError):
    """A vector's length disagrees with the operator or system it is used with."""


class NonFiniteResult(JacobaxError, FloatingPointError):
    """An operator application produced NaN or Inf."""


class InadmissibleValue(NonFiniteResult):
    """The residual is finite at the point but its derivative is not.

    Typical causes are ``sqrt`` or ``log`` evaluated at exactly zero. The
    derivative does not exist there, so no amount of solver tuning helps:
    move the evaluation point.
    """


class SolverDiverged(JacobaxError, RuntimeError):
    """The Newton residual became NaN or Inf.

    Attributes:
        result: The :class:`~jacobax.solvers.newton.NewtonResult` at the point
            of failure, so the last iterate is still available for inspection.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class ColoringInvariantViolated(JacobaxError, ValueError):
    """Two columns sharing a colour have overlapping nonzero rows."""
