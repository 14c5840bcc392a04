__all__ = [
    "PoreFlowError",
    "ValidationError",
    "PreconditionerError",
    "SolverError",
    "DegenerateSystemError",
    "TimingError",
]


class PoreFlowError(Exception):
    """Base class for all poreflow-related errors."""

    pass


class ValidationError(PoreFlowError, ValueError):
    """Raised when input data or configuration fails validation checks."""

    pass


class SolverError(PoreFlowError):
    """Raised when a solver fails to converge or yields an unusable solution."""

    pass


class PreconditionerError(SolverError):
    """Raised when there is an error related to preconditioners."""

    pass


class DegenerateSystemError(SolverError):
    """Raised when the conductive network does not connect inlet to outlet."""

    pass


class TimingError(PoreFlowError):
    """Raised when the simulation clock is driven inconsistently."""

    pass
