"""Exception taxonomy shared across the kernel."""


class TwoLoopError(Exception):
    """Base class for kernel errors."""
    pass


class ValidationError(TwoLoopError):
    """An operation was rejected before any state changed."""
    pass


class NotFoundError(TwoLoopError):
    """An unknown task, version, trigger or proposal id was referenced."""
    pass


class ConflictError(TwoLoopError):
    """A compare-and-swap precondition no longer holds."""
    pass


class OracleError(TwoLoopError):
    """The generation oracle failed or returned an unusable response."""
    pass


class ConvergenceError(TwoLoopError):
    """A Convergence Run ended in ERROR. The completed Run is attached."""

    def __init__(self, message: str, run):
        super().__init__(message)
        self.run = run


class ExecutionError(TwoLoopError):
    """Raised when a task fails to execute."""
    pass
