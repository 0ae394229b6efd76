"""Base exception shared by the engine modules."""


class EngineError(Exception):
    """Base class for every error raised by the engine."""
    pass


class CleanupError(EngineError):
    """A path could not be deleted or moved while pruning a workspace.

    Only ever logged; a cleanup problem never fails a job.
    """
    pass
