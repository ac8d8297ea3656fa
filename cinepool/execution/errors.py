"""
Exceptions raised by worker pools and spawned workers.
"""


class PoolError(Exception):
    """Base class for task failures reported by a WorkerPool."""
    pass


class TaskTimeoutError(PoolError):
    """Task occupied its worker unit past the deadline; the unit was killed and replaced."""
    pass


class WorkerCrashError(PoolError):
    """Worker unit exited abnormally while running the task."""

    def __init__(self, message: str, exitcode=None):
        super().__init__(message)
        self.exitcode = exitcode


class TaskFailedError(PoolError):
    """Worker unit reported an error for the task."""
    pass


class QueueWaitTimeoutError(PoolError):
    """Task waited in the backlog longer than the pool allows."""
    pass


class PoolClosedError(PoolError):
    """Pool was closed before the task could settle."""
    pass


class SpawnError(Exception):
    """A one-off worker failed to produce a result."""

    def __init__(self, message: str, exitcode=None):
        super().__init__(message)
        self.exitcode = exitcode


class SpawnTimeoutError(SpawnError):
    """A one-off worker ran past its deadline and was killed."""
    pass


class UnknownJobError(ValueError):
    """Job kind is not a registered JobKind."""
    pass
