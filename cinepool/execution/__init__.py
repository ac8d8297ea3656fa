"""
Task execution: supervised worker pools and one-off worker processes.
"""

from .errors import (
    PoolError, TaskTimeoutError, WorkerCrashError, TaskFailedError,
    QueueWaitTimeoutError, PoolClosedError, SpawnError, SpawnTimeoutError,
    UnknownJobError,
)
from .task import Task, TaskState, Outcome
from .pool import WorkerPool
from .spawner import WorkerSpawner

__all__ = [
    'WorkerPool', 'WorkerSpawner',
    'Task', 'TaskState', 'Outcome',
    'PoolError', 'TaskTimeoutError', 'WorkerCrashError', 'TaskFailedError',
    'QueueWaitTimeoutError', 'PoolClosedError', 'SpawnError', 'SpawnTimeoutError',
    'UnknownJobError',
]
