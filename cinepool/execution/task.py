"""
Task bookkeeping shared by the worker pool and the spawner.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class TaskState(Enum):
    """Lifecycle of a task: queued -> assigned -> one terminal state."""
    QUEUED = "queued"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.TIMED_OUT)


@dataclass
class Outcome:
    """Terminal result of a task: a value or an error, never both."""
    ok: bool
    state: TaskState
    value: Any = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: Any) -> 'Outcome':
        return cls(ok=True, state=TaskState.COMPLETED, value=value)

    @classmethod
    def failure(cls, error: BaseException, state: TaskState = TaskState.FAILED) -> 'Outcome':
        return cls(ok=False, state=state, error=error)

    @property
    def label(self) -> str:
        """Short outcome name used in logs and metrics."""
        if self.ok:
            return 'completed'
        return type(self.error).__name__


_task_ids = itertools.count(1)


@dataclass
class Task:
    """A payload waiting for, or bound to, a worker unit."""
    payload: Any
    future: asyncio.Future
    task_id: int = field(default_factory=lambda: next(_task_ids))
    state: TaskState = TaskState.QUEUED
    enqueued_at: float = field(default_factory=time.monotonic)
    assigned_at: Optional[float] = None
    queue_timer: Optional[asyncio.TimerHandle] = None

    def mark_assigned(self):
        self.state = TaskState.ASSIGNED
        self.assigned_at = time.monotonic()
        if self.queue_timer is not None:
            self.queue_timer.cancel()
            self.queue_timer = None

    @property
    def abandoned(self) -> bool:
        """True when the caller stopped waiting before the task settled."""
        return self.future.done() and not self.state.is_terminal

    def settle(self, outcome: Outcome) -> bool:
        """Resolve the caller's future. Returns False if it was already done."""
        self.state = outcome.state
        if self.queue_timer is not None:
            self.queue_timer.cancel()
            self.queue_timer = None
        if self.future.done():
            return False
        if outcome.ok:
            self.future.set_result(outcome.value)
        else:
            self.future.set_exception(outcome.error)
        return True
