"""
Supervised pool of persistent worker processes.

The pool keeps exactly `size` worker units alive, runs at most one task
per unit, queues the rest in FIFO order, kills units that overrun the
task deadline and replaces any unit that dies. Every terminal event of a
task goes through `_finish`, which releases the unit and drains the
backlog, so a queued task is dispatched as soon as any unit frees up.
"""

import asyncio
import itertools
import logging
import multiprocessing
import pickle
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .errors import (
    PoolClosedError,
    QueueWaitTimeoutError,
    TaskFailedError,
    TaskTimeoutError,
    WorkerCrashError,
)
from .task import Outcome, Task, TaskState
from .unit import ERROR, RESULT, Message, WorkerUnit, pool_worker_main
from ..utils.monitoring import PoolMonitor


DEFAULT_TASK_TIMEOUT = 30.0
DEFAULT_RESPAWN_DELAY = 1.0


class WorkerPool:
    """
    Runs payloads on a fixed roster of worker processes.

    Must be started from inside a running event loop; all state is touched
    only from that loop.
    """

    def __init__(self, entry: Callable, size: int,
                 task_timeout: float = DEFAULT_TASK_TIMEOUT,
                 max_queue_wait: Optional[float] = None,
                 start_method: str = 'spawn',
                 monitor: Optional[PoolMonitor] = None,
                 name: Optional[str] = None,
                 respawn_delay: float = DEFAULT_RESPAWN_DELAY):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        if task_timeout <= 0:
            raise ValueError("task_timeout must be positive")
        if max_queue_wait is not None and max_queue_wait <= 0:
            raise ValueError("max_queue_wait must be positive when set")
        if respawn_delay <= 0:
            raise ValueError("respawn_delay must be positive")

        self.entry = entry
        self.size = size
        self.task_timeout = task_timeout
        self.max_queue_wait = max_queue_wait
        self.monitor = monitor
        self.respawn_delay = respawn_delay
        self.name = name or getattr(entry, '__name__', 'pool')
        self.logger = logging.getLogger(__name__)

        self.units: List[WorkerUnit] = []
        self.queue: Deque[Task] = deque()

        self._context = multiprocessing.get_context(start_method)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self._unit_ids = itertools.count(1)
        self._respawn_timers: Set[asyncio.TimerHandle] = set()

        self.stats = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
            'timed_out': 0,
            'crashed': 0,
            'queue_timeouts': 0,
            'respawns': 0,
            'respawn_failures': 0,
        }

    @classmethod
    def for_job(cls, kind, size: int, **kwargs) -> 'WorkerPool':
        """Build a pool for a registered job kind; unknown kinds fail here."""
        from ..jobs.registry import resolve_job

        entry = resolve_job(kind)
        kwargs.setdefault('name', getattr(kind, 'value', str(kind)))
        return cls(entry, size, **kwargs)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def started(self) -> bool:
        return self._loop is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def roster_size(self) -> int:
        return len(self.units)

    @property
    def busy_count(self) -> int:
        return sum(1 for unit in self.units if unit.busy)

    @property
    def queue_size(self) -> int:
        return len(self.queue)

    async def start(self):
        """Spawn the full roster of worker units."""
        if self._closed:
            raise PoolClosedError(f"Pool {self.name} is closed")
        if self.started:
            return
        self._loop = asyncio.get_running_loop()
        for _ in range(self.size):
            self._add_unit()
        self.logger.info(f"Worker pool {self.name} started with {self.size} units")
        self._update_gauges()

    async def run_task(self, payload: Any) -> Any:
        """
        Run one payload on a worker unit and return its result.

        Raises:
            TaskTimeoutError: the unit did not reply within task_timeout
            WorkerCrashError: the unit died while running the task
            TaskFailedError: the job reported an error
            QueueWaitTimeoutError: the task waited too long for a unit
            PoolClosedError: the pool was closed
        """
        if self._closed:
            raise PoolClosedError(f"Pool {self.name} is closed")
        if not self.started:
            raise RuntimeError(f"Pool {self.name} has not been started")

        task = Task(payload=payload, future=self._loop.create_future())
        self.stats['submitted'] += 1

        unit = self._idle_unit()
        if unit is not None:
            self._dispatch(unit, task)
        else:
            self._enqueue(task)
        self._update_gauges()

        return await task.future

    async def close(self):
        """Fail every pending task and stop all worker units."""
        if self._closed:
            return
        self._closed = True
        for timer in self._respawn_timers:
            timer.cancel()
        self._respawn_timers.clear()

        while self.queue:
            self.queue.popleft().settle(
                Outcome.failure(PoolClosedError(f"Pool {self.name} closed")))

        units = list(self.units)
        self.units.clear()
        busy = []
        for unit in units:
            unit.detach()
            if unit.timer is not None:
                unit.timer.cancel()
                unit.timer = None
            if unit.task is not None:
                unit.task.settle(Outcome.failure(
                    PoolClosedError(f"Pool {self.name} closed while task was running")))
                unit.task = None
                busy.append(unit)

        for unit in busy:
            unit.terminate()
        idle = [unit for unit in units if unit not in busy]
        if idle and self._loop is not None:
            await asyncio.gather(*(
                self._loop.run_in_executor(None, unit.shutdown) for unit in idle
            ))

        self.logger.info(f"Worker pool {self.name} closed")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats.update({
            'name': self.name,
            'size': self.size,
            'roster': self.roster_size,
            'busy': self.busy_count,
            'queued': self.queue_size,
            'closed': self._closed,
        })
        return stats

    def _add_unit(self) -> WorkerUnit:
        name = f"{self.name}-{next(self._unit_ids)}"
        unit = WorkerUnit(
            name,
            pool_worker_main,
            (self.entry, name),
            self._context,
            on_message=self._on_message,
            on_exit=self._on_exit
        )
        unit.start(self._loop)
        self.units.append(unit)
        self.logger.debug(f"Started worker unit {name} (pid {unit.pid})")
        return unit

    def _replace_unit(self, unit: WorkerUnit, reason: str) -> Optional[WorkerUnit]:
        if unit in self.units:
            self.units.remove(unit)
        return self._respawn(unit.name, reason)

    def _respawn(self, replacing: str, reason: str) -> Optional[WorkerUnit]:
        if self._closed:
            return None
        try:
            replacement = self._add_unit()
        except Exception as e:
            self.stats['respawn_failures'] += 1
            self.logger.error(
                f"Could not replace worker unit {replacing} after {reason}: {e}; "
                f"retrying in {self.respawn_delay}s"
            )
            self._schedule_respawn(replacing, reason)
            return None
        self.stats['respawns'] += 1
        if self.monitor:
            self.monitor.record_respawn(self.name, reason)
        self.logger.warning(
            f"Replaced worker unit {replacing} with {replacement.name} after {reason}"
        )
        return replacement

    def _schedule_respawn(self, replacing: str, reason: str):
        handle = None

        def retry():
            self._respawn_timers.discard(handle)
            if self._closed or self.roster_size >= self.size:
                return
            replacement = self._respawn(replacing, reason)
            if replacement is not None:
                self._drain(replacement)
                self._update_gauges()

        handle = self._loop.call_later(self.respawn_delay, retry)
        self._respawn_timers.add(handle)

    def _idle_unit(self) -> Optional[WorkerUnit]:
        for unit in self.units:
            if not unit.busy and unit.alive:
                return unit
        return None

    def _enqueue(self, task: Task):
        self.queue.append(task)
        if self.max_queue_wait is not None:
            task.queue_timer = self._loop.call_later(
                self.max_queue_wait, self._on_queue_wait_expired, task
            )
        self.logger.debug(f"Task {task.task_id} queued ({len(self.queue)} waiting)")

    def _dispatch(self, unit: WorkerUnit, task: Task):
        unit.busy = True
        unit.task = task
        task.mark_assigned()
        unit.timer = self._loop.call_later(self.task_timeout, self._on_deadline, unit, task)
        try:
            unit.send((task.task_id, task.payload))
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            self._finish(unit, Outcome.failure(
                TaskFailedError(f"Payload could not be sent to worker: {e}")))
        except OSError:
            # Pipe already broken: the exit callback settles the task as a crash.
            self.logger.debug(f"Worker unit {unit.name} gone before task {task.task_id} was sent")
        else:
            self.logger.debug(f"Task {task.task_id} assigned to {unit.name}")

    def _on_message(self, unit: WorkerUnit, message: Message):
        if unit.task is None:
            self.logger.warning(f"Ignoring unsolicited message from {unit.name}")
            return

        kind, body = message
        if kind == RESULT:
            outcome = Outcome.success(body)
        elif kind == ERROR:
            outcome = Outcome.failure(TaskFailedError(body))
        else:
            outcome = Outcome.failure(TaskFailedError(f"Malformed worker message: {kind!r}"))
        self._finish(unit, outcome)

    def _on_deadline(self, unit: WorkerUnit, task: Task):
        if unit.task is not task:
            return
        unit.timer = None
        self.logger.warning(
            f"Task {task.task_id} exceeded {self.task_timeout}s on {unit.name}; terminating unit"
        )
        unit.terminate()
        self._finish(unit, Outcome.failure(
            TaskTimeoutError(f"Worker task timed out after {self.task_timeout}s"),
            state=TaskState.TIMED_OUT
        ), respawn_reason='timeout')

    def _on_exit(self, unit: WorkerUnit, exitcode: Optional[int]):
        if unit not in self.units:
            return
        if unit.task is not None:
            self.logger.error(
                f"Worker unit {unit.name} exited with code {exitcode} "
                f"while running task {unit.task.task_id}"
            )
            outcome = Outcome.failure(WorkerCrashError(
                f"Worker stopped with exit code {exitcode}", exitcode=exitcode))
        else:
            self.logger.warning(f"Idle worker unit {unit.name} exited with code {exitcode}")
            outcome = None
        self._finish(unit, outcome, respawn_reason='crash')

    def _on_queue_wait_expired(self, task: Task):
        if task.state is not TaskState.QUEUED:
            return
        try:
            self.queue.remove(task)
        except ValueError:
            return
        task.queue_timer = None
        self.stats['queue_timeouts'] += 1
        if task.settle(Outcome.failure(QueueWaitTimeoutError(
                f"Task waited more than {self.max_queue_wait}s for a worker"))):
            self.logger.warning(f"Task {task.task_id} dropped from backlog after {self.max_queue_wait}s")
        if self.monitor:
            self.monitor.record_task(self.name, 'QueueWaitTimeoutError')
        self._update_gauges()

    def _finish(self, unit: WorkerUnit, outcome: Optional[Outcome],
                respawn_reason: Optional[str] = None):
        """Settle the unit's task, release or replace the unit, then drain the backlog."""
        task = unit.task
        if unit.timer is not None:
            unit.timer.cancel()
            unit.timer = None
        unit.task = None
        unit.busy = False

        if task is not None and outcome is not None:
            self._settle(task, outcome)

        if respawn_reason is not None:
            unit = self._replace_unit(unit, respawn_reason)

        if unit is None and not self._closed:
            unit = self._idle_unit()
        if unit is not None and not self._closed:
            self._drain(unit)
        self._update_gauges()

    def _settle(self, task: Task, outcome: Outcome):
        duration = time.monotonic() - task.assigned_at if task.assigned_at else None
        delivered = task.settle(outcome)

        if outcome.ok:
            self.stats['completed'] += 1
        elif isinstance(outcome.error, TaskTimeoutError):
            self.stats['timed_out'] += 1
        elif isinstance(outcome.error, WorkerCrashError):
            self.stats['crashed'] += 1
        else:
            self.stats['failed'] += 1

        if self.monitor:
            self.monitor.record_task(self.name, outcome.label, duration)
        if not delivered:
            self.logger.debug(f"Task {task.task_id} settled after its caller stopped waiting")

    def _drain(self, unit: WorkerUnit):
        while self.queue and not unit.busy and unit.alive and unit in self.units:
            task = self.queue.popleft()
            if task.abandoned:
                continue
            self._dispatch(unit, task)

    def _update_gauges(self):
        if self.monitor:
            self.monitor.update_queue_size(self.name, len(self.queue))
            self.monitor.update_busy_units(self.name, self.busy_count)

    def __repr__(self):
        return (f"<WorkerPool {self.name} size={self.size} busy={self.busy_count} "
                f"queued={self.queue_size}>")
