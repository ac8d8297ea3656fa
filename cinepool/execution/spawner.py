"""
One-off worker processes.

Each call starts a fresh unit seeded with its input, waits for the first
terminal event (a result, an error or the process exit) and discards the
unit. Later events from the same unit are ignored.
"""

import asyncio
import itertools
import logging
import multiprocessing
from typing import Any, Callable, Optional, Tuple

from .errors import SpawnError, SpawnTimeoutError
from .unit import ERROR, RESULT, Message, WorkerUnit, spawned_worker_main
from ..utils.monitoring import PoolMonitor


class WorkerSpawner:
    """Runs a job once in its own process and returns exactly one outcome."""

    worker_main = staticmethod(spawned_worker_main)

    def __init__(self, start_method: str = 'spawn', timeout: Optional[float] = None,
                 monitor: Optional[PoolMonitor] = None):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive when set")
        self.timeout = timeout
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)
        self._context = multiprocessing.get_context(start_method)
        self._ids = itertools.count(1)
        self.stats = {
            'spawned': 0,
            'succeeded': 0,
            'failed': 0,
        }

    def _resolve(self, job) -> Tuple[Callable, str]:
        if callable(job):
            return job, getattr(job, '__name__', repr(job))
        from ..jobs.registry import resolve_job

        return resolve_job(job), getattr(job, 'value', str(job))

    async def spawn(self, job, initial_data: Any = None) -> Any:
        """
        Run `job` once with `initial_data` in a new worker process.

        `job` is a JobKind (or its value) or an importable entry function.

        Raises:
            UnknownJobError: job is not a registered kind; nothing is started
            SpawnTimeoutError: the worker ran past the spawner timeout
            SpawnError: the worker reported an error or exited without a result
        """
        entry, job_name = self._resolve(job)
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def settle(value: Any = None, error: Optional[BaseException] = None) -> bool:
            if future.done():
                return False
            if error is None:
                future.set_result(value)
            else:
                future.set_exception(error)
            return True

        def on_message(unit: WorkerUnit, message: Message):
            kind, body = message
            if kind == RESULT:
                settle(value=body)
            elif kind == ERROR:
                settle(error=SpawnError(body))
            else:
                settle(error=SpawnError(f"Malformed worker message: {kind!r}"))

        def on_exit(unit: WorkerUnit, exitcode: Optional[int]):
            if exitcode != 0:
                settle(error=SpawnError(f"Worker stopped with exit code {exitcode}",
                                        exitcode=exitcode))
            else:
                settle(error=SpawnError("Unknown error", exitcode=exitcode))

        name = f"{job_name}-once-{next(self._ids)}"
        unit = WorkerUnit(name, self.worker_main, (entry, initial_data), self._context,
                          on_message=on_message, on_exit=on_exit)
        unit.start(loop)
        self.stats['spawned'] += 1
        self.logger.debug(f"Spawned one-off worker {name} (pid {unit.pid})")

        timer = None
        if self.timeout is not None:
            def on_timeout():
                if settle(error=SpawnTimeoutError(
                        f"Worker did not finish within {self.timeout}s")):
                    self.logger.warning(f"One-off worker {name} timed out; terminating")
                    unit.terminate()
            timer = loop.call_later(self.timeout, on_timeout)

        try:
            result = await future
        except SpawnError as e:
            self.stats['failed'] += 1
            self._record(job_name, type(e).__name__)
            self.logger.warning(f"One-off worker {name} failed: {e}")
            raise
        else:
            self.stats['succeeded'] += 1
            self._record(job_name, 'completed')
            return result
        finally:
            if timer is not None:
                timer.cancel()
            await self._discard(unit)

    async def _discard(self, unit: WorkerUnit):
        unit.detach()
        if not unit.exited:
            await asyncio.get_running_loop().run_in_executor(None, unit.shutdown, 1.0)

    def _record(self, job_name: str, outcome: str):
        if self.monitor:
            self.monitor.record_spawn(job_name, outcome)

    def get_stats(self):
        return self.stats.copy()
