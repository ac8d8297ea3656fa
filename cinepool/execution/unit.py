"""
Worker units: child processes that run job entry functions.

The parent side of a unit never blocks the event loop. The pipe and the
process sentinel are registered with the running loop, so messages and
exits are delivered as loop callbacks and all bookkeeping stays on the
loop thread.
"""

import asyncio
import logging
import pickle
import signal
from typing import Any, Callable, Optional, Tuple

from ..utils.logger import configure_worker_logging, get_worker_logger


RESULT = 'result'
ERROR = 'error'

Message = Tuple[str, Any]


def run_entry(entry: Callable, data: Any) -> Any:
    """Call a job entry function, driving it to completion if it is a coroutine."""
    result = entry(data)
    if asyncio.iscoroutine(result):
        result = asyncio.run(result)
    return result


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _send(conn, message: Message):
    """Send a message, reporting unpicklable results as errors."""
    try:
        conn.send(message)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        conn.send((ERROR, f"Result could not be serialized: {_describe(e)}"))


def pool_worker_main(conn, entry: Callable, unit_name: str):
    """Child loop for a pooled unit: one reply per (task_id, payload), None to stop."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    configure_worker_logging()
    logger = get_worker_logger(__name__, unit=unit_name,
                               job=getattr(entry, '__name__', repr(entry)))
    logger.debug("Worker unit started")

    while True:
        try:
            message = conn.recv()
        except EOFError:
            break
        if message is None:
            break

        task_id, payload = message
        try:
            value = run_entry(entry, payload)
        except Exception as e:
            logger.log_task_event(logging.WARNING, task_id, f"Job failed: {_describe(e)}")
            _send(conn, (ERROR, _describe(e)))
        else:
            logger.log_task_event(logging.DEBUG, task_id, "Job finished")
            _send(conn, (RESULT, value))

    conn.close()
    logger.debug("Worker unit stopped")


def spawned_worker_main(conn, entry: Callable, initial_data: Any):
    """Child body for a one-off unit: run once with the seed data and reply."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    configure_worker_logging()
    try:
        value = run_entry(entry, initial_data)
    except Exception as e:
        logging.getLogger(__name__).warning(f"One-off job failed: {_describe(e)}")
        _send(conn, (ERROR, _describe(e)))
    else:
        _send(conn, (RESULT, value))
    conn.close()


class WorkerUnit:
    """
    Parent-side handle for one worker process.

    on_message(unit, message) is called for every message the child sends;
    on_exit(unit, exitcode) once, when the process ends without having
    been detached first.
    """

    def __init__(self, name: str, target: Callable, args: tuple, context,
                 on_message: Callable[['WorkerUnit', Message], None],
                 on_exit: Callable[['WorkerUnit', Optional[int]], None]):
        self.name = name
        self.busy = False
        self.task = None
        self.timer: Optional[asyncio.TimerHandle] = None

        self._on_message = on_message
        self._on_exit = on_exit
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._attached = False
        self._exiting = False
        self._exited = False

        self.conn, child_conn = context.Pipe(duplex=True)
        self._child_conn = child_conn
        self.process = context.Process(
            target=target,
            args=(child_conn,) + tuple(args),
            name=name,
            daemon=True
        )

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def alive(self) -> bool:
        """False once the process has ended or its exit is being handled."""
        return not (self._exiting or self._exited)

    def start(self, loop: asyncio.AbstractEventLoop):
        """Start the child process and attach its pipe and sentinel to the loop."""
        self._loop = loop
        self.process.start()
        self._child_conn.close()
        loop.add_reader(self.conn.fileno(), self._handle_readable)
        loop.add_reader(self.process.sentinel, self._handle_exit)
        self._attached = True

    def send(self, payload: Any):
        self.conn.send(payload)

    def detach(self):
        """Stop delivering callbacks for this unit."""
        if not self._attached:
            return
        self._attached = False
        self._remove_reader(self.conn)
        self._loop.remove_reader(self.process.sentinel)

    def terminate(self):
        """Forcibly kill the child. No exit callback is delivered."""
        self.detach()
        if not self._exited:
            self.process.kill()
            self._exited = True
            self._reap()
        self.conn.close()

    def shutdown(self, timeout: float = 2.0):
        """Ask the child to stop, killing it if it does not. Blocking; call detached."""
        if not self._exited:
            try:
                self.conn.send(None)
            except OSError:
                pass
            self.process.join(timeout=timeout)
            if self.process.is_alive():
                self.process.kill()
                self.process.join(timeout=1.0)
            self._exited = True
        self.conn.close()

    def _reap(self, callback: Optional[Callable[[], None]] = None):
        """Collect the child's exit status, off the loop if it is not ready yet."""
        self.process.join(timeout=0)
        if self.process.exitcode is not None or self._loop is None:
            if callback is not None:
                callback()
            return
        reaping = self._loop.run_in_executor(None, self.process.join, 1.0)
        if callback is not None:
            reaping.add_done_callback(lambda _: callback())

    def _remove_reader(self, conn):
        if not conn.closed:
            self._loop.remove_reader(conn.fileno())

    def _read_message(self) -> Optional[Message]:
        try:
            return self.conn.recv()
        except (EOFError, OSError):
            # Child closed its end; the sentinel reports the exit.
            self._remove_reader(self.conn)
            return None

    def _handle_readable(self):
        message = self._read_message()
        if message is not None and self._attached:
            self._on_message(self, message)

    def _handle_exit(self):
        # Deliver anything the child wrote before exiting, then the exit.
        self._exiting = True
        while self._attached and not self.conn.closed and self.conn.poll():
            message = self._read_message()
            if message is None:
                break
            self._on_message(self, message)

        if not self._attached:
            return
        self.detach()
        self._reap(self._report_exit)

    def _report_exit(self):
        self._exited = True
        self.conn.close()
        self._on_exit(self, self.process.exitcode)

    def __repr__(self):
        state = 'busy' if self.busy else 'idle'
        return f"<WorkerUnit {self.name} pid={self.pid} {state}>"
