"""
Execution unit - one OS process connected to the scheduler by a duplex pipe

The unit runs strictly one task at a time. A task message is
(handler, payload); the handler is a module-level function shipped by
reference. The reply is ('ok', value) or ('error', message).
"""
import asyncio
import multiprocessing
import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from backtest.errors import TaskTimeoutError, WorkerCrashedError
from utils.logger_utils import get_logger

logger = get_logger("scheduler.worker")


def worker_main(conn) -> None:
    """Entry point of the unit process"""
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if message is None:
            break

        handler, payload = message
        try:
            reply = ('ok', handler(payload))
        except Exception as e:
            logger.debug(traceback.format_exc())
            reply = ('error', f"{type(e).__name__}: {e}")

        try:
            conn.send(reply)
        except Exception as e:
            # Result could not be pickled
            conn.send(('error', f"{type(e).__name__}: {e}"))

    conn.close()


class ProcessExecutionUnit:
    """Parent-side handle of one unit process"""

    def __init__(self, slot: int, start_method: str = "spawn"):
        self.slot = slot
        self.start_method = start_method
        self.tasks_run = 0
        self._process = None
        self._conn = None

    def start(self) -> "ProcessExecutionUnit":
        ctx = multiprocessing.get_context(self.start_method)
        parent_conn, child_conn = ctx.Pipe(duplex=True)
        process = ctx.Process(
            target=worker_main,
            args=(child_conn,),
            name=f"backtest-unit-{self.slot}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        self._process = process
        self._conn = parent_conn
        logger.debug(f"Started execution unit {self.slot} (pid {process.pid})")
        return self

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    async def run(self, handler: Callable[[Dict[str, Any]], Any], payload: Dict[str, Any], timeout: float) -> Tuple[str, Any]:
        """
        Send one task and wait for its reply.

        Raises TaskTimeoutError when no reply arrives within `timeout` seconds
        and WorkerCrashedError when the process dies mid-task.
        """
        if not self.alive:
            raise WorkerCrashedError(f"Execution unit {self.slot} is not running")

        try:
            await asyncio.to_thread(self._conn.send, (handler, payload))
        except (BrokenPipeError, EOFError, ConnectionResetError) as e:
            raise WorkerCrashedError(f"Execution unit {self.slot} pipe closed: {e}") from e

        ready = await asyncio.to_thread(self._conn.poll, timeout)
        if not ready:
            raise TaskTimeoutError(f"Task exceeded {timeout:.1f}s on execution unit {self.slot}")

        try:
            status, value = self._conn.recv()
        except (EOFError, OSError) as e:
            raise WorkerCrashedError(
                f"Execution unit {self.slot} exited with code {self._process.exitcode}"
            ) from e

        self.tasks_run += 1
        return status, value

    def terminate(self) -> None:
        if self._process is None:
            return
        try:
            if self._process.is_alive():
                self._process.terminate()
            self._process.join(timeout=2)
            if self._process.is_alive():
                self._process.kill()
                self._process.join(timeout=2)
        finally:
            if self._conn is not None:
                self._conn.close()
            logger.debug(f"Terminated execution unit {self.slot}")
            self._process = None
            self._conn = None
