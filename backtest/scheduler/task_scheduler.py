"""
Task scheduler - bounded pool of process execution units

Tasks wait in one scheduler-wide priority queue (higher priority first,
submission order within a priority). Each dispatcher coroutine owns one unit
slot and pulls the next task as soon as its unit is free. A unit that crashes
or times out is terminated and replaced; the task is retried on a fresh unit
after a crash, and otherwise run inline when main-thread fallback is enabled.
"""
import asyncio
import inspect
import itertools
import os
import time
from typing import Any, Callable, Dict, List, Optional

from backtest.domain.models import Task, TaskResult
from backtest.errors import TaskError, TaskTimeoutError, WorkerCrashedError
from backtest.scheduler.handlers import Handler, get_handler
from backtest.scheduler.worker import ProcessExecutionUnit
from utils.logger_utils import get_logger
import config

logger = get_logger("scheduler")


class TaskScheduler:
    """Priority scheduler over a pool of OS-process execution units"""

    def __init__(
        self,
        max_workers: Optional[int] = None,
        task_timeout: float = config.SCHEDULER_TASK_TIMEOUT,
        fallback_to_main_thread: bool = config.SCHEDULER_FALLBACK_TO_MAIN_THREAD,
        max_retries: int = config.SCHEDULER_MAX_RETRIES,
        use_processes: bool = config.SCHEDULER_USE_PROCESSES,
        start_method: str = config.SCHEDULER_START_METHOD,
        handlers: Optional[Dict[str, Handler]] = None
    ):
        """
        Args:
            max_workers: pool size cap, further capped by the CPU count
            task_timeout: default per-task deadline in seconds
            fallback_to_main_thread: run failed tasks inline instead of failing them
            max_retries: fresh-unit retries after a unit crash
            use_processes: False runs every task inline (single-threaded mode)
            start_method: multiprocessing start method for units
            handlers: task kind -> handler table (defaults to the built-in handlers)
        """
        cpu_count = os.cpu_count() or 1
        self.max_workers = max(1, min(cpu_count, max_workers or config.SCHEDULER_MAX_WORKERS))
        self.task_timeout = task_timeout
        self.fallback_to_main_thread = fallback_to_main_thread
        self.max_retries = max_retries
        self.use_processes = use_processes
        self.start_method = start_method
        self.handlers = handlers

        self._loop = None
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._dispatchers: List[asyncio.Task] = []
        self._units: Dict[int, ProcessExecutionUnit] = {}
        self._sequence = itertools.count()
        self._processes_available = True
        self._stats = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
            'inline_executions': 0,
            'retries': 0,
            'timeouts': 0,
            'crashes': 0,
            'units_started': 0,
        }

    # ==================== Lifecycle ====================

    def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return

        # First use, or the previous event loop has gone away
        self._loop = loop
        self._queue = asyncio.PriorityQueue()
        self._dispatchers = [
            loop.create_task(self._dispatch_loop(slot), name=f"scheduler-slot-{slot}")
            for slot in range(self.max_workers)
        ]
        logger.info(
            f"Task scheduler started: {self.max_workers} slot(s), "
            f"{'process units' if self.use_processes else 'inline execution'}"
        )

    async def shutdown(self) -> None:
        """Stop dispatchers and terminate every execution unit"""
        for dispatcher in self._dispatchers:
            dispatcher.cancel()
        if self._dispatchers and self._loop is asyncio.get_running_loop():
            await asyncio.gather(*self._dispatchers, return_exceptions=True)
        self._dispatchers = []
        self._queue = None
        self._loop = None

        for slot in list(self._units):
            self._discard_unit(slot)
        logger.info("Task scheduler shut down")

    async def __aenter__(self) -> "TaskScheduler":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ==================== Submission ====================

    def _enqueue(self, task: Task) -> asyncio.Future:
        future = self._loop.create_future()
        self._queue.put_nowait((-task.priority, next(self._sequence), task, future))
        self._stats['submitted'] += 1
        return future

    async def submit(self, task: Task) -> TaskResult:
        """Submit one task and wait for its result"""
        self._ensure_started()
        return await self._enqueue(task)

    async def submit_batch(
        self,
        tasks: List[Task],
        on_progress: Optional[Callable[[Dict[str, Any]], Any]] = None,
        raise_on_failure: bool = True
    ) -> List[TaskResult]:
        """
        Submit tasks together and wait for all of them.

        Results are aligned to the input order regardless of completion order.
        Raises TaskError (carrying every result) if any task failed and
        `raise_on_failure` is set.
        """
        if not tasks:
            return []

        self._ensure_started()
        futures = [self._enqueue(task) for task in tasks]
        task_by_future = dict(zip(futures, tasks))
        individual = {task.id: 0.0 for task in tasks}
        completed = 0

        pending = set(futures)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                completed += 1
                individual[task_by_future[future].id] = 100.0
            if on_progress is not None:
                outcome = on_progress({
                    'overall': completed / len(tasks) * 100,
                    'individual': dict(individual),
                    'completed': completed,
                    'total': len(tasks),
                })
                if inspect.isawaitable(outcome):
                    await outcome

        results = [future.result() for future in futures]
        failed = [r for r in results if not r.success]
        if failed and raise_on_failure:
            raise TaskError(
                f"{len(failed)} of {len(tasks)} task(s) failed: {failed[0].error}",
                results=results,
                details={'failed_task_ids': [r.task_id for r in failed]}
            )
        return results

    # ==================== Dispatch ====================

    async def _dispatch_loop(self, slot: int) -> None:
        while True:
            _, _, task, future = await self._queue.get()
            try:
                result = await self._execute(slot, task)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.exception(f"Unexpected scheduler failure on task {task.id}")
                result = TaskResult(task_id=task.id, success=False, error=f"{type(e).__name__}: {e}")

            self._stats['completed' if result.success else 'failed'] += 1
            if not future.done():
                future.set_result(result)
            self._queue.task_done()

    def _unit_for(self, slot: int) -> Optional[ProcessExecutionUnit]:
        unit = self._units.get(slot)
        if unit is not None and unit.alive:
            return unit
        if unit is not None:
            self._discard_unit(slot)

        try:
            unit = ProcessExecutionUnit(slot, self.start_method).start()
        except Exception as e:
            self._processes_available = False
            logger.warning(f"Cannot start execution units, switching to inline execution: {e}")
            return None

        self._units[slot] = unit
        self._stats['units_started'] += 1
        return unit

    def _discard_unit(self, slot: int) -> None:
        unit = self._units.pop(slot, None)
        if unit is not None:
            unit.terminate()

    async def _execute(self, slot: int, task: Task) -> TaskResult:
        started = time.monotonic()
        try:
            handler = get_handler(task.kind, self.handlers)
        except KeyError as e:
            return TaskResult(task_id=task.id, success=False, error=str(e), attempts=0)

        timeout = task.timeout or self.task_timeout
        attempts = 0
        last_error = None

        if self.use_processes and self._processes_available:
            while attempts <= self.max_retries:
                unit = self._unit_for(slot)
                if unit is None:
                    break
                attempts += 1
                try:
                    status, value = await unit.run(handler, task.payload, timeout)
                except TaskTimeoutError as e:
                    self._stats['timeouts'] += 1
                    last_error = e.message
                    logger.warning(f"Task {task.id} timed out, discarding unit {slot}")
                    self._discard_unit(slot)
                    break
                except WorkerCrashedError as e:
                    self._stats['crashes'] += 1
                    last_error = e.message
                    logger.warning(f"Unit {slot} crashed on task {task.id}: {e.message}")
                    self._discard_unit(slot)
                    if attempts <= self.max_retries:
                        self._stats['retries'] += 1
                    continue
                except Exception as e:
                    # Payload or handler could not be shipped to the unit
                    last_error = f"{type(e).__name__}: {e}"
                    logger.warning(f"Task {task.id} could not be sent to unit {slot}: {last_error}")
                    self._discard_unit(slot)
                    break

                return TaskResult(
                    task_id=task.id,
                    success=status == 'ok',
                    value=value if status == 'ok' else None,
                    error=None if status == 'ok' else value,
                    attempts=attempts,
                    duration=time.monotonic() - started,
                )

            if attempts and not self.fallback_to_main_thread:
                return TaskResult(
                    task_id=task.id,
                    success=False,
                    error=last_error,
                    attempts=attempts,
                    duration=time.monotonic() - started,
                )
            if attempts:
                logger.warning(f"Falling back to main thread for task {task.id}")

        return await self._execute_inline(task, handler, attempts, started)

    async def _execute_inline(self, task: Task, handler: Handler, attempts: int, started: float) -> TaskResult:
        attempts += 1
        self._stats['inline_executions'] += 1
        try:
            value = await asyncio.to_thread(handler, task.payload)
        except Exception as e:
            logger.warning(f"Task {task.id} failed: {type(e).__name__}: {e}")
            return TaskResult(
                task_id=task.id,
                success=False,
                error=f"{type(e).__name__}: {e}",
                attempts=attempts,
                executed_inline=True,
                duration=time.monotonic() - started,
            )
        return TaskResult(
            task_id=task.id,
            success=True,
            value=value,
            attempts=attempts,
            executed_inline=True,
            duration=time.monotonic() - started,
        )

    # ==================== Stats ====================

    def get_stats(self) -> Dict[str, Any]:
        return {
            'max_workers': self.max_workers,
            'live_units': sum(1 for u in self._units.values() if u.alive),
            'queued': self._queue.qsize() if self._queue is not None else 0,
            'use_processes': self.use_processes,
            'processes_available': self._processes_available,
            **self._stats,
        }
