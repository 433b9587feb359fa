"""Periodic task scheduler.

Runs named coroutines on fixed periods. Each task has its own loop, so a
firing never overlaps the previous firing of the same task: if a run takes
longer than the period, the next one starts a full period after it ends.
Exceptions are logged and the loop keeps going.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    """A named coroutine run every `interval_s` seconds."""

    name: str
    interval_s: float
    callback: Callable[[], Awaitable[None]]

    run_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    last_run_ts: float | None = None
    last_duration_s: float | None = None
    _running: bool = field(default=False, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running


class PeriodicScheduler:
    """Owns a set of named periodic tasks.

    Thread-safety: NOT thread-safe. Use from a single event loop.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, PeriodicTask] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._shutdown = False

    @property
    def is_running(self) -> bool:
        return bool(self._loops) and not self._shutdown

    def add(self, name: str, interval_s: float, callback: Callable[[], Awaitable[None]]) -> None:
        """Register a task. Must be called before start().

        Raises:
            ValueError: If the name is taken or the interval is not positive
        """
        if name in self._tasks:
            raise ValueError(f"Periodic task '{name}' is already registered")
        if interval_s <= 0:
            raise ValueError(f"Periodic task interval must be positive, got {interval_s}")

        self._tasks[name] = PeriodicTask(name=name, interval_s=interval_s, callback=callback)

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def task_names(self) -> list[str]:
        return list(self._tasks)

    def start(self) -> None:
        """Start one loop per registered task."""
        if self._loops:
            raise RuntimeError("Scheduler is already running")

        self._shutdown = False
        for task in self._tasks.values():
            self._loops[task.name] = asyncio.create_task(
                self._run_loop(task), name=f"periodic-{task.name}"
            )

        logger.info(
            "Periodic scheduler started",
            extra={"tasks": {t.name: t.interval_s for t in self._tasks.values()}},
        )

    async def stop(self) -> None:
        """Cancel all loops. A firing in progress is cancelled with its loop."""
        self._shutdown = True

        loops = list(self._loops.values())
        self._loops.clear()
        for loop_task in loops:
            loop_task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        logger.info("Periodic scheduler stopped")

    async def trigger(self, name: str) -> bool:
        """Run a task once now, unless it is already running.

        Returns:
            True if the task ran, False if it was skipped
        """
        return await self._run_once(self._tasks[name])

    async def _run_loop(self, task: PeriodicTask) -> None:
        while not self._shutdown:
            try:
                await asyncio.sleep(task.interval_s)
                await self._run_once(task)
            except asyncio.CancelledError:
                logger.debug("Periodic task cancelled", extra={"task": task.name})
                break

    async def _run_once(self, task: PeriodicTask) -> bool:
        if task._running:
            task.skipped_count += 1
            logger.debug("Periodic task still running, skipped", extra={"task": task.name})
            return False

        task._running = True
        started = time.monotonic()
        try:
            await task.callback()
            task.run_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.error_count += 1
            logger.error(
                "Error in periodic task",
                extra={"task": task.name, "error": str(e)},
                exc_info=True,
            )
        finally:
            task._running = False
            task.last_run_ts = time.time()
            task.last_duration_s = time.monotonic() - started
        return True
