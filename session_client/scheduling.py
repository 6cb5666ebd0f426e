"""
Timer handling for session instances.

A ``ScheduledTask`` is a cancellable handle around an asyncio task that runs a
callback after (or every) ``interval`` seconds and knows when it is next due.
Each session instance owns a ``TaskRegistry`` holding all of its timers and
background tasks so that teardown can cancel them in one call.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Set, Union

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Union[None, Awaitable[Any]]]


class ScheduledTask:
    """Run ``callback`` once after ``interval`` seconds, or every ``interval`` seconds."""

    def __init__(
        self,
        callback: TaskCallback,
        interval: float,
        repeat: bool = True,
        name: str = "scheduled-task",
        clock: Callable[[], float] = time.time
    ):
        if interval <= 0:
            raise ValueError("Interval must be positive")
        self.callback = callback
        self.interval = interval
        self.repeat = repeat
        self.name = name
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._next_due: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_due(self) -> Optional[float]:
        """Clock time of the next run, or None when nothing is pending."""
        return self._next_due

    def start(self) -> 'ScheduledTask':
        if self.active:
            return self
        self._next_due = self._clock() + self.interval
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                if self.repeat:
                    self._next_due = self._clock() + self.interval
                else:
                    self._next_due = None

                try:
                    result = self.callback()
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Scheduled task {self.name} failed: {e}", exc_info=True)

                if not self.repeat:
                    break
        except asyncio.CancelledError:
            logger.debug(f"Scheduled task {self.name} cancelled")
            raise
        finally:
            self._next_due = None

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._next_due = None

    async def stop(self) -> None:
        """Cancel and wait for the underlying task to finish."""
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass


class TaskRegistry:
    """All timers and background tasks owned by one session instance."""

    def __init__(self, owner: str = "session", clock: Callable[[], float] = time.time):
        self.owner = owner
        self._clock = clock
        self._scheduled: Set[ScheduledTask] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, callback: TaskCallback, interval: float, repeat: bool = True,
                 name: Optional[str] = None) -> ScheduledTask:
        if self._closed:
            raise RuntimeError(f"Task registry for {self.owner} is closed")
        task = ScheduledTask(
            callback,
            interval,
            repeat=repeat,
            name=name or f"{self.owner}-timer",
            clock=self._clock
        )
        self._scheduled.add(task)
        return task.start()

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        if self._closed:
            if inspect.iscoroutine(coro):
                coro.close()
            raise RuntimeError(f"Task registry for {self.owner} is closed")
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def discard(self, scheduled: ScheduledTask) -> None:
        scheduled.cancel()
        self._scheduled.discard(scheduled)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._scheduled if t.active) + sum(1 for t in self._tasks if not t.done())

    def cancel_all(self) -> None:
        for scheduled in list(self._scheduled):
            scheduled.cancel()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._scheduled.clear()
        self._closed = True
        logger.debug(f"Cancelled all timers for {self.owner}")
