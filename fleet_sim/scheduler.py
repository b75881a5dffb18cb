"""
Cancellable timers for simulated devices.

Every delayed or periodic effect of a device (heartbeat, voice processing,
relay propagation, failure injectors, movement patterns) runs as an asyncio
task owned by the device's ``TaskScheduler``. Closing the scheduler cancels
all of them, so no timer outlives the device it mutates.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Cancellation token for one scheduled effect."""

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._done = False
        self._done_callbacks: List[Callable[["ScheduledTask"], Any]] = []

    def cancel(self) -> bool:
        """Stop the effect. Returns False when it was already stopped."""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            return True
        return False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._done and self._task is not None and not self._task.done()

    def add_done_callback(self, callback: Callable[["ScheduledTask"], Any]) -> None:
        if self._done or self._task is None or self._task.done():
            callback(self)
        else:
            self._done_callbacks.append(callback)

    def _finished(self) -> None:
        self._done = True
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error("done_callback_failed", task=self.name, error=str(e))

    def __repr__(self) -> str:
        return f"<ScheduledTask {self.name} active={self.active}>"


class TaskScheduler:
    """Owns the asyncio tasks of a single device."""

    def __init__(
        self,
        owner: str,
        time_scale: float = 1.0,
        on_error: Optional[Callable[[str, Exception], Any]] = None
    ):
        self.owner = owner
        self.time_scale = time_scale
        self._on_error = on_error
        self._tasks: Set[ScheduledTask] = set()
        self._closed = False

    def scale(self, seconds: float) -> float:
        """Convert nominal seconds into loop seconds."""
        return max(0.0, float(seconds) * self.time_scale)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(self.scale(seconds))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> List[ScheduledTask]:
        return [t for t in self._tasks if t.active]

    def call_later(self, delay: float, callback: Callable, *args, name: str = None) -> ScheduledTask:
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        name = name or getattr(callback, "__name__", "call_later")
        return self._start(name, lambda handle: self._run_later(handle, delay, callback, args))

    def call_every(
        self,
        interval: float,
        callback: Callable,
        *args,
        name: str = None,
        until: Optional[float] = None
    ) -> ScheduledTask:
        """Run ``callback(*args)`` every ``interval`` seconds.

        With ``until`` the task stops on the first tick after that many
        seconds have elapsed. The callback may cancel its own task.
        """
        name = name or getattr(callback, "__name__", "call_every")
        return self._start(name, lambda handle: self._run_every(handle, interval, callback, args, until))

    def spawn(self, coro_fn: Callable[..., Awaitable[Any]], *args, name: str = None) -> ScheduledTask:
        """Run a multi-step coroutine as one cancellable task."""
        name = name or getattr(coro_fn, "__name__", "spawn")
        return self._start(name, lambda handle: self._invoke(handle, coro_fn, args))

    def cancel_all(self) -> int:
        cancelled = 0
        for task in list(self._tasks):
            if task.cancel():
                cancelled += 1
        return cancelled

    def close(self) -> int:
        """Cancel everything and refuse new work until ``reopen``."""
        self._closed = True
        return self.cancel_all()

    def reopen(self) -> None:
        self._closed = False

    def _start(self, name: str, factory: Callable[[ScheduledTask], Awaitable[Any]]) -> ScheduledTask:
        handle = ScheduledTask(f"{self.owner}:{name}")
        if self._closed:
            handle._cancelled = True
            logger.debug("scheduler_closed", owner=self.owner, task=name)
            return handle

        loop = asyncio.get_running_loop()
        handle._task = loop.create_task(self._run(handle, factory))
        self._tasks.add(handle)
        handle._task.add_done_callback(lambda _t: self._finish(handle))
        return handle

    async def _run(self, handle: ScheduledTask, factory: Callable[[ScheduledTask], Awaitable[Any]]) -> None:
        # Settle state before the task reports done.
        try:
            await factory(handle)
        finally:
            self._finish(handle)

    def _finish(self, handle: ScheduledTask) -> None:
        self._tasks.discard(handle)
        handle._finished()

    async def _run_later(self, handle: ScheduledTask, delay: float, callback: Callable, args: tuple) -> None:
        await asyncio.sleep(self.scale(delay))
        if not handle.cancelled:
            await self._invoke(handle, callback, args)

    async def _run_every(
        self,
        handle: ScheduledTask,
        interval: float,
        callback: Callable,
        args: tuple,
        until: Optional[float]
    ) -> None:
        loop = asyncio.get_running_loop()
        period = self.scale(interval)
        deadline = None if until is None else loop.time() + self.scale(until)
        while not handle.cancelled:
            await asyncio.sleep(period)
            if deadline is not None and loop.time() > deadline:
                break
            await self._invoke(handle, callback, args)

    async def _invoke(self, handle: ScheduledTask, callback: Callable, args: tuple) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            # Background tasks have no caller; report and keep the loop alive.
            logger.error("scheduled_task_failed", owner=self.owner, task=handle.name, error=str(e), exc_info=True)
            if self._on_error:
                self._on_error(handle.name, e)
