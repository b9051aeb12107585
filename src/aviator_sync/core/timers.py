"""
Owned timer handles for the asyncio loop.

Every deferred action in the engine goes through a named OneShotTimer or
IntervalTimer held by the component that scheduled it, so shutdown can cancel all of
them and ``active`` tells whether anything is still pending.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class OneShotTimer:
    """
    Run ``callback`` once, ``delay`` seconds after start().

    Coroutine callbacks run as a task owned by the timer; cancel() cancels both the
    pending call and a running task. Exceptions are logged, never propagated.
    """

    def __init__(self, name: str, delay: float, callback: Callable[[], Any]):
        self.name = name
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self.fired = 0
        self.errors = 0

    @property
    def active(self) -> bool:
        """Pending, or its coroutine callback still running."""
        return self._handle is not None or (self._task is not None and not self._task.done())

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def start(self, delay: float | None = None) -> bool:
        """Schedule the callback. Returns False (no-op) if already pending."""
        if self._handle is not None:
            return False
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay if delay is None else delay, self._fire)
        return True

    def restart(self, delay: float | None = None):
        """Cancel any pending call and schedule again."""
        self._cancel_handle()
        self.start(delay)

    def cancel(self):
        self._cancel_handle()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _cancel_handle(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        self.fired += 1
        try:
            result = self.callback()
        except Exception as e:
            self.errors += 1
            logger.error(f"Timer '{self.name}' callback failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.errors += 1
            logger.error(
                f"Timer '{self.name}' task failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    def __repr__(self) -> str:
        return f"OneShotTimer({self.name!r}, delay={self.delay}, active={self.active})"


class IntervalTimer:
    """
    Run ``callback`` repeatedly on a background task.

    ``period`` is a number of seconds or a zero-argument callable re-evaluated after
    every run (adaptive cadence). Callbacks may be sync or async; the next period
    starts after the callback finished, so runs never overlap.
    """

    def __init__(
        self,
        name: str,
        period: float | Callable[[], float],
        callback: Callable[[], Any],
        immediate: bool = False,
    ):
        self.name = name
        self.period = period
        self.callback = callback
        self.immediate = immediate
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.errors = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_period(self) -> float:
        return self.period() if callable(self.period) else self.period

    def start(self) -> bool:
        if self.active:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return True

    def cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self):
        """Cancel and wait for the loop task to finish."""
        task = self._task
        self.cancel()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self):
        if not self.immediate:
            await asyncio.sleep(self.current_period())
        while True:
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.error(f"Interval '{self.name}' callback failed: {e}", exc_info=True)
            self.runs += 1
            await asyncio.sleep(self.current_period())

    def __repr__(self) -> str:
        return f"IntervalTimer({self.name!r}, active={self.active})"
