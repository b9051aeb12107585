"""
Multiplier Animator

Presentational only: eases the displayed multiplier toward the latest polled value
on a frame loop of its own, never past the round's crash point.
"""

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class MultiplierAnimator:
    """
    value = min(min(target, crash_cap), value + rate * dt)

    Usage:
        animator.start(initial=1.0, crash_cap=2.4)
        animator.set_target(1.37)       # on every poll while playing
        animator.stop(freeze_at=2.4)    # on crash
    """

    def __init__(
        self,
        rate_per_sec: float = 0.05,
        frame_interval: float = 1 / 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_per_sec = rate_per_sec
        self.frame_interval = frame_interval
        self._clock = clock

        self.value = 1.0
        self.target = 1.0
        self.crash_cap: float | None = None

        self._task: asyncio.Task | None = None
        self._last_frame_at: float | None = None
        self.frames = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, initial: float = 1.0, crash_cap: float | None = None, run_loop: bool = True):
        """
        Start animating from ``initial``.

        Args:
            initial: Starting value (also the first target)
            crash_cap: Upper bound, normally the round's target crash point
            run_loop: Start the frame task (tests drive advance() directly)
        """
        self.crash_cap = crash_cap
        self.value = self._clamp(max(1.0, initial))
        self.target = self.value
        self._last_frame_at = self._clock()
        if run_loop and not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="animator-frames")

    def set_target(self, target: float):
        self.target = max(self.target, target)

    def set_crash_cap(self, crash_cap: float | None):
        self.crash_cap = crash_cap
        self.value = self._clamp(self.value)

    def _clamp(self, value: float) -> float:
        if self.crash_cap is None:
            return value
        return min(value, self.crash_cap)

    def advance(self, dt: float) -> float:
        """Move one step of ``dt`` seconds toward the target."""
        ceiling = self.target if self.crash_cap is None else min(self.target, self.crash_cap)
        if self.value < ceiling:
            self.value = min(ceiling, self.value + self.rate_per_sec * dt)
        else:
            self.value = self._clamp(self.value)
        return self.value

    def stop(self, freeze_at: float | None = None):
        """Stop the frame loop, optionally pinning the displayed value."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if freeze_at is not None:
            self.value = freeze_at
            self.target = freeze_at

    def reset(self):
        self.stop()
        self.value = 1.0
        self.target = 1.0
        self.crash_cap = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.frame_interval)
            now = self._clock()
            dt = now - (self._last_frame_at if self._last_frame_at is not None else now)
            self._last_frame_at = now
            self.advance(dt)
            self.frames += 1
