"""
Recent crash multipliers, refreshed after every crash
"""

import logging
from typing import TYPE_CHECKING

from ..errors import EngineError
from ..services.event_bus import EventBus, Events
from .timers import OneShotTimer

if TYPE_CHECKING:
    from ..sources.api_client import AviatorApiClient

logger = logging.getLogger(__name__)


class RoundHistory:
    """
    Most-recent-first list of crash multipliers.

    The server records a crash slightly after reporting it, so a crash triggers an
    immediate refresh plus one retry ``retry_delay`` seconds later.
    """

    def __init__(
        self,
        client: "AviatorApiClient",
        max_size: int = 20,
        retry_delay: float = 0.8,
        event_bus: EventBus | None = None,
    ):
        self.client = client
        self.max_size = max_size
        self.event_bus = event_bus
        self._points: list[float] = []
        self.last_error: str | None = None

        self._refresh_now = OneShotTimer("history-refresh", 0.0, self.refresh)
        self._retry = OneShotTimer("history-retry", retry_delay, self.refresh)

    @property
    def crash_points(self) -> list[float]:
        return list(self._points)

    @property
    def timers(self) -> list[OneShotTimer]:
        return [self._refresh_now, self._retry]

    async def refresh(self) -> list[float]:
        """Fetch the history. On failure the last known list is kept."""
        try:
            points = await self.client.fetch_history()
        except EngineError as e:
            self.last_error = str(e)
            logger.warning(f"Crash history refresh failed, keeping last known list: {e}")
            return self.crash_points

        self.last_error = None
        points = points[: self.max_size]
        if points != self._points:
            self._points = points
            if self.event_bus is not None:
                self.event_bus.publish(Events.HISTORY_UPDATED, {"crash_points": list(points)})
        return self.crash_points

    def refresh_after_crash(self):
        """Schedule the immediate refresh and the delayed retry."""
        self._refresh_now.restart()
        self._retry.restart()

    def stop(self):
        for timer in self.timers:
            timer.cancel()
