"""
Poll feed monitoring

ConnectionHealthMonitor is the single writer of ConnectionHealth. The poll scheduler
reports every outcome to it; everything else reads ``health``.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..models.connection import ConnectionHealth
from ..models.enums import ConnectionStatus

logger = logging.getLogger(__name__)


class ConnectionHealthMonitor:
    """
    Tracks poll outcomes and derives the connection status.

    Rules:
    - success: connected, consecutive errors reset
    - failure: consecutive_errors += 1; disconnected once it reaches error_threshold
    - reconnecting: only while a resync runs after a disconnect
    - watchdog: no success for too long forces disconnected
    """

    def __init__(
        self,
        error_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
        on_change: Callable[[ConnectionStatus, ConnectionStatus], Any] | None = None,
        latency_window: int = 20,
    ):
        """
        Args:
            error_threshold: Consecutive failures before disconnected
            clock: Monotonic time source
            on_change: Called with (old, new) whenever the status changes
            latency_window: Number of recent poll latencies kept for the average
        """
        self.error_threshold = error_threshold
        self._clock = clock
        self.on_change = on_change
        self._health = ConnectionHealth(last_success_at=clock())
        self._latencies: deque[float] = deque(maxlen=latency_window)

    @property
    def health(self) -> ConnectionHealth:
        """A copy; callers cannot write through it."""
        return replace(self._health)

    @property
    def status(self) -> ConnectionStatus:
        return self._health.status

    @property
    def consecutive_errors(self) -> int:
        return self._health.consecutive_errors

    def record_success(self, latency: float | None = None):
        """Record a successful poll."""
        health = self._health
        if health.consecutive_errors:
            logger.info(f"Poll recovered after {health.consecutive_errors} failed attempt(s)")
        health.consecutive_errors = 0
        health.last_success_at = self._clock()
        if latency is not None:
            self._latencies.append(latency)
        self._set_status(ConnectionStatus.CONNECTED)

    def record_failure(self, message: str) -> int:
        """
        Record a failed poll.

        Returns:
            consecutive error count after this failure
        """
        health = self._health
        health.consecutive_errors += 1
        health.total_errors += 1
        health.last_error = message

        # one warning per streak, plus one when the threshold is crossed
        if health.consecutive_errors == 1:
            logger.warning(f"Poll failed: {message}")
        else:
            logger.debug(f"Poll failed ({health.consecutive_errors} in a row): {message}")

        if health.consecutive_errors >= self.error_threshold:
            if health.status is not ConnectionStatus.DISCONNECTED:
                logger.warning(
                    f"{health.consecutive_errors} consecutive poll failures, marking disconnected"
                )
            self._set_status(ConnectionStatus.DISCONNECTED)
        return health.consecutive_errors

    def mark_disconnected(self, reason: str = ""):
        if self._health.status is not ConnectionStatus.DISCONNECTED:
            logger.warning(f"Connection marked disconnected{': ' + reason if reason else ''}")
        self._set_status(ConnectionStatus.DISCONNECTED)

    def mark_reconnecting(self):
        """Enter reconnecting. Only meaningful coming from disconnected."""
        if self._health.status is ConnectionStatus.DISCONNECTED:
            self._set_status(ConnectionStatus.RECONNECTING)

    def seconds_since_success(self) -> float:
        return self._clock() - self._health.last_success_at

    def average_latency(self) -> float | None:
        if not self._latencies:
            return None
        return sum(self._latencies) / len(self._latencies)

    def _set_status(self, status: ConnectionStatus):
        old = self._health.status
        if old is status:
            return
        self._health.status = status
        logger.info(f"Connection {old.value} -> {status.value}")
        if self.on_change is not None:
            try:
                self.on_change(old, status)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}", exc_info=True)

    def get_status(self) -> dict[str, Any]:
        health = self._health
        latency = self.average_latency()
        return {
            "status": health.status.value,
            "consecutive_errors": health.consecutive_errors,
            "total_errors": health.total_errors,
            "last_error": health.last_error,
            "seconds_since_success": self.seconds_since_success(),
            "avg_latency_ms": latency * 1000 if latency is not None else None,
        }
