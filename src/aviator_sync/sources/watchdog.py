"""
Stall Watchdog

Independent stall detectors, each measured against its own timestamp. The poll
scheduler runs check() on every heartbeat and turns any trip into a coalesced
resync request.

Detectors:
- NO_SUCCESSFUL_POLL: nothing polled successfully for stale_poll_sec
- COUNTDOWN_STUCK: waiting, countdown unchanged for countdown_stall_sec
- BET_STATE_STALE: active-bet state not refreshed for bet_state_stale_sec
- PHASE_OVERRUN: waiting longer than max_waiting_sec or playing longer than max_playing_sec
"""

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config import Config
from ..models.enums import ClientGameState
from .feed_monitors import ConnectionHealthMonitor

if TYPE_CHECKING:
    from .phase_reconciler import PhaseReconciler

logger = logging.getLogger(__name__)


class StallReason(Enum):
    """Type of stall detected."""

    NO_SUCCESSFUL_POLL = "no_successful_poll"
    COUNTDOWN_STUCK = "countdown_stuck"
    BET_STATE_STALE = "bet_state_stale"
    PHASE_OVERRUN = "phase_overrun"


class StallWatchdog:
    """
    Usage:
        watchdog = StallWatchdog(health, reconciler, ledger.seconds_since_bet_sync, config)
        for reason in watchdog.check():
            ...
    """

    def __init__(
        self,
        health: ConnectionHealthMonitor,
        reconciler: "PhaseReconciler",
        bet_state_age: Callable[[], float],
        config: Config,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            health: Connection health monitor (poll freshness)
            reconciler: Phase reconciler (phase and countdown bookkeeping)
            bet_state_age: Seconds since the active-bet state was last refreshed
            config: Engine configuration (WATCHDOG section)
            clock: Monotonic time source
        """
        self.health = health
        self.reconciler = reconciler
        self.bet_state_age = bet_state_age
        self._clock = clock

        settings = config.WATCHDOG
        self.stale_poll_sec = settings["stale_poll_sec"]
        self.countdown_stall_sec = settings["countdown_stall_sec"]
        self.bet_state_stale_sec = settings["bet_state_stale_sec"]
        self.max_waiting_sec = settings["max_waiting_sec"]
        self.max_playing_sec = settings["max_playing_sec"]

        self.trip_counts = {reason: 0 for reason in StallReason}
        self.last_trip_at: float | None = None

    def check(self) -> list[StallReason]:
        """
        Run every detector once.

        Returns:
            The detectors that tripped (empty when healthy)
        """
        reasons = []

        poll_age = self.health.seconds_since_success()
        if poll_age > self.stale_poll_sec:
            reasons.append(StallReason.NO_SUCCESSFUL_POLL)
            logger.warning(f"No successful poll for {poll_age:.1f}s")

        state = self.reconciler.state
        if state is ClientGameState.WAITING:
            countdown_age = self.reconciler.seconds_since_countdown_change()
            if countdown_age > self.countdown_stall_sec:
                reasons.append(StallReason.COUNTDOWN_STUCK)
                logger.warning(f"Countdown unchanged for {countdown_age:.1f}s while waiting")

        bet_age = self.bet_state_age()
        if bet_age > self.bet_state_stale_sec:
            reasons.append(StallReason.BET_STATE_STALE)
            logger.info(f"Bet state not refreshed for {bet_age:.1f}s")

        phase_age = self.reconciler.seconds_in_phase()
        if (state is ClientGameState.WAITING and phase_age > self.max_waiting_sec) or (
            state is ClientGameState.PLAYING and phase_age > self.max_playing_sec
        ):
            reasons.append(StallReason.PHASE_OVERRUN)
            logger.warning(f"Stuck in {state.value} for {phase_age:.1f}s")

        for reason in reasons:
            self.trip_counts[reason] += 1
        if reasons:
            self.last_trip_at = self._clock()
        return reasons

    def get_status(self) -> dict[str, Any]:
        return {
            "trip_counts": {reason.value: count for reason, count in self.trip_counts.items()},
            "last_trip_at": self.last_trip_at,
        }
