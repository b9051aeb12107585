"""
Poll Scheduler & Watchdog

Drives the realtime poll, owns connection health, runs the stall watchdog and the
safety net, and performs coalesced full resynchronizations.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from ..config import Config
from ..errors import EngineError
from ..models.enums import ClientGameState, ConnectionStatus
from ..models.snapshot import SnapshotFailure
from ..services.event_bus import EventBus, Events
from ..services.logger import PerformanceLogger
from ..sources.feed_monitors import ConnectionHealthMonitor
from ..sources.phase_reconciler import StateDelta
from ..sources.watchdog import StallReason, StallWatchdog
from .timers import IntervalTimer, OneShotTimer

if TYPE_CHECKING:
    from ..sources.api_client import AviatorApiClient
    from ..sources.phase_reconciler import PhaseReconciler
    from .bet_ledger import BetLedger
    from .round_history import RoundHistory

logger = logging.getLogger(__name__)


class PollScheduler:
    """
    Timers owned here:
        poll                 adaptive: poll_interval_sec, backoff_interval_sec while disconnected
        watchdog-heartbeat   stall detectors every heartbeat_interval_sec
        safety-net           resync request every safety_net_interval_sec
        resync               debounced, coalesced full resync
        post-recovery-fetch  forced resync right after recovering -> waiting
    """

    def __init__(
        self,
        client: "AviatorApiClient",
        reconciler: "PhaseReconciler",
        ledger: "BetLedger",
        history: "RoundHistory",
        config: Config,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.reconciler = reconciler
        self.ledger = ledger
        self.history = history
        self.event_bus = event_bus
        self._clock = clock

        polling = config.POLLING
        self.poll_interval = polling["poll_interval_sec"]
        self.backoff_interval = polling["backoff_interval_sec"]
        self.resync_after_errors = polling["resync_after_errors"]
        self.resync_debounce = polling["resync_debounce_sec"]

        self.health = ConnectionHealthMonitor(
            error_threshold=polling["error_threshold"],
            clock=clock,
            on_change=self._on_connection_change,
        )
        self.watchdog = StallWatchdog(
            self.health, reconciler, ledger.seconds_since_bet_sync, config, clock=clock
        )

        self._poll_timer = IntervalTimer("poll", self.current_interval, self.poll_once, immediate=True)
        self._heartbeat = IntervalTimer(
            "watchdog-heartbeat", config.WATCHDOG["heartbeat_interval_sec"], self.check_watchdog
        )
        self._safety_net = IntervalTimer(
            "safety-net", polling["safety_net_interval_sec"], self._safety_net_tick
        )
        self._resync_timer = OneShotTimer("resync", self.resync_debounce, self._run_scheduled_resync)
        self._post_recovery = OneShotTimer(
            "post-recovery-fetch", polling["post_recovery_fetch_delay_sec"], self.force_resync
        )

        self._resync_running = False
        self._pending_reasons: list[str] = []
        self._tasks: set[asyncio.Task] = set()

        self.stats = {
            "polls": 0,
            "poll_failures": 0,
            "resyncs_scheduled": 0,
            "resyncs_coalesced": 0,
            "resyncs_completed": 0,
        }

    # ========================================================================
    # CADENCE
    # ========================================================================

    def current_interval(self) -> float:
        if self.health.status is ConnectionStatus.DISCONNECTED:
            return self.backoff_interval
        return self.poll_interval

    @property
    def timers(self) -> list[OneShotTimer | IntervalTimer]:
        return [
            self._poll_timer,
            self._heartbeat,
            self._safety_net,
            self._resync_timer,
            self._post_recovery,
        ]

    @property
    def resync_pending(self) -> bool:
        return self._resync_timer.pending or self._resync_running

    def start(self):
        self._poll_timer.start()
        self._heartbeat.start()
        self._safety_net.start()
        logger.info(f"Polling every {self.poll_interval}s")

    async def stop(self):
        self._resync_timer.cancel()
        self._post_recovery.cancel()
        for task in list(self._tasks):
            task.cancel()
        await self._poll_timer.stop()
        await self._heartbeat.stop()
        await self._safety_net.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ========================================================================
    # POLLING
    # ========================================================================

    async def poll_once(self) -> StateDelta | None:
        """
        Fetch one snapshot and reconcile it.

        Returns:
            The StateDelta, or None if the poll failed
        """
        started = self._clock()
        result = await self.client.fetch_snapshot()
        self.stats["polls"] += 1

        if isinstance(result, SnapshotFailure):
            self.stats["poll_failures"] += 1
            errors = self.health.record_failure(str(result))
            if errors >= self.resync_after_errors:
                self.request_resync(f"{errors} consecutive poll failures")
            return None

        self.health.record_success(latency=self._clock() - started)
        delta = self.reconciler.apply(result)
        if not delta.discarded:
            self._follow_up(delta)
        return delta

    def _follow_up(self, delta: StateDelta):
        if delta.new_round or delta.entered(ClientGameState.PLAYING):
            self._spawn(self.ledger.sync_active_bet(delta.round_number), "Active bet check")
        if delta.entered(ClientGameState.CRASHED):
            self.history.refresh_after_crash()
        if delta.countdown_started:
            self.request_resync("countdown started")

    def _spawn(self, coro: Awaitable[Any], label: str):
        task = asyncio.ensure_future(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(coro: Awaitable[Any], label: str):
        try:
            await coro
        except EngineError as e:
            logger.warning(f"{label} failed: {e}")
        except Exception as e:
            logger.error(f"{label} failed unexpectedly: {e}", exc_info=True)

    # ========================================================================
    # WATCHDOG
    # ========================================================================

    def check_watchdog(self) -> list[StallReason]:
        """Run the stall detectors; any trip requests a resync."""
        reasons = self.watchdog.check()
        if StallReason.NO_SUCCESSFUL_POLL in reasons:
            self.health.mark_disconnected(
                f"no successful poll for {self.health.seconds_since_success():.1f}s"
            )
        if reasons:
            self.request_resync(", ".join(reason.value for reason in reasons))
        return reasons

    def _safety_net_tick(self):
        self.request_resync("safety net")

    def on_recovery_complete(self):
        """recovering -> waiting: fetch right away instead of waiting for the next poll."""
        self._post_recovery.restart()

    # ========================================================================
    # RESYNC
    # ========================================================================

    def request_resync(self, reason: str) -> bool:
        """
        Schedule a full resync after the debounce delay.

        Returns:
            False if one is already pending or running (the request is coalesced)
        """
        if self.resync_pending:
            self.stats["resyncs_coalesced"] += 1
            self._pending_reasons.append(reason)
            logger.debug(f"Resync already pending, coalesced: {reason}")
            return False

        self.stats["resyncs_scheduled"] += 1
        self._pending_reasons = [reason]
        self._resync_timer.start()
        logger.info(f"Resync scheduled in {self.resync_debounce}s: {reason}")
        self._publish(Events.RESYNC_SCHEDULED, {"reason": reason})
        return True

    async def _run_scheduled_resync(self):
        reasons = ", ".join(self._pending_reasons)
        await self.resync(reasons)

    async def force_resync(self) -> bool:
        """Resync now, dropping any pending scheduled one."""
        self._resync_timer.cancel()
        return await self.resync("forced")

    async def resync(self, reason: str = "") -> bool:
        """
        Full resync: snapshot, balance, crash history, bet history, active-bet check.

        Returns:
            False if a resync was already running
        """
        if self._resync_running:
            self.stats["resyncs_coalesced"] += 1
            return False

        self._resync_running = True
        self._pending_reasons = []
        try:
            with PerformanceLogger(logger, f"resync ({reason})" if reason else "resync", logging.INFO):
                self.health.mark_reconnecting()
                await self.poll_once()

                results = await asyncio.gather(
                    self.ledger.refresh_balance(),
                    self.history.refresh(),
                    self.ledger.refresh_bet_history(),
                    return_exceptions=True,
                )
                for label, result in zip(("balance", "crash history", "bet history"), results):
                    if isinstance(result, EngineError):
                        logger.warning(f"Resync: {label} refresh failed: {result}")
                    elif isinstance(result, BaseException):
                        logger.error(f"Resync: {label} refresh crashed: {result!r}", exc_info=result)

                try:
                    await self.ledger.sync_active_bet(self.reconciler.round_number)
                except EngineError as e:
                    logger.warning(f"Resync: active bet check failed: {e}")
        finally:
            self._resync_running = False

        if self.health.status is ConnectionStatus.RECONNECTING:
            # the resync poll failed without crossing the error threshold
            self.health.mark_disconnected("resync did not reach the server")

        self.stats["resyncs_completed"] += 1
        self._publish(
            Events.RESYNC_COMPLETED,
            {"reason": reason, "connection": self.health.status.value},
        )
        return True

    # ========================================================================
    # EVENTS
    # ========================================================================

    def _on_connection_change(self, old: ConnectionStatus, new: ConnectionStatus):
        self._publish(Events.CONNECTION_CHANGED, {"old": old.value, "new": new.value})

    def _publish(self, event: Events, data: Any):
        if self.event_bus is not None:
            self.event_bus.publish(event, data)

    def get_status(self) -> dict[str, Any]:
        return {
            "connection": self.health.get_status(),
            "watchdog": self.watchdog.get_status(),
            "interval": self.current_interval(),
            "resync_pending": self.resync_pending,
            **self.stats,
        }
