"""
Crash game engine - wires the components and exposes the UI-facing view

Data flow:
    PollScheduler -> AviatorApiClient -> PhaseReconciler -> {BetLedger, MultiplierAnimator, EventBus}

Ownership:
    ClientGameState   PhaseReconciler
    ConnectionHealth  ConnectionHealthMonitor (inside PollScheduler)
    slips, balance    BetLedger
Everything else only reads.
"""

import logging
import time
from collections.abc import Callable
from decimal import Decimal
from enum import Enum
from typing import Any

from ..config import Config
from ..errors import EngineError
from ..models.bet_slip import BetSlip
from ..models.connection import ConnectionHealth
from ..models.enums import ClientGameState, ConnectionStatus
from ..services.event_bus import EventBus, Events
from ..sources.api_client import AviatorApiClient
from ..sources.phase_reconciler import PhaseReconciler, StateDelta
from .animator import MultiplierAnimator
from .bet_ledger import BetLedger
from .poll_scheduler import PollScheduler
from .round_history import RoundHistory
from .session import PendingActionQueue

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class CrashGameEngine:
    """
    Client-side state engine for one game session.

    Usage:
        engine = CrashGameEngine(load_config())
        await engine.start()
        slip = await engine.place_bet(Decimal("50"))
        await engine.cash_out(slip.id)
        await engine.stop()
    """

    def __init__(
        self,
        config: Config | None = None,
        client: AviatorApiClient | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or Config()
        self.client = client or AviatorApiClient.from_config(self.config)
        self.event_bus = event_bus or EventBus()
        self.pending_actions = PendingActionQueue()

        self.reconciler = PhaseReconciler(self.config, on_delta=self._on_delta, clock=clock)
        self.animator = MultiplierAnimator(
            rate_per_sec=self.config.ANIMATION["multiplier_rate_per_sec"],
            frame_interval=self.config.ANIMATION["frame_interval_sec"],
            clock=clock,
        )
        self.ledger = BetLedger(
            self.client,
            self.reconciler,
            self.config,
            event_bus=self.event_bus,
            pending_actions=self.pending_actions,
            multiplier_source=lambda: self.multiplier,
            clock=clock,
        )
        self.history = RoundHistory(
            self.client,
            max_size=self.config.TIMING["history_max_size"],
            retry_delay=self.config.TIMING["history_retry_sec"],
            event_bus=self.event_bus,
        )
        self.scheduler = PollScheduler(
            self.client,
            self.reconciler,
            self.ledger,
            self.history,
            self.config,
            event_bus=self.event_bus,
            clock=clock,
        )
        self.reconciler.on_settle = self.ledger.settle_round
        self.reconciler.on_resync = self.scheduler.on_recovery_complete

        self._running = False
        self._stopped = False

    # ========================================================================
    # READ-ONLY VIEW
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._running

    @property
    def state(self) -> ClientGameState:
        return self.reconciler.state

    @property
    def time_remaining(self) -> int:
        return self.reconciler.time_remaining

    @property
    def round_number(self) -> int:
        return self.reconciler.round_number

    @property
    def multiplier(self) -> float:
        """The render multiplier."""
        state = self.reconciler.state
        if state is ClientGameState.PLAYING:
            return self.animator.value
        if state.is_crash_display and self.reconciler.last_crash_value is not None:
            return self.reconciler.last_crash_value
        return 1.0

    @property
    def last_crash_value(self) -> float | None:
        return self.reconciler.last_crash_value

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.scheduler.health.status

    @property
    def health(self) -> ConnectionHealth:
        return self.scheduler.health.health

    @property
    def slips(self) -> tuple[BetSlip, ...]:
        return self.ledger.slips

    @property
    def balance(self) -> Decimal | None:
        return self.ledger.balance

    @property
    def crash_history(self) -> list[float]:
        return self.history.crash_points

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def place_bet(self, stake: Any) -> BetSlip:
        return await self.ledger.place_bet(stake)

    async def cash_out(self, slip_id: str) -> BetSlip:
        return await self.ledger.cash_out(slip_id)

    async def force_resync(self) -> bool:
        return await self.scheduler.force_resync()

    def set_auto_bet(self, enabled: bool):
        self.ledger.set_auto_bet(enabled)

    async def resume_session(self, access_token: str) -> list[BetSlip | EngineError]:
        """
        Install a fresh token and replay the commands an expired session interrupted.

        Returns:
            One entry per replayed action: the slip, or the error it failed with
        """
        self.client.set_access_token(access_token)
        results: list[BetSlip | EngineError] = []
        for action in self.pending_actions.drain():
            if action.action != "place_bet":
                logger.warning(f"Dropping unsupported pending action {action.action}")
                continue
            try:
                results.append(await self.ledger.place_bet(action.payload["stake"]))
            except EngineError as e:
                logger.warning(f"Replay of {action.action} failed: {e}")
                results.append(e)
        return results

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Initial full sync, then start polling."""
        if self._running:
            return
        if self._stopped:
            raise RuntimeError("Engine was stopped; create a new one")
        self._running = True
        logger.info(f"Starting engine against {self.client.base_url}")
        await self.scheduler.force_resync()
        self.scheduler.start()

    async def stop(self):
        """Cancel every timer and close the client. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False

        await self.scheduler.stop()
        self.reconciler.stop()
        self.ledger.stop()
        self.history.stop()
        self.animator.stop()
        await self.client.close()
        logger.info("Engine stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def active_timers(self) -> list[str]:
        """Names of every timer or loop still pending."""
        timers = [
            *self.scheduler.timers,
            *self.reconciler.timers,
            *self.ledger.timers,
            *self.history.timers,
        ]
        names = [timer.name for timer in timers if timer.active]
        if self.animator.running:
            names.append("animator-frames")
        return names

    # ========================================================================
    # DELTA HANDLING
    # ========================================================================

    def _on_delta(self, delta: StateDelta):
        view = self.reconciler.view

        if delta.entered(ClientGameState.PLAYING) or (
            delta.new_round and view.state is ClientGameState.PLAYING
        ):
            # a new round never inherits the previous round's multiplier
            self.animator.start(
                initial=view.target_multiplier,
                crash_cap=view.crash_point,
                run_loop=self._running,
            )
        elif view.state is ClientGameState.PLAYING:
            self.animator.set_target(view.target_multiplier)
            if "crash_point" in delta.changes:
                self.animator.set_crash_cap(view.crash_point)

        if delta.entered(ClientGameState.CRASHED):
            self.animator.stop(freeze_at=view.crash_value)
        elif delta.entered(ClientGameState.WAITING):
            self.animator.reset()

        self.event_bus.publish(
            Events.STATE_CHANGED,
            {
                "previous_state": delta.previous_state.value,
                "state": delta.state.value,
                "round_number": delta.round_number,
                "time_remaining": view.time_remaining,
                "changes": {key: _plain(value) for key, value in delta.changes.items()},
            },
        )

        if delta.new_round:
            self.event_bus.publish(Events.NEW_ROUND, {"round_number": delta.round_number})
            self.ledger.prune()
        if view.state is ClientGameState.WAITING and (
            delta.new_round or delta.entered(ClientGameState.WAITING)
        ):
            self.ledger.schedule_auto_bet(view.round_number)

        if delta.entered(ClientGameState.PLAYING):
            self.event_bus.publish(Events.ROUND_STARTED, {"round_number": view.round_number})
        if delta.entered(ClientGameState.CRASHED):
            self.event_bus.publish(
                Events.ROUND_CRASHED,
                {
                    "round_number": view.last_crashed_round,
                    "crash_value": view.crash_value,
                    "source": delta.crash_source,
                },
            )

    def describe(self) -> dict[str, Any]:
        """Plain-dict view for logging and the CLI."""
        return {
            "state": self.state.value,
            "round_number": self.round_number,
            "time_remaining": self.time_remaining,
            "multiplier": round(self.multiplier, 2),
            "connection": self.connection_status.value,
            "balance": str(self.balance) if self.balance is not None else None,
            "active_slips": len(self.ledger.active_slips()),
            "crash_history": self.crash_history[:5],
        }
