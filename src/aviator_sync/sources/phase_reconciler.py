"""
Phase Reconciler

Turns the stream of realtime snapshots into the local round view.

Classes:
    RoundView: Immutable local view of the current round
    StateDelta: What one apply() changed
    PhaseReconciler: Finite-state machine over ClientGameState

State machine:
    waiting  -> playing     snapshot phase is playing
    waiting  -> crashed     crash reported while the live phase was never seen
    playing  -> crashed     server crash event, or live multiplier >= target crash point
    crashed  -> recovering  crash-hold timer
    recovering -> waiting   recovery timer, followed by a forced resync
    recovering -> playing   recovery timer, when the server already reported the next round live
    any      -> (same)      round number increases: earlier rounds are settled

Each snapshot is turned into a set of proposed field updates; only the fields that
differ from the current view are committed, in one assignment, together with round
settlement. No await happens between proposal and commit.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from ..config import Config
from ..core.timers import OneShotTimer
from ..models.enums import ClientGameState, SnapshotPhase
from ..models.snapshot import RoundSnapshot

logger = logging.getLogger(__name__)

CRASH_SOURCE_SERVER = "server"
CRASH_SOURCE_SAFEGUARD = "safeguard"


@dataclass(frozen=True)
class RoundView:
    """Local view of the round, owned by the reconciler"""

    state: ClientGameState = ClientGameState.WAITING
    round_number: int = 0
    time_remaining: int = 0
    target_multiplier: float = 1.0  # render target for the animator
    crash_point: float | None = None  # last known target crash point of this round
    crash_value: float | None = None  # displayed value of the most recent crash
    last_crashed_round: int = -1
    server_live: bool = False  # server reported this round live while crashed/recovering


@dataclass
class StateDelta:
    """Result of one reconciliation step"""

    previous_state: ClientGameState
    state: ClientGameState
    round_number: int
    changes: dict[str, Any] = field(default_factory=dict)
    new_round: bool = False
    settled_round: int | None = None
    crash_source: str | None = None
    countdown_started: bool = False
    discarded: bool = False
    reason: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    def entered(self, state: ClientGameState) -> bool:
        """True if this delta moved the machine into ``state``."""
        return self.state is state and self.previous_state is not state


class PhaseReconciler:
    """
    Single writer of ClientGameState.

    Usage:
        reconciler = PhaseReconciler(config, on_settle=ledger.settle_round)
        delta = reconciler.apply(snapshot)
    """

    def __init__(
        self,
        config: Config,
        on_settle: Callable[[int], Any] | None = None,
        on_resync: Callable[[], Any] | None = None,
        on_delta: Callable[[StateDelta], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_settle = on_settle
        self.on_resync = on_resync
        self.on_delta = on_delta
        self._clock = clock

        self._view = RoundView()
        self._applied_any = False
        self._last_request_seq: int | None = None

        now = clock()
        self.phase_entered_at = now
        self.last_countdown_change_at = now

        self.transition_history: list[dict[str, Any]] = []
        self.stats = {
            "applied": 0,
            "discarded": 0,
            "server_crashes": 0,
            "safeguard_crashes": 0,
            "rounds_settled": 0,
        }

        self._crash_hold = OneShotTimer(
            "crash-hold", config.TIMING["crash_hold_sec"], self.enter_recovering
        )
        self._recovery = OneShotTimer("recovery", config.TIMING["recovery_sec"], self.finish_recovery)

    # ========================================================================
    # READ-ONLY VIEW
    # ========================================================================

    @property
    def view(self) -> RoundView:
        return self._view

    @property
    def state(self) -> ClientGameState:
        return self._view.state

    @property
    def round_number(self) -> int:
        return self._view.round_number

    @property
    def time_remaining(self) -> int:
        return self._view.time_remaining

    @property
    def last_crash_value(self) -> float | None:
        return self._view.crash_value

    @property
    def timers(self) -> list[OneShotTimer]:
        return [self._crash_hold, self._recovery]

    def seconds_in_phase(self) -> float:
        return self._clock() - self.phase_entered_at

    def seconds_since_countdown_change(self) -> float:
        return self._clock() - self.last_countdown_change_at

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    def apply(self, snapshot: RoundSnapshot) -> StateDelta:
        """
        Reconcile one snapshot into the local view.

        Returns:
            StateDelta describing what changed (``discarded`` for stale snapshots)
        """
        view = self._view

        stale_reason = self._stale_reason(snapshot)
        if stale_reason:
            self.stats["discarded"] += 1
            logger.debug(f"Discarding stale snapshot (round {snapshot.round_number}): {stale_reason}")
            return StateDelta(
                previous_state=view.state,
                state=view.state,
                round_number=view.round_number,
                discarded=True,
                reason=stale_reason,
            )

        new_round = self._applied_any and snapshot.round_number > view.round_number
        proposed: dict[str, Any] = {"round_number": snapshot.round_number}
        settle_upto = snapshot.round_number - 1 if new_round else None

        # Crash first: a crash signal beats a waiting/playing signal in the same payload
        crash_source, crash_round = self._detect_crash(snapshot)
        if crash_source is not None:
            proposed["last_crashed_round"] = crash_round
            settle_upto = crash_round if settle_upto is None else max(settle_upto, crash_round)

        if new_round:
            proposed["crash_point"] = None

        if crash_source is not None and view.state.is_live:
            proposed["state"] = ClientGameState.CRASHED
            proposed["crash_value"] = self._crash_display_value(snapshot, crash_source)
            proposed["time_remaining"] = (
                math.ceil(snapshot.time_remaining) if snapshot.phase is SnapshotPhase.WAITING else 0
            )
        elif crash_source is None and view.state.is_live:
            self._propose_live_phase(snapshot, view, new_round, proposed)
        else:
            # crashed / recovering: bookkeeping only
            self._propose_held_phase(snapshot, view, crash_source, proposed)

        if snapshot.target_crash_point is not None and snapshot.phase is SnapshotPhase.PLAYING:
            proposed["crash_point"] = snapshot.target_crash_point

        changes = {k: v for k, v in proposed.items() if getattr(view, k) != v}
        delta = self._commit(view, changes, new_round=new_round, crash_source=crash_source)

        if settle_upto is not None and settle_upto >= 0:
            delta.settled_round = settle_upto
            self._settle(settle_upto)

        self._applied_any = True
        if snapshot.request_seq is not None:
            self._last_request_seq = snapshot.request_seq
        self.stats["applied"] += 1

        if delta.changed or delta.settled_round is not None:
            self._emit(delta)
        return delta

    def _stale_reason(self, snapshot: RoundSnapshot) -> str:
        if (
            snapshot.request_seq is not None
            and self._last_request_seq is not None
            and snapshot.request_seq < self._last_request_seq
        ):
            return f"request {snapshot.request_seq} answered after request {self._last_request_seq}"
        if snapshot.round_number < self._view.round_number:
            return f"round went backwards ({self._view.round_number} -> {snapshot.round_number})"
        return ""

    def _detect_crash(self, snapshot: RoundSnapshot) -> tuple[str | None, int | None]:
        """Return (source, round) for a crash not applied yet, else (None, None)."""
        view = self._view

        if snapshot.crash_reported:
            crashed_round = snapshot.crashed_round_number
            # before the first snapshot only a crash of the reported round itself is news
            oldest = view.round_number if self._applied_any else snapshot.round_number
            if crashed_round > view.last_crashed_round and crashed_round >= oldest:
                return CRASH_SOURCE_SERVER, crashed_round
            return None, None

        if (
            view.state.is_live
            and snapshot.phase is SnapshotPhase.PLAYING
            and snapshot.target_crash_point is not None
            and snapshot.live_multiplier >= snapshot.target_crash_point
            and snapshot.round_number > view.last_crashed_round
        ):
            return CRASH_SOURCE_SAFEGUARD, snapshot.round_number

        return None, None

    def _crash_display_value(self, snapshot: RoundSnapshot, source: str) -> float:
        if snapshot.crashed_value is not None:
            return snapshot.crashed_value
        if source == CRASH_SOURCE_SAFEGUARD or snapshot.phase is not SnapshotPhase.WAITING:
            if snapshot.target_crash_point is not None:
                return snapshot.target_crash_point
        if self._view.crash_point is not None:
            return self._view.crash_point
        return self._view.target_multiplier

    def _propose_live_phase(
        self,
        snapshot: RoundSnapshot,
        view: RoundView,
        new_round: bool,
        proposed: dict[str, Any],
    ):
        if snapshot.phase is SnapshotPhase.WAITING:
            if view.state is ClientGameState.PLAYING and not new_round:
                logger.debug(f"Ignoring waiting snapshot for live round {snapshot.round_number}")
                return
            proposed["state"] = ClientGameState.WAITING
            proposed["time_remaining"] = math.ceil(snapshot.time_remaining)
            proposed["target_multiplier"] = 1.0
        elif snapshot.phase is SnapshotPhase.PLAYING:
            if snapshot.round_number <= view.last_crashed_round:
                logger.debug(f"Ignoring live snapshot for crashed round {snapshot.round_number}")
                return
            proposed["state"] = ClientGameState.PLAYING
            proposed["time_remaining"] = 0
            proposed["target_multiplier"] = snapshot.live_multiplier

    def _propose_held_phase(
        self,
        snapshot: RoundSnapshot,
        view: RoundView,
        crash_source: str | None,
        proposed: dict[str, Any],
    ):
        """Track the server phase while the crash display is held, without leaving it."""
        if snapshot.phase is SnapshotPhase.WAITING:
            proposed["time_remaining"] = math.ceil(snapshot.time_remaining)
            proposed["server_live"] = False
        elif (
            snapshot.phase is SnapshotPhase.PLAYING
            and crash_source is None
            and snapshot.round_number > view.last_crashed_round
        ):
            # betting window is over even though the state still shows the crash
            proposed["time_remaining"] = 0
            proposed["target_multiplier"] = snapshot.live_multiplier
            proposed["server_live"] = True
        if crash_source is not None:
            proposed["server_live"] = False

    def _commit(
        self,
        view: RoundView,
        changes: dict[str, Any],
        new_round: bool = False,
        crash_source: str | None = None,
    ) -> StateDelta:
        """Apply ``changes`` in one assignment and update watchdog bookkeeping."""
        now = self._clock()
        previous_state = view.state
        if changes:
            self._view = replace(view, **changes)
        current = self._view

        if current.state is not previous_state:
            self.phase_entered_at = now
            self.last_countdown_change_at = now
            self._record_transition(previous_state, current)
        elif "time_remaining" in changes or new_round:
            self.last_countdown_change_at = now

        countdown_started = (
            current.state is ClientGameState.WAITING
            and current.time_remaining > 0
            and (new_round or previous_state is not ClientGameState.WAITING or view.time_remaining == 0)
        )

        if current.state is ClientGameState.CRASHED and previous_state is not ClientGameState.CRASHED:
            if crash_source == CRASH_SOURCE_SAFEGUARD:
                self.stats["safeguard_crashes"] += 1
            elif crash_source == CRASH_SOURCE_SERVER:
                self.stats["server_crashes"] += 1
            logger.info(
                f"Round {current.last_crashed_round} crashed at {current.crash_value:.2f}x ({crash_source})"
            )
            self._crash_hold.restart()

        return StateDelta(
            previous_state=previous_state,
            state=current.state,
            round_number=current.round_number,
            changes=changes,
            new_round=new_round,
            crash_source=crash_source if "state" in changes else None,
            countdown_started=countdown_started,
        )

    def _record_transition(self, previous: ClientGameState, view: RoundView):
        self.transition_history.append(
            {
                "from": previous.value,
                "to": view.state.value,
                "round": view.round_number,
                "at": self._clock(),
            }
        )
        if len(self.transition_history) > 20:
            self.transition_history.pop(0)
        logger.debug(f"Round {view.round_number}: {previous.value} -> {view.state.value}")

    def _settle(self, round_id: int):
        if self.on_settle is None:
            return
        self.stats["rounds_settled"] += 1
        self.on_settle(round_id)

    def _emit(self, delta: StateDelta):
        if self.on_delta is None:
            return
        try:
            self.on_delta(delta)
        except Exception as e:
            logger.error(f"Delta listener failed: {e}", exc_info=True)

    # ========================================================================
    # TIMER-DRIVEN TRANSITIONS
    # ========================================================================

    def enter_recovering(self):
        """crashed -> recovering (crash-hold timer)."""
        if self._view.state is not ClientGameState.CRASHED:
            return
        delta = self._commit(self._view, {"state": ClientGameState.RECOVERING})
        self._emit(delta)
        self._recovery.restart()

    def finish_recovery(self):
        """
        recovering -> waiting (recovery timer), then ask for a forced resync.

        If the server already reported the round live, go straight to playing.
        """
        view = self._view
        if view.state is not ClientGameState.RECOVERING:
            return
        if view.server_live and view.round_number > view.last_crashed_round:
            changes = {"state": ClientGameState.PLAYING, "time_remaining": 0, "server_live": False}
        else:
            changes = {"state": ClientGameState.WAITING, "server_live": False}
            if view.target_multiplier != 1.0:
                changes["target_multiplier"] = 1.0
        changes = {k: v for k, v in changes.items() if getattr(view, k) != v}
        delta = self._commit(view, changes)
        self._emit(delta)
        if self.on_resync is not None:
            self.on_resync()

    def stop(self):
        """Cancel crash-hold and recovery timers."""
        self._crash_hold.cancel()
        self._recovery.cancel()

    def get_state_summary(self) -> dict[str, Any]:
        view = self._view
        return {
            "state": view.state.value,
            "round_number": view.round_number,
            "time_remaining": view.time_remaining,
            "target_multiplier": view.target_multiplier,
            "crash_value": view.crash_value,
            "last_crashed_round": view.last_crashed_round,
            "seconds_in_phase": self.seconds_in_phase(),
            "recent_transitions": self.transition_history[-5:],
            "stats": dict(self.stats),
        }
