"""
Realtime round snapshot models.

A RoundSnapshot is the normalized answer to "what is happening now" from the
realtime endpoint. The server has used several field names for the same data over
time; ``RoundSnapshot.from_raw`` accepts all of them and coerces numbers so the
reconciler only ever sees canonical, finite values.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.decimal_utils import finite_float
from .enums import SnapshotPhase

# ---------------------------------------------------------------------------
# Field aliases (first present key wins)
# ---------------------------------------------------------------------------

ROUND_KEYS = ("round_number", "roundNumber", "round", "round_id")
PHASE_KEYS = ("phase", "status", "state")
COUNTDOWN_KEYS = ("time_remaining", "timeRemaining", "time_left", "countdown")
LIVE_MULTIPLIER_KEYS = ("current_multiplier", "liveMultiplier", "multiplier")
TARGET_KEYS = ("crash_point", "targetCrashPoint", "crashPoint")
CRASHED_VALUE_KEYS = ("crashed_at", "crashedValue", "previous_crash_point")
CRASH_FLAG_KEYS = ("game_crashed", "gameCrashed", "crashed")
CRASHED_ROUND_KEYS = ("crashed_round", "crashedRound")


def _first(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _positive_or_none(value: Any) -> float | None:
    number = finite_float(value)
    if number is None or number <= 0:
        return None
    return number


def _parse_phase(payload: dict[str, Any]) -> SnapshotPhase:
    # 'phase' is preferred; older servers only send 'status'
    for key in PHASE_KEYS:
        phase = SnapshotPhase.parse(payload.get(key))
        if phase is not SnapshotPhase.UNKNOWN:
            return phase
    return SnapshotPhase.UNKNOWN


def _parse_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RoundSnapshot(BaseModel):
    """Immutable, normalized realtime snapshot. Replaced every poll."""

    model_config = ConfigDict(frozen=True)

    round_number: int = Field(ge=0, description="Monotonic round id")
    phase: SnapshotPhase = Field(default=SnapshotPhase.UNKNOWN)
    time_remaining: float = Field(default=0.0, ge=0, description="Countdown seconds (waiting)")
    live_multiplier: float = Field(default=1.0, ge=1.0, description="Current multiplier (playing)")
    target_crash_point: float | None = Field(
        default=None, description="Crash point of the round, None when withheld"
    )
    crashed_value: float | None = Field(
        default=None, description="Realized crash multiplier when a crash just happened"
    )
    crash_event: bool = Field(default=False, description="Server's explicit crash flag")
    crashed_round: int | None = Field(default=None, description="Round id of the reported crash")
    request_seq: int | None = Field(default=None, description="Client request sequence number")
    received_at: float = Field(default=0.0, description="Monotonic receive time")

    @field_validator("time_remaining", mode="before")
    @classmethod
    def coerce_countdown(cls, v: Any) -> float:
        number = finite_float(v)
        if number is None or number < 0:
            return 0.0
        return number

    @field_validator("live_multiplier", mode="before")
    @classmethod
    def coerce_live_multiplier(cls, v: Any) -> float:
        number = finite_float(v)
        if number is None or number <= 0:
            return 1.0
        return max(1.0, number)

    @field_validator("target_crash_point", "crashed_value", mode="before")
    @classmethod
    def withhold_invalid(cls, v: Any) -> float | None:
        return _positive_or_none(v)

    @classmethod
    def from_raw(
        cls,
        payload: Any,
        request_seq: int | None = None,
        received_at: float = 0.0,
    ) -> RoundSnapshot:
        """Build a snapshot from a raw realtime payload.

        Raises:
            ValueError: payload is not an object or carries no usable round number
        """
        if not isinstance(payload, dict):
            raise ValueError(f"Snapshot payload must be an object, got {type(payload).__name__}")

        round_number = finite_float(_first(payload, ROUND_KEYS))
        if round_number is None or round_number < 0 or not math.isclose(round_number, int(round_number)):
            raise ValueError(f"Snapshot has no valid round number: {_first(payload, ROUND_KEYS)!r}")

        phase = _parse_phase(payload)

        crashed_value = _first(payload, CRASHED_VALUE_KEYS)
        if crashed_value is None and phase is SnapshotPhase.CRASHED:
            crashed_value = payload.get("crash_point")

        crashed_round = finite_float(_first(payload, CRASHED_ROUND_KEYS))

        return cls(
            round_number=int(round_number),
            phase=phase,
            time_remaining=_first(payload, COUNTDOWN_KEYS),
            live_multiplier=_first(payload, LIVE_MULTIPLIER_KEYS),
            target_crash_point=_first(payload, TARGET_KEYS),
            crashed_value=crashed_value,
            crash_event=_parse_flag(_first(payload, CRASH_FLAG_KEYS)),
            crashed_round=int(crashed_round) if crashed_round is not None else None,
            request_seq=request_seq,
            received_at=received_at,
        )

    @property
    def crash_reported(self) -> bool:
        """Server signalled a crash, either by flag or by phase."""
        return self.crash_event or self.phase is SnapshotPhase.CRASHED

    @property
    def crashed_round_number(self) -> int:
        """Round the reported crash belongs to.

        A crash flag on a waiting snapshot refers to the round that just ended.
        """
        if self.crashed_round is not None:
            return self.crashed_round
        if self.phase is SnapshotPhase.WAITING:
            return max(0, self.round_number - 1)
        return self.round_number


class FailureKind(StrEnum):
    TRANSPORT = "transport"
    HTTP = "http"
    MALFORMED = "malformed"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class SnapshotFailure:
    """A poll that produced no snapshot. Counted by the scheduler, never applied."""

    kind: FailureKind
    message: str
    status: int | None = None

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind.value} ({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"
