"""
Enumerations for round phases, slip statuses and connection health
"""

from enum import Enum


class SnapshotPhase(str, Enum):
    """Phase as reported by the server in a realtime snapshot"""

    WAITING = "waiting"
    PLAYING = "playing"
    CRASHED = "crashed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: object) -> "SnapshotPhase":
        """Map the server's phase/status vocabulary onto the canonical phases.

        The backend has reported the live phase as 'playing', 'starting', 'active',
        'running' and 'flying' over time; all of them mean the multiplier is rising.
        """
        if raw is None:
            return cls.UNKNOWN
        value = str(raw).strip().lower()
        if value in _PHASE_ALIASES:
            return _PHASE_ALIASES[value]
        return cls.UNKNOWN


_PHASE_ALIASES = {
    "waiting": SnapshotPhase.WAITING,
    "countdown": SnapshotPhase.WAITING,
    "betting": SnapshotPhase.WAITING,
    "playing": SnapshotPhase.PLAYING,
    "starting": SnapshotPhase.PLAYING,
    "active": SnapshotPhase.PLAYING,
    "running": SnapshotPhase.PLAYING,
    "flying": SnapshotPhase.PLAYING,
    "crashed": SnapshotPhase.CRASHED,
    "crash": SnapshotPhase.CRASHED,
    "ended": SnapshotPhase.CRASHED,
}


class ClientGameState(str, Enum):
    """Local game state, owned by the PhaseReconciler"""

    WAITING = "waiting"
    PLAYING = "playing"
    CRASHED = "crashed"
    RECOVERING = "recovering"  # "loading after crash" buffer before the next countdown

    @property
    def is_live(self) -> bool:
        """Snapshots may drive waiting/playing transitions in this state."""
        return self in (ClientGameState.WAITING, ClientGameState.PLAYING)

    @property
    def is_crash_display(self) -> bool:
        return self in (ClientGameState.CRASHED, ClientGameState.RECOVERING)


class SlipStatus(str, Enum):
    """Bet slip lifecycle status"""

    ACTIVE = "active"
    CASHED = "cashed"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self is not SlipStatus.ACTIVE


class ConnectionStatus(str, Enum):
    """Connection health as shown to the user"""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
