"""
Data models for aviator_sync
"""

from .bet_slip import BetSlip, generate_slip_id
from .connection import ConnectionHealth
from .enums import ClientGameState, ConnectionStatus, SlipStatus, SnapshotPhase
from .snapshot import FailureKind, RoundSnapshot, SnapshotFailure

__all__ = [
    "BetSlip",
    "ClientGameState",
    "ConnectionHealth",
    "ConnectionStatus",
    "FailureKind",
    "RoundSnapshot",
    "SlipStatus",
    "SnapshotFailure",
    "SnapshotPhase",
    "generate_slip_id",
]
