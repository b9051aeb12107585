"""
Sources module - everything that talks to or interprets the game server.
"""

from .api_client import AviatorApiClient
from .feed_monitors import ConnectionHealthMonitor
from .phase_reconciler import PhaseReconciler, RoundView, StateDelta
from .watchdog import StallReason, StallWatchdog

__all__ = [
    "AviatorApiClient",
    "ConnectionHealthMonitor",
    "PhaseReconciler",
    "RoundView",
    "StallReason",
    "StallWatchdog",
    "StateDelta",
]
