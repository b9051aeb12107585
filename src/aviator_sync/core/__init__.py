"""Core module - bet ledger, polling, animation and the engine facade

Only the leaf modules are re-exported here; import the engine and the components
that depend on ``aviator_sync.sources`` from their own modules.
"""

from . import validators
from .animator import MultiplierAnimator
from .session import PendingAction, PendingActionQueue
from .timers import IntervalTimer, OneShotTimer
from .validators import validate_bet_window, validate_cashout_window, validate_stake

__all__ = [
    "IntervalTimer",
    "MultiplierAnimator",
    "OneShotTimer",
    "PendingAction",
    "PendingActionQueue",
    "validate_bet_window",
    "validate_cashout_window",
    "validate_stake",
    "validators",
]
