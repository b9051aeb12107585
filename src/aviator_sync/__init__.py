"""
aviator_sync - client-side state engine for a polled crash game
"""

from .config import Config, ConfigError, load_config
from .core.engine import CrashGameEngine
from .errors import (
    AlreadySettledError,
    BetLimitError,
    BetRejectedError,
    CashOutInFlightError,
    CommandError,
    EngineError,
    InsufficientBalanceError,
    InvalidPhaseError,
    InvalidStakeError,
    SessionExpiredError,
    TransportError,
    UnknownSlipError,
)
from .models import BetSlip, ClientGameState, ConnectionStatus, SlipStatus
from .services.event_bus import EventBus, Events

__version__ = "0.4.0"

__all__ = [
    "AlreadySettledError",
    "BetLimitError",
    "BetRejectedError",
    "BetSlip",
    "CashOutInFlightError",
    "ClientGameState",
    "CommandError",
    "Config",
    "ConfigError",
    "ConnectionStatus",
    "CrashGameEngine",
    "EngineError",
    "EventBus",
    "Events",
    "InsufficientBalanceError",
    "InvalidPhaseError",
    "InvalidStakeError",
    "SessionExpiredError",
    "SlipStatus",
    "TransportError",
    "UnknownSlipError",
    "load_config",
]
