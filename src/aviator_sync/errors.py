"""
Error taxonomy for the crash game engine.

Two families:
- TransportError: the network or the HTTP layer failed. On the poll path it is
  converted into a SnapshotFailure and never leaves the scheduler; on the command
  path (place bet / cash out) it is raised to the caller.
- CommandError: a user command was rejected. Always raised synchronously to the
  caller with a message that can be shown as-is.

Stale snapshots are not errors: the reconciler discards them and reports it in the
returned StateDelta.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .core.session import PendingAction


class EngineError(Exception):
    """Base class for every error raised by aviator_sync"""


class TransportError(EngineError):
    """Network or HTTP-level failure talking to the game server"""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class CommandError(EngineError):
    """A user command was rejected before or by the server"""

    @property
    def user_message(self) -> str:
        return str(self)


class InvalidPhaseError(CommandError):
    """Command issued against a phase that does not allow it (stale phase)"""


class InvalidStakeError(CommandError):
    """Stake is not a finite amount inside the configured bounds"""


class InsufficientBalanceError(CommandError):
    """Stake exceeds the last known balance"""


class BetLimitError(CommandError):
    """Single-slip mode and a slip is already active"""


class UnknownSlipError(CommandError):
    """No bet slip with the given id"""


class AlreadySettledError(CommandError):
    """The slip is already cashed or lost"""


class CashOutInFlightError(AlreadySettledError):
    """A cash-out for this slip is already awaiting the server"""


class BetRejectedError(CommandError):
    """The server refused the command (domain error)"""

    def __init__(self, message: str, status: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload


class SessionExpiredError(CommandError):
    """
    The server answered 401/403.

    The caller should send the user to ``redirect_to``; ``action`` is the queued
    command that will be replayed by ``CrashGameEngine.resume_session``.
    """

    def __init__(
        self,
        message: str = "Session expired, please log in again",
        status: int | None = None,
        redirect_to: str = "/login",
        action: PendingAction | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.redirect_to = redirect_to
        self.action = action


__all__ = [
    "AlreadySettledError",
    "BetLimitError",
    "BetRejectedError",
    "CashOutInFlightError",
    "CommandError",
    "EngineError",
    "InsufficientBalanceError",
    "InvalidPhaseError",
    "InvalidStakeError",
    "SessionExpiredError",
    "TransportError",
    "UnknownSlipError",
]
