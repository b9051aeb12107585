"""
Input validation for user commands

Each validator raises the CommandError subclass the caller should see, with a
message that can be shown as-is.
"""

from decimal import Decimal
from typing import Any

from ..errors import InsufficientBalanceError, InvalidPhaseError, InvalidStakeError
from ..models.enums import ClientGameState
from ..utils.decimal_utils import to_decimal


def validate_stake(
    stake: Any,
    balance: Decimal | None,
    min_stake: Decimal,
    max_stake: Decimal,
) -> Decimal:
    """
    Validate a stake is a finite amount within bounds and affordable

    Args:
        stake: Requested stake (Decimal, int, float or numeric string)
        balance: Last known balance (None if never fetched)
        min_stake: Configured minimum
        max_stake: Configured maximum

    Returns:
        The stake as a Decimal

    Raises:
        InvalidStakeError: not a number, not finite, <= 0 or outside [min_stake, max_stake]
        InsufficientBalanceError: stake exceeds the balance
    """
    try:
        amount = to_decimal(stake)
    except ValueError as e:
        raise InvalidStakeError(f"Invalid stake: {stake!r}") from e

    # NaN / Infinity
    if not amount.is_finite():
        raise InvalidStakeError(f"Invalid stake: {amount} (must be finite)")

    if amount <= 0:
        raise InvalidStakeError(f"Stake must be positive, got {amount}")

    if amount < min_stake:
        raise InvalidStakeError(f"Minimum stake is {min_stake}")

    if amount > max_stake:
        raise InvalidStakeError(f"Maximum stake is {max_stake}")

    if balance is None or not balance.is_finite() or amount > balance:
        have = balance if balance is not None else Decimal("0")
        raise InsufficientBalanceError(f"Insufficient balance: have {have:.2f}, need {amount:.2f}")

    return amount


def validate_bet_window(state: ClientGameState, time_remaining: int):
    """Bets are accepted only during a running countdown."""
    if state is not ClientGameState.WAITING:
        raise InvalidPhaseError(f"Bets are only accepted during the countdown (round is {state.value})")
    if time_remaining <= 0:
        raise InvalidPhaseError("Betting window has closed")


def validate_cashout_window(state: ClientGameState, slip_round: int, live_round: int):
    """Cash-out only while the slip's own round is live."""
    if state is not ClientGameState.PLAYING:
        raise InvalidPhaseError(f"Can only cash out during active gameplay (round is {state.value})")
    if slip_round != live_round:
        raise InvalidPhaseError(f"Bet belongs to round {slip_round}, live round is {live_round}")
