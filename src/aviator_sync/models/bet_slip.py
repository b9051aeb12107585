"""
Bet slip data model
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ..errors import AlreadySettledError
from ..utils.decimal_utils import round_money, to_decimal
from .enums import SlipStatus


def generate_slip_id() -> str:
    """Client-side slip id: millisecond timestamp plus a random suffix."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:14]}"


@dataclass
class BetSlip:
    """
    A single wager on a single round

    Attributes:
        stake: Amount wagered
        round_id: Round the slip was placed in
        id: Client-generated unique id
        backend_id: Server bet id, set on confirmation
        status: active / cashed / lost
        placed_at: Unix timestamp of placement
        cashed_at: Unix timestamp of cash-out (if cashed)
        cashout_multiplier: Multiplier the slip was cashed at
        payout: stake x cashout_multiplier, rounded to cents
        settled_at: Unix timestamp of the terminal transition
    """

    stake: Decimal
    round_id: int
    id: str = field(default_factory=generate_slip_id)
    backend_id: str | None = None
    status: SlipStatus = SlipStatus.ACTIVE
    placed_at: float = field(default_factory=time.time)
    cashed_at: float | None = None
    cashout_multiplier: Decimal | None = None
    payout: Decimal | None = None
    settled_at: float | None = None

    def __post_init__(self):
        if self.stake <= 0:
            raise ValueError(f"stake must be positive, got {self.stake}")
        if self.round_id < 0:
            raise ValueError(f"round_id cannot be negative, got {self.round_id}")

    @property
    def is_active(self) -> bool:
        return self.status is SlipStatus.ACTIVE

    @property
    def confirmed(self) -> bool:
        return self.backend_id is not None

    def matches(self, ident: str) -> bool:
        """True for the client id or the server bet id."""
        return ident == self.id or (self.backend_id is not None and ident == self.backend_id)

    def mark_cashed(self, multiplier: Decimal, at: float | None = None) -> Decimal:
        """
        Settle the slip as cashed

        Args:
            multiplier: Multiplier the cash-out was accepted at
            at: Unix timestamp (defaults to now)

        Returns:
            The payout

        Raises:
            AlreadySettledError: slip is already cashed or lost
        """
        if not self.is_active:
            raise AlreadySettledError(f"Bet {self.id} is already {self.status.value}")

        multiplier = to_decimal(multiplier)
        timestamp = at if at is not None else time.time()
        self.status = SlipStatus.CASHED
        self.cashout_multiplier = multiplier
        self.payout = round_money(self.stake * multiplier)
        self.cashed_at = timestamp
        self.settled_at = timestamp
        return self.payout

    def mark_lost(self, at: float | None = None) -> bool:
        """Settle the slip as lost. Returns False if it was already terminal."""
        if not self.is_active:
            return False
        self.status = SlipStatus.LOST
        self.settled_at = at if at is not None else time.time()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "backend_id": self.backend_id,
            "round_id": self.round_id,
            "stake": str(self.stake),
            "status": self.status.value,
            "placed_at": self.placed_at,
            "cashed_at": self.cashed_at,
            "cashout_multiplier": (
                str(self.cashout_multiplier) if self.cashout_multiplier is not None else None
            ),
            "payout": str(self.payout) if self.payout is not None else None,
            "settled_at": self.settled_at,
        }
