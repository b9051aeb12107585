"""
Bet ledger - bet slip lifecycle and wallet balance
"""

import logging
import time
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..config import Config
from ..errors import (
    AlreadySettledError,
    BetLimitError,
    CashOutInFlightError,
    EngineError,
    InvalidPhaseError,
    SessionExpiredError,
    UnknownSlipError,
)
from ..models.bet_slip import BetSlip
from ..services.event_bus import EventBus, Events
from ..utils.decimal_utils import multiplier_to_decimal
from .session import PendingAction, PendingActionQueue
from .timers import OneShotTimer
from .validators import validate_bet_window, validate_cashout_window, validate_stake

if TYPE_CHECKING:
    from ..sources.api_client import AviatorApiClient
    from ..sources.phase_reconciler import PhaseReconciler

logger = logging.getLogger(__name__)


class BetLedger:
    """
    Owns the bet slips and the balance

    Responsibilities:
    - Validate place / cash-out commands against the reconciler's phase
    - Optimistic placement: insert, then confirm or roll back
    - Settle slips exactly once (cashed by command, lost by round settlement)
    - Keep balance and active-bet state in step with the server
    """

    def __init__(
        self,
        client: "AviatorApiClient",
        reconciler: "PhaseReconciler",
        config: Config,
        event_bus: EventBus | None = None,
        pending_actions: PendingActionQueue | None = None,
        multiplier_source: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            client: API client used for commands and bookkeeping calls
            reconciler: Source of the current phase, round and countdown
            config: Engine configuration (FINANCIAL section)
            event_bus: Where slip and balance events are published
            pending_actions: Queue for commands interrupted by an expired session
            multiplier_source: Render multiplier reported with a cash-out
            clock: Monotonic time source
        """
        self.client = client
        self.reconciler = reconciler
        self.event_bus = event_bus
        self.pending_actions = pending_actions if pending_actions is not None else PendingActionQueue()
        self.multiplier_source = multiplier_source
        self._clock = clock

        financial = config.FINANCIAL
        self.min_stake: Decimal = financial["min_stake"]
        self.max_stake: Decimal = financial["max_stake"]
        self.multi_slip: bool = financial["multi_slip"]
        self.auto_bet: bool = financial["auto_bet"]
        self.max_slips_kept: int = financial["max_slips_kept"]
        self.login_path: str = config.API["login_path"]

        self._slips: list[BetSlip] = []  # newest first
        self._cashouts_in_flight: set[str] = set()
        self.balance: Decimal | None = None
        self.last_stake: Decimal | None = None

        self.server_has_active_bet: bool | None = None
        self.bet_state_synced_at = clock()
        self.bet_history: list[dict[str, Any]] = []

        self._auto_bet_round: int | None = None
        self._auto_bet_timer = OneShotTimer(
            "auto-bet", financial["auto_bet_delay_sec"], self._place_auto_bet
        )

        logger.info("BetLedger initialized")

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def slips(self) -> tuple[BetSlip, ...]:
        return tuple(self._slips)

    @property
    def timers(self) -> list[OneShotTimer]:
        return [self._auto_bet_timer]

    def active_slips(self, round_id: int | None = None) -> list[BetSlip]:
        return [
            slip
            for slip in self._slips
            if slip.is_active and (round_id is None or slip.round_id == round_id)
        ]

    def get_slip(self, ident: str) -> BetSlip | None:
        for slip in self._slips:
            if slip.matches(ident):
                return slip
        return None

    def is_cashing_out(self, slip_id: str) -> bool:
        return slip_id in self._cashouts_in_flight

    def available_balance(self) -> Decimal | None:
        """Balance minus the stakes of placements still awaiting the server."""
        if self.balance is None:
            return None
        pending = [slip.stake for slip in self._slips if slip.is_active and not slip.confirmed]
        return self.balance - sum(pending, Decimal("0"))

    def seconds_since_bet_sync(self) -> float:
        return self._clock() - self.bet_state_synced_at

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def place_bet(self, stake: Any) -> BetSlip:
        """
        Place a bet on the round in countdown

        Returns:
            The confirmed slip

        Raises:
            InvalidPhaseError, InvalidStakeError, InsufficientBalanceError, BetLimitError
            SessionExpiredError: carries the queued action for replay after login
            BetRejectedError, TransportError: server refused or unreachable (slip rolled back)
        """
        view = self.reconciler.view
        validate_bet_window(view.state, view.time_remaining)
        if not self.multi_slip and self.active_slips():
            raise BetLimitError("A bet is already active")
        amount = validate_stake(stake, self.available_balance(), self.min_stake, self.max_stake)

        slip = BetSlip(stake=amount, round_id=view.round_number)
        self._slips.insert(0, slip)
        self._publish(Events.SLIP_PLACED, slip.to_dict())

        try:
            result = await self.client.place_bet(amount)
        except SessionExpiredError as e:
            self._rollback(slip, str(e))
            e.action = self.pending_actions.enqueue(
                PendingAction("place_bet", {"stake": amount}, redirect_to=self.login_path)
            )
            e.redirect_to = self.login_path
            self._publish(Events.SESSION_EXPIRED, e.action.to_dict())
            raise
        except EngineError as e:
            self._rollback(slip, str(e))
            raise

        slip.backend_id = result["bet"]["id"]
        if result["balance"] is not None:
            self._set_balance(result["balance"])
        elif self.balance is not None:
            self._set_balance(self.balance - amount)
        self.last_stake = amount

        self._publish(Events.SLIP_CONFIRMED, slip.to_dict())
        logger.info(f"BET: {amount} on round {slip.round_id} (slip {slip.id}, bet {slip.backend_id})")
        return slip

    async def cash_out(self, slip_id: str) -> BetSlip:
        """
        Cash out an active slip at the current render multiplier

        Returns:
            The cashed slip (or the slip as settled, if the round crashed meanwhile)

        Raises:
            UnknownSlipError, InvalidPhaseError, AlreadySettledError, CashOutInFlightError
            BetRejectedError, SessionExpiredError, TransportError: slip stays active
        """
        slip = self.get_slip(slip_id)
        if slip is None:
            raise UnknownSlipError(f"No bet slip {slip_id}")

        view = self.reconciler.view
        validate_cashout_window(view.state, slip.round_id, view.round_number)
        if not slip.is_active:
            raise AlreadySettledError(f"Bet {slip.id} is already {slip.status.value}")
        if slip.id in self._cashouts_in_flight:
            raise CashOutInFlightError(f"Cash-out for bet {slip.id} is already in progress")
        if not slip.confirmed:
            raise InvalidPhaseError(f"Bet {slip.id} is not confirmed yet")

        multiplier = multiplier_to_decimal(self._current_multiplier())

        self._cashouts_in_flight.add(slip.id)
        try:
            result = await self.client.cash_out(slip.round_id, multiplier, slip.backend_id)
        finally:
            self._cashouts_in_flight.discard(slip.id)

        server_multiplier = result["bet"]["multiplier"]
        if server_multiplier is not None:
            multiplier = server_multiplier

        if result["balance"] is not None:
            self._set_balance(result["balance"])

        if not slip.is_active:
            logger.warning(
                f"Cash-out of bet {slip.id} confirmed after it was settled {slip.status.value}"
            )
            return slip

        payout = slip.mark_cashed(multiplier)
        self._publish(Events.SLIP_CASHED, slip.to_dict())
        logger.info(f"CASHOUT: bet {slip.id} at {multiplier}x, payout {payout}")

        try:
            await self.refresh_balance()
        except EngineError as e:
            logger.warning(f"Balance refresh after cash-out failed: {e}")
        return slip

    def _current_multiplier(self) -> float:
        if self.multiplier_source is not None:
            return self.multiplier_source()
        return self.reconciler.view.target_multiplier

    def _rollback(self, slip: BetSlip, reason: str):
        if slip in self._slips:
            self._slips.remove(slip)
        self._publish(Events.SLIP_ROLLED_BACK, {**slip.to_dict(), "reason": reason})
        logger.warning(f"Bet {slip.id} rolled back: {reason}")

    # ========================================================================
    # SETTLEMENT
    # ========================================================================

    def settle_round(self, round_id: int) -> list[BetSlip]:
        """
        Mark every active slip of ``round_id`` or earlier as lost.

        The only path to ``lost``. Synchronous: called inside the reconciler's commit.
        """
        lost = [slip for slip in self._slips if slip.is_active and slip.round_id <= round_id]
        for slip in lost:
            slip.mark_lost()
            self._publish(Events.SLIP_LOST, slip.to_dict())
        if lost:
            logger.info(f"Round {round_id} settled: {len(lost)} bet(s) lost")
        return lost

    def prune(self, keep: int | None = None) -> int:
        """Drop the oldest terminal slips so at most ``keep`` remain. Active slips stay."""
        keep = self.max_slips_kept if keep is None else keep
        excess = len(self._slips) - keep
        if excess <= 0:
            return 0

        removed = 0
        for slip in reversed(list(self._slips)):
            if removed >= excess:
                break
            if slip.status.is_terminal:
                self._slips.remove(slip)
                removed += 1
        return removed

    # ========================================================================
    # SERVER SYNC
    # ========================================================================

    async def refresh_balance(self) -> Decimal:
        balance = await self.client.fetch_balance()
        self._set_balance(balance)
        return balance

    async def sync_active_bet(self, round_number: int) -> bool:
        """Record whether the server has an active bet for ``round_number``. Never touches slips."""
        has_active_bet = await self.client.check_active_bet(round_number)
        self.server_has_active_bet = has_active_bet
        self.bet_state_synced_at = self._clock()

        local = bool(self.active_slips(round_number))
        if local != has_active_bet:
            logger.debug(
                f"Round {round_number}: server has_active_bet={has_active_bet}, local={local}"
            )
        return has_active_bet

    async def refresh_bet_history(self) -> list[dict[str, Any]]:
        self.bet_history = (await self.client.fetch_bet_history())[:20]
        return self.bet_history

    def _set_balance(self, balance: Decimal):
        old = self.balance
        if old == balance:
            return
        self.balance = balance
        self._publish(
            Events.BALANCE_CHANGED,
            {"old": str(old) if old is not None else None, "new": str(balance)},
        )

    # ========================================================================
    # AUTO-BET
    # ========================================================================

    def set_auto_bet(self, enabled: bool):
        self.auto_bet = enabled
        if not enabled:
            self._auto_bet_timer.cancel()
        logger.info(f"Auto-bet {'enabled' if enabled else 'disabled'}")

    def schedule_auto_bet(self, round_number: int) -> bool:
        """Re-place the last stake on a new round after the configured delay."""
        if not self.auto_bet or self.last_stake is None or round_number == self._auto_bet_round:
            return False
        if self.last_stake < self.min_stake or self.balance is None or self.balance < self.last_stake:
            logger.debug("Auto-bet skipped: last stake not affordable")
            return False
        self._auto_bet_round = round_number
        self._auto_bet_timer.restart()
        return True

    async def _place_auto_bet(self):
        if not self.auto_bet or self.last_stake is None:
            return
        try:
            await self.place_bet(self.last_stake)
        except EngineError as e:
            logger.warning(f"Auto-bet failed: {e}")

    def stop(self):
        self._auto_bet_timer.cancel()

    def get_summary(self) -> dict[str, Any]:
        cashed = [slip for slip in self._slips if slip.payout is not None]
        return {
            "balance": str(self.balance) if self.balance is not None else None,
            "slips": len(self._slips),
            "active": len(self.active_slips()),
            "total_staked": str(sum((slip.stake for slip in self._slips), Decimal("0"))),
            "total_payout": str(sum((slip.payout for slip in cashed), Decimal("0"))),
            "pending_actions": len(self.pending_actions),
        }

    def _publish(self, event: Events, data: Any):
        if self.event_bus is not None:
            self.event_bus.publish(event, data)
