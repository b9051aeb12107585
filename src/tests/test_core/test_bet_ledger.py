"""
Tests for BetLedger

Tests cover:
- Placement: validation, optimistic insert, confirm / rollback
- Cash-out: phase checks, payout, in-flight guard, late confirmation
- Settlement: slips of crashed or superseded rounds are lost exactly once
- Session expiry: queued replay action
- Auto-bet scheduling
"""

import asyncio
from decimal import Decimal

import pytest

from aviator_sync.config import Config
from aviator_sync.core.bet_ledger import BetLedger
from aviator_sync.errors import (
    AlreadySettledError,
    BetLimitError,
    BetRejectedError,
    CashOutInFlightError,
    InsufficientBalanceError,
    InvalidPhaseError,
    SessionExpiredError,
    TransportError,
    UnknownSlipError,
)
from aviator_sync.models import SlipStatus
from aviator_sync.services import Events
from aviator_sync.sources.phase_reconciler import PhaseReconciler


@pytest.fixture
def published(event_bus):
    """Names of every event published on the bus, in order"""
    names = []
    for event in Events:
        event_bus.subscribe(event, lambda message: names.append(message["name"]), weak=False)
    return names


def bet_response(balance, bet_id="b-1", multiplier=None):
    return {
        "balance": Decimal(balance) if balance is not None else None,
        "bet": {"id": bet_id, "amount": None, "multiplier": multiplier, "payout": None},
    }


async def place_in_countdown(ledger, reconciler, snap, round_number=7, stake=20):
    reconciler.apply(snap(round_number, "waiting", time_remaining=5))
    return await ledger.place_bet(stake)


class TestPlaceBet:
    @pytest.mark.asyncio
    async def test_place_during_countdown(self, ledger, reconciler, snap, mock_client, published):
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        slip = await ledger.place_bet("50")

        mock_client.place_bet.assert_awaited_once_with(Decimal("50"))
        assert slip.round_id == 6
        assert slip.backend_id == "b-1"
        assert slip.status is SlipStatus.ACTIVE
        assert ledger.balance == Decimal("50.00")
        assert ledger.last_stake == Decimal("50")
        assert ledger.slips == (slip,)
        assert published == ["slip.placed", "wallet.balance_changed", "slip.confirmed"]

    @pytest.mark.asyncio
    async def test_local_decrement_without_server_balance(self, ledger, reconciler, snap, mock_client):
        mock_client.place_bet.return_value = bet_response(None)
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        await ledger.place_bet(30)
        assert ledger.balance == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_rejected_outside_countdown(self, ledger, reconciler, snap, mock_client):
        reconciler.apply(snap(6, "playing", live_multiplier=1.2))
        with pytest.raises(InvalidPhaseError):
            await ledger.place_bet(50)
        mock_client.place_bet.assert_not_awaited()
        assert ledger.slips == ()

    @pytest.mark.asyncio
    async def test_rejected_when_countdown_over(self, ledger, reconciler, snap):
        reconciler.apply(snap(6, "waiting", time_remaining=0))
        with pytest.raises(InvalidPhaseError):
            await ledger.place_bet(50)

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, ledger, reconciler, snap, mock_client):
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        with pytest.raises(InsufficientBalanceError):
            await ledger.place_bet(150)
        mock_client.place_bet.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [BetRejectedError("Betting is closed", status=400), TransportError("timed out")]
    )
    async def test_rollback_on_failure(self, ledger, reconciler, snap, mock_client, published, error):
        mock_client.place_bet.side_effect = error
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        with pytest.raises(type(error)):
            await ledger.place_bet(50)
        assert ledger.slips == ()
        assert ledger.balance == Decimal("100.00")
        assert published == ["slip.placed", "slip.rolled_back"]

    @pytest.mark.asyncio
    async def test_session_expired_queues_replay(self, ledger, reconciler, snap, mock_client, published):
        mock_client.place_bet.side_effect = SessionExpiredError(status=401)
        reconciler.apply(snap(6, "waiting", time_remaining=8))

        with pytest.raises(SessionExpiredError) as exc_info:
            await ledger.place_bet(20)

        error = exc_info.value
        assert error.redirect_to == "/login"
        assert error.action.action == "place_bet"
        assert error.action.payload == {"stake": Decimal("20")}
        assert len(ledger.pending_actions) == 1
        assert ledger.slips == ()
        assert published[-1] == "wallet.session_expired"

    @pytest.mark.asyncio
    async def test_single_slip_mode(self, mock_client, clock, snap):
        config = Config({"financial": {"multi_slip": False}})
        reconciler = PhaseReconciler(config, clock=clock)
        ledger = BetLedger(mock_client, reconciler, config, clock=clock)
        ledger.balance = Decimal("1000")
        reconciler.apply(snap(6, "waiting", time_remaining=8))

        await ledger.place_bet(20)
        with pytest.raises(BetLimitError):
            await ledger.place_bet(20)

    @pytest.mark.asyncio
    async def test_multiple_slips_per_round(self, ledger, reconciler, snap, mock_client):
        mock_client.place_bet.side_effect = [bet_response("80", "b-1"), bet_response("60", "b-2")]
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        first = await ledger.place_bet(20)
        second = await ledger.place_bet(20)
        assert ledger.slips == (second, first)
        assert ledger.active_slips(6) == [second, first]

    @pytest.mark.asyncio
    async def test_pending_placement_reserves_stake(self, ledger, reconciler, snap, mock_client):
        release = asyncio.Event()

        async def slow_place_bet(amount):
            await release.wait()
            return bet_response("40")

        mock_client.place_bet.side_effect = slow_place_bet
        reconciler.apply(snap(6, "waiting", time_remaining=8))

        first = asyncio.ensure_future(ledger.place_bet(60))
        await asyncio.sleep(0)
        assert ledger.available_balance() == Decimal("40.00")
        with pytest.raises(InsufficientBalanceError):
            await ledger.place_bet(60)

        release.set()
        slip = await first
        assert slip.confirmed
        assert ledger.available_balance() == Decimal("40")
        assert mock_client.place_bet.await_count == 1


class TestCashOut:
    @pytest.mark.asyncio
    async def test_immediate_cash_out_during_countdown_rejected(self, ledger, reconciler, snap, mock_client):
        reconciler.apply(snap(6, "waiting", time_remaining=8))
        slip = await ledger.place_bet(50)
        assert ledger.balance == Decimal("50.00")

        with pytest.raises(InvalidPhaseError):
            await ledger.cash_out(slip.id)
        mock_client.cash_out.assert_not_awaited()
        assert slip.is_active

    @pytest.mark.asyncio
    async def test_cash_out_payout(self, ledger, reconciler, snap, mock_client, published):
        mock_client.place_bet.return_value = bet_response("80")
        mock_client.fetch_balance.return_value = Decimal("117.00")
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.85))

        result = await ledger.cash_out(slip.id)

        mock_client.cash_out.assert_awaited_once_with(7, Decimal("1.85"), "b-1")
        assert result is slip
        assert slip.status is SlipStatus.CASHED
        assert slip.payout == Decimal("37.00")
        assert ledger.balance == Decimal("117.00")
        assert "slip.cashed" in published

    @pytest.mark.asyncio
    async def test_cash_out_by_backend_id(self, ledger, reconciler, snap):
        await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        slip = await ledger.cash_out("b-1")
        assert slip.status is SlipStatus.CASHED

    @pytest.mark.asyncio
    async def test_server_multiplier_adopted(self, ledger, reconciler, snap, mock_client):
        mock_client.cash_out.return_value = bet_response("120", multiplier=Decimal("1.80"))
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.85))
        await ledger.cash_out(slip.id)
        assert slip.cashout_multiplier == Decimal("1.80")
        assert slip.payout == Decimal("36.00")

    @pytest.mark.asyncio
    async def test_multiplier_source_used(self, ledger, reconciler, snap, mock_client):
        ledger.multiplier_source = lambda: 1.4321
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        await ledger.cash_out(slip.id)
        assert mock_client.cash_out.await_args.args[1] == Decimal("1.43")

    @pytest.mark.asyncio
    async def test_unknown_slip(self, ledger):
        with pytest.raises(UnknownSlipError):
            await ledger.cash_out("nope")

    @pytest.mark.asyncio
    async def test_cash_out_twice(self, ledger, reconciler, snap):
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        await ledger.cash_out(slip.id)
        with pytest.raises(AlreadySettledError):
            await ledger.cash_out(slip.id)

    @pytest.mark.asyncio
    async def test_cash_out_in_flight(self, ledger, reconciler, snap, mock_client):
        release = asyncio.Event()

        async def slow_cash_out(*args):
            await release.wait()
            return bet_response("137")

        mock_client.cash_out.side_effect = slow_cash_out
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))

        first = asyncio.ensure_future(ledger.cash_out(slip.id))
        await asyncio.sleep(0)
        assert ledger.is_cashing_out(slip.id)
        with pytest.raises(CashOutInFlightError):
            await ledger.cash_out(slip.id)

        release.set()
        await first
        assert not ledger.is_cashing_out(slip.id)
        assert mock_client.cash_out.await_count == 1

    @pytest.mark.asyncio
    async def test_cash_out_before_confirmation_rejected(self, ledger, reconciler, snap, mock_client):
        release = asyncio.Event()

        async def slow_place_bet(amount):
            await release.wait()
            return bet_response("80")

        mock_client.place_bet.side_effect = slow_place_bet
        reconciler.apply(snap(7, "waiting", time_remaining=1))
        placing = asyncio.ensure_future(ledger.place_bet(20))
        await asyncio.sleep(0)
        reconciler.apply(snap(7, "playing", live_multiplier=1.2))

        slip = ledger.active_slips(7)[0]
        assert not slip.confirmed
        with pytest.raises(InvalidPhaseError):
            await ledger.cash_out(slip.id)
        mock_client.cash_out.assert_not_awaited()

        release.set()
        await placing
        await ledger.cash_out(slip.id)
        mock_client.cash_out.assert_awaited_once_with(7, Decimal("1.20"), "b-1")

    @pytest.mark.asyncio
    async def test_failed_cash_out_keeps_slip_active(self, ledger, reconciler, snap, mock_client):
        mock_client.cash_out.side_effect = BetRejectedError("Round already ended", status=400)
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        with pytest.raises(BetRejectedError):
            await ledger.cash_out(slip.id)
        assert slip.is_active
        assert not ledger.is_cashing_out(slip.id)

    @pytest.mark.asyncio
    async def test_balance_refresh_failure_does_not_fail_cash_out(self, ledger, reconciler, snap, mock_client):
        mock_client.fetch_balance.side_effect = TransportError("timed out")
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        await ledger.cash_out(slip.id)
        assert slip.status is SlipStatus.CASHED
        assert ledger.balance == Decimal("137.00")


class TestSettlement:
    @pytest.mark.asyncio
    async def test_crash_loses_active_slip(self, ledger, reconciler, snap, mock_client, published):
        mock_client.place_bet.return_value = bet_response("70")
        reconciler.apply(snap(8, "waiting", time_remaining=5))
        slip = await ledger.place_bet(30)
        reconciler.apply(snap(8, "playing", live_multiplier=1.05))
        reconciler.apply(snap(8, "crashed", crashed_value=1.10))

        assert slip.status is SlipStatus.LOST
        assert slip.payout is None
        assert ledger.balance == Decimal("70.00")
        assert "slip.lost" in published
        mock_client.cash_out.assert_not_awaited()

        with pytest.raises(InvalidPhaseError):
            await ledger.cash_out(slip.id)
        reconciler.stop()

    @pytest.mark.asyncio
    async def test_cash_out_confirmed_after_crash(self, ledger, reconciler, snap, mock_client):
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.3))

        async def crash_then_confirm(*args):
            reconciler.apply(snap(7, "crashed", crashed_value=1.31))
            return bet_response("137")

        mock_client.cash_out.side_effect = crash_then_confirm
        result = await ledger.cash_out(slip.id)

        assert result.status is SlipStatus.LOST
        assert result.payout is None
        assert ledger.balance == Decimal("137.00")
        reconciler.stop()

    @pytest.mark.asyncio
    async def test_superseded_round_settles_earlier_slips(self, ledger, reconciler, snap):
        reconciler.apply(snap(6, "waiting", time_remaining=5))
        slip = await ledger.place_bet(20)
        reconciler.apply(snap(7, "waiting", time_remaining=9))
        assert slip.status is SlipStatus.LOST

    def test_settle_is_idempotent(self, ledger, published):
        assert ledger.settle_round(5) == []
        assert published == []

    @pytest.mark.asyncio
    async def test_cashed_slip_never_lost(self, ledger, reconciler, snap):
        slip = await place_in_countdown(ledger, reconciler, snap)
        reconciler.apply(snap(7, "playing", live_multiplier=1.5))
        await ledger.cash_out(slip.id)
        reconciler.apply(snap(7, "crashed", crashed_value=2.0))
        assert slip.status is SlipStatus.CASHED
        reconciler.stop()


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_sync_active_bet_never_touches_slips(self, ledger, reconciler, snap, mock_client, clock):
        reconciler.apply(snap(6, "waiting", time_remaining=5))
        slip = await ledger.place_bet(20)
        clock.advance(12)
        assert ledger.seconds_since_bet_sync() == 12

        assert await ledger.sync_active_bet(6) is False
        assert slip.is_active
        assert ledger.server_has_active_bet is False
        assert ledger.seconds_since_bet_sync() == 0

    @pytest.mark.asyncio
    async def test_refresh_bet_history_keeps_twenty(self, ledger, mock_client):
        mock_client.fetch_bet_history.return_value = [{"id": i} for i in range(30)]
        history = await ledger.refresh_bet_history()
        assert len(history) == 20
        assert history[0] == {"id": 0}

    def test_balance_event_only_on_change(self, ledger, published):
        ledger._set_balance(Decimal("100.00"))
        assert published == []
        ledger._set_balance(Decimal("90.00"))
        assert published == ["wallet.balance_changed"]

    @pytest.mark.asyncio
    async def test_prune_keeps_active(self, ledger, reconciler, snap, mock_client):
        ledger.balance = Decimal("10000")
        mock_client.place_bet.return_value = bet_response(None)
        for round_number in (1, 2, 3):
            reconciler.apply(snap(round_number, "waiting", time_remaining=5))
            await ledger.place_bet(10)

        assert ledger.prune(keep=1) == 2
        assert len(ledger.slips) == 1
        assert ledger.slips[0].round_id == 3
        assert ledger.slips[0].is_active

    def test_summary(self, ledger):
        summary = ledger.get_summary()
        assert summary["balance"] == "100.00"
        assert summary["slips"] == 0


class TestAutoBet:
    @pytest.mark.asyncio
    async def test_schedules_once_per_round(self, mock_client, clock, snap):
        config = Config({"financial": {"auto_bet": True, "auto_bet_delay_sec": 0.01}})
        reconciler = PhaseReconciler(config, clock=clock)
        ledger = BetLedger(mock_client, reconciler, config, clock=clock)
        ledger.balance = Decimal("100.00")
        ledger.last_stake = Decimal("20")
        reconciler.apply(snap(9, "waiting", time_remaining=8))

        assert ledger.schedule_auto_bet(9) is True
        assert ledger.schedule_auto_bet(9) is False
        await asyncio.sleep(0.05)

        mock_client.place_bet.assert_awaited_once_with(Decimal("20"))
        assert ledger.active_slips(9)

    def test_skipped_without_last_stake(self, ledger):
        ledger.set_auto_bet(True)
        assert ledger.schedule_auto_bet(9) is False

    def test_skipped_when_not_affordable(self, ledger):
        ledger.set_auto_bet(True)
        ledger.last_stake = Decimal("500")
        assert ledger.schedule_auto_bet(9) is False

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, ledger, mock_client):
        ledger.set_auto_bet(True)
        ledger.last_stake = Decimal("20")
        # reconciler still at round 0 with no countdown: placement is rejected
        await ledger._place_auto_bet()
        mock_client.place_bet.assert_not_awaited()
