"""
Tests for PollScheduler

Tests cover:
- poll outcomes feeding connection health and the reconciler
- follow-ups: active-bet check, crash history refresh, countdown resync
- stall watchdog trips and resync coalescing
- the full resync sequence
"""

import asyncio
from decimal import Decimal

import pytest

from aviator_sync.config import Config
from aviator_sync.core.poll_scheduler import PollScheduler
from aviator_sync.core.round_history import RoundHistory
from aviator_sync.errors import TransportError
from aviator_sync.models import ClientGameState, ConnectionStatus, FailureKind, SnapshotFailure
from aviator_sync.services import Events
from aviator_sync.sources.watchdog import StallReason


def make_scheduler(mock_client, reconciler, ledger, config, event_bus, clock):
    history = RoundHistory(mock_client, event_bus=event_bus)
    return PollScheduler(mock_client, reconciler, ledger, history, config, event_bus=event_bus, clock=clock)


@pytest.fixture
def scheduler(mock_client, reconciler, ledger, config, event_bus, clock):
    return make_scheduler(mock_client, reconciler, ledger, config, event_bus, clock)


@pytest.fixture
def events(event_bus):
    received = []
    for event in (Events.CONNECTION_CHANGED, Events.RESYNC_SCHEDULED, Events.RESYNC_COMPLETED):
        event_bus.subscribe(event, received.append, weak=False)
    return received


FAILURE = SnapshotFailure(FailureKind.TRANSPORT, "GET realtime timed out")


class TestPolling:
    @pytest.mark.asyncio
    async def test_success_applies_snapshot(self, scheduler, mock_client, reconciler, snap):
        mock_client.fetch_snapshot.return_value = snap(6, "playing", live_multiplier=1.3)
        delta = await scheduler.poll_once()
        assert delta.state is ClientGameState.PLAYING
        assert reconciler.round_number == 6
        assert scheduler.health.status is ConnectionStatus.CONNECTED
        assert scheduler.stats["polls"] == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failures_disconnect_and_request_resync(self, scheduler, mock_client, events):
        mock_client.fetch_snapshot.return_value = FAILURE
        for _ in range(3):
            assert await scheduler.poll_once() is None

        assert scheduler.health.status is ConnectionStatus.DISCONNECTED
        assert scheduler.current_interval() == 2.0
        assert scheduler.stats["poll_failures"] == 3
        assert scheduler.stats["resyncs_scheduled"] == 1
        assert [e["name"] for e in events] == ["connection.changed", "connection.resync_scheduled"]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_new_round_checks_active_bet(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.side_effect = [
            snap(6, "waiting", time_remaining=5),
            snap(7, "waiting", time_remaining=9),
        ]
        await scheduler.poll_once()
        await scheduler.poll_once()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        mock_client.check_active_bet.assert_awaited_once_with(7)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_active_bet_check_failure_is_contained(self, scheduler, mock_client, snap):
        mock_client.check_active_bet.side_effect = TransportError("timed out")
        mock_client.fetch_snapshot.return_value = snap(6, "playing", live_multiplier=1.1)
        await scheduler.poll_once()
        await asyncio.sleep(0.01)
        assert scheduler.health.status is ConnectionStatus.CONNECTED
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_unexpected_follow_up_error_is_logged(self, scheduler, mock_client, snap, caplog):
        mock_client.check_active_bet.side_effect = KeyError("has_active_bet")
        mock_client.fetch_snapshot.return_value = snap(6, "playing", live_multiplier=1.1)
        await scheduler.poll_once()
        await asyncio.sleep(0.01)
        assert "Active bet check failed unexpectedly" in caplog.text
        assert scheduler.health.status is ConnectionStatus.CONNECTED
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_crash_schedules_history_refresh(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.side_effect = [
            snap(8, "playing", live_multiplier=1.05),
            snap(8, "crashed", crashed_value=1.1),
        ]
        await scheduler.poll_once()
        await scheduler.poll_once()
        assert any(timer.active for timer in scheduler.history.timers)
        scheduler.history.stop()
        scheduler.reconciler.stop()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_countdown_start_requests_resync(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=9)
        await scheduler.poll_once()
        assert scheduler.resync_pending
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stale_snapshot_has_no_follow_up(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.side_effect = [
            snap(6, "playing", live_multiplier=1.2),
            snap(5, "waiting", time_remaining=9),
        ]
        await scheduler.poll_once()
        delta = await scheduler.poll_once()
        assert delta.discarded
        assert not scheduler.resync_pending
        await scheduler.stop()


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_stale_feed_disconnects_and_resyncs_once(self, scheduler, clock, events):
        clock.advance(8.5)
        reasons = scheduler.check_watchdog()

        assert StallReason.NO_SUCCESSFUL_POLL in reasons
        assert scheduler.health.status is ConnectionStatus.DISCONNECTED
        assert scheduler.stats["resyncs_scheduled"] == 1

        clock.advance(2)
        scheduler.check_watchdog()
        assert scheduler.stats["resyncs_scheduled"] == 1
        assert scheduler.stats["resyncs_coalesced"] == 1
        assert [e["name"] for e in events].count("connection.resync_scheduled") == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_healthy_feed_requests_nothing(self, scheduler, mock_client, snap, clock):
        mock_client.fetch_snapshot.return_value = snap(6, "playing", live_multiplier=1.2)
        await scheduler.poll_once()
        clock.advance(1)
        assert scheduler.check_watchdog() == []
        assert not scheduler.resync_pending
        await scheduler.stop()


class TestResync:
    @pytest.mark.asyncio
    async def test_full_resync(self, scheduler, mock_client, ledger, snap, events):
        mock_client.fetch_snapshot.return_value = snap(6, "playing", live_multiplier=1.2)
        mock_client.fetch_bet_history.return_value = [{"id": 1}]

        assert await scheduler.resync("test") is True

        assert ledger.balance == Decimal("100.00")
        assert scheduler.history.crash_points == [2.4, 1.1, 5.75]
        assert ledger.bet_history == [{"id": 1}]
        mock_client.check_active_bet.assert_awaited_with(6)
        assert events[-1]["data"] == {"reason": "test", "connection": "connected"}
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_reconnecting_while_resync_runs(self, scheduler, mock_client, snap):
        seen = []

        async def fetch():
            seen.append(scheduler.health.status)
            return snap(6, "waiting", time_remaining=0)

        mock_client.fetch_snapshot.side_effect = fetch
        scheduler.health.mark_disconnected("test")
        await scheduler.resync()
        assert seen == [ConnectionStatus.RECONNECTING]
        assert scheduler.health.status is ConnectionStatus.CONNECTED
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failed_resync_falls_back_to_disconnected(self, scheduler, mock_client):
        mock_client.fetch_snapshot.return_value = FAILURE
        scheduler.health.mark_disconnected("test")
        await scheduler.resync()
        assert scheduler.health.status is ConnectionStatus.DISCONNECTED
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_partial_failures_tolerated(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=0)
        mock_client.fetch_balance.side_effect = TransportError("timed out")
        mock_client.fetch_history.side_effect = TransportError("timed out")
        assert await scheduler.resync() is True
        assert scheduler.stats["resyncs_completed"] == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_force_resync_drops_pending(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=0)
        scheduler.request_resync("test")
        assert scheduler.resync_pending
        await scheduler.force_resync()
        assert not scheduler.resync_pending
        assert scheduler.stats["resyncs_completed"] == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_scheduled_resync_runs_after_debounce(
        self, mock_client, reconciler, ledger, event_bus, clock, snap
    ):
        config = Config({"polling": {"resync_debounce_sec": 0.01}})
        scheduler = make_scheduler(mock_client, reconciler, ledger, config, event_bus, clock)
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=0)

        scheduler.request_resync("a")
        scheduler.request_resync("b")
        await asyncio.sleep(0.05)

        assert scheduler.stats["resyncs_completed"] == 1
        assert scheduler.stats["resyncs_coalesced"] == 1
        assert not scheduler.resync_pending
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_recovery_triggers_fetch(self, mock_client, reconciler, ledger, event_bus, clock, snap):
        config = Config({"polling": {"post_recovery_fetch_delay_sec": 0.01}})
        scheduler = make_scheduler(mock_client, reconciler, ledger, config, event_bus, clock)
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=0)

        scheduler.on_recovery_complete()
        await asyncio.sleep(0.05)
        mock_client.fetch_snapshot.assert_awaited()
        assert scheduler.stats["resyncs_completed"] == 1
        await scheduler.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, mock_client, snap):
        mock_client.fetch_snapshot.return_value = snap(6, "waiting", time_remaining=0)
        scheduler.start()
        await asyncio.sleep(0.01)
        assert scheduler.stats["polls"] >= 1
        await scheduler.stop()
        assert not any(timer.active for timer in scheduler.timers)

    def test_status(self, scheduler):
        status = scheduler.get_status()
        assert status["connection"]["status"] == "connected"
        assert status["interval"] == 0.5
