import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from risk.ledger import (
    REASON_CONSECUTIVE_FAILURES,
    REASON_DAILY_LOSS,
    REASON_EMERGENCY_STOP,
    REASON_SINGLE_LOSS,
    RiskLedger,
    STATE_NORMAL,
    STATE_PAUSED,
)
from storage import RiskLimitsTracking, SQLiteRepository


@pytest.fixture
def repository(tmp_path):
    repo = SQLiteRepository(db_path=tmp_path / "risk.db")
    yield repo
    repo.close()


def _ledger(repository, **overrides):
    kwargs = dict(
        daily_loss_limit=500.0,
        max_position_size_usd=10_000.0,
        max_single_loss_usd=100.0,
        max_consecutive_failures=5,
    )
    kwargs.update(overrides)
    return RiskLedger("user-1", repository, **kwargs)


async def _preload_loss(repository, amount):
    await repository.save_risk_limits(RiskLimitsTracking(
        user_id="user-1",
        daily_loss_usd=amount,
        last_reset_at=datetime.now(timezone.utc),
    ))


@pytest.mark.asyncio
async def test_daily_loss_limit_trips_and_pauses(repository):
    await _preload_loss(repository, 480.0)
    ledger = _ledger(repository)
    await ledger.load()
    assert ledger.state == STATE_NORMAL

    events = await ledger.record_trade_outcome(profit_usd=-25.0, gas_cost_usd=5.0, success=True)

    assert len(events) == 1
    assert events[0].reason == REASON_DAILY_LOSS
    assert events[0].severity == "critical"
    assert events[0].trigger_value == pytest.approx(510.0)
    assert ledger.state == STATE_PAUSED

    check = await ledger.pre_check(position_size_usd=100.0, potential_loss_usd=1.0)
    assert check.allowed is False
    assert "paused" in check.reason


@pytest.mark.asyncio
async def test_open_breaker_is_not_duplicated(repository):
    await _preload_loss(repository, 480.0)
    ledger = _ledger(repository)

    await ledger.record_trade_outcome(-30.0, 0.0, True)
    again = await ledger.record_trade_outcome(-10.0, 0.0, True)

    assert again == []
    events = await ledger.get_events(include_resolved=True)
    assert [event.reason for event in events] == [REASON_DAILY_LOSS]


@pytest.mark.asyncio
async def test_single_large_loss_trips(repository):
    ledger = _ledger(repository)
    events = await ledger.record_trade_outcome(profit_usd=0.0, gas_cost_usd=150.0, success=False)
    assert [event.reason for event in events] == [REASON_SINGLE_LOSS]
    assert ledger.is_paused()


@pytest.mark.asyncio
async def test_consecutive_failures_trip_after_limit(repository):
    ledger = _ledger(repository, max_consecutive_failures=2)

    assert await ledger.record_trade_outcome(0.0, 1.0, False) == []
    assert await ledger.record_trade_outcome(0.0, 1.0, False) == []
    events = await ledger.record_trade_outcome(0.0, 1.0, False)

    assert [event.reason for event in events] == [REASON_CONSECUTIVE_FAILURES]
    assert events[0].severity == "warning"


@pytest.mark.asyncio
async def test_success_resets_failure_streak(repository):
    ledger = _ledger(repository)
    await ledger.record_trade_outcome(0.0, 1.0, False)
    await ledger.record_trade_outcome(5.0, 1.0, True)
    status = await ledger.get_status()
    assert status.consecutive_failures == 0
    assert status.daily_profit_usd == pytest.approx(4.0)
    assert status.daily_loss_usd == pytest.approx(1.0)
    assert status.daily_trade_count == 2


@pytest.mark.asyncio
async def test_auto_pause_off_records_without_pausing(repository):
    ledger = _ledger(repository, auto_pause=False)
    events = await ledger.record_trade_outcome(0.0, 150.0, False)
    assert len(events) == 1
    assert ledger.is_paused() is False


@pytest.mark.asyncio
async def test_resolve_lifts_pause_when_nothing_is_open(repository):
    ledger = _ledger(repository)
    first = (await ledger.record_trade_outcome(0.0, 150.0, False))[0]
    stop = await ledger.emergency_stop(triggered_by="tester")

    assert await ledger.resolve(first.id, "ops") is True
    assert ledger.is_paused() is True

    assert await ledger.resolve(stop.id, "ops", note="checked wallet") is True
    assert ledger.is_paused() is False
    assert await ledger.resolve(stop.id, "ops") is False

    status = await ledger.get_status()
    assert status.daily_loss_usd == pytest.approx(150.0)

    resolved = await ledger.get_events()
    assert all(event.resolved for event in resolved)
    assert resolved[0].resolution_note == "checked wallet"


@pytest.mark.asyncio
async def test_resolving_emergency_stop_without_auto_pause_resumes(repository):
    ledger = _ledger(repository, auto_pause=False)
    loss = (await ledger.record_trade_outcome(0.0, 150.0, False))[0]
    stop = await ledger.emergency_stop(triggered_by="tester")
    assert ledger.is_paused() is True

    assert await ledger.resolve(stop.id, "ops") is True

    # the open loss event alone never paused this ledger, so it must not keep it paused
    assert ledger.is_paused() is False
    open_events = [event for event in await ledger.get_events() if not event.resolved]
    assert [event.id for event in open_events] == [loss.id]

    restarted = _ledger(repository, auto_pause=False)
    await restarted.load()
    assert restarted.is_paused() is ledger.is_paused()


@pytest.mark.asyncio
async def test_pause_is_rebuilt_on_reload(repository):
    ledger = _ledger(repository)
    await ledger.record_trade_outcome(0.0, 150.0, False)

    restarted = _ledger(repository)
    await restarted.load()

    assert restarted.is_paused() is True
    assert await restarted.record_trade_outcome(0.0, 150.0, False) == []


@pytest.mark.asyncio
async def test_emergency_stop_pauses_even_without_auto_pause(repository):
    ledger = _ledger(repository, auto_pause=False)
    event = await ledger.emergency_stop()

    assert event.reason == REASON_EMERGENCY_STOP
    assert ledger.is_paused()
    assert await ledger.emergency_stop() is None

    restarted = _ledger(repository, auto_pause=False)
    await restarted.load()
    assert restarted.is_paused()


@pytest.mark.asyncio
async def test_reset_daily_is_idempotent(repository):
    await repository.save_risk_limits(RiskLimitsTracking(
        user_id="user-1",
        daily_loss_usd=120.0,
        daily_trade_count=7,
        consecutive_failures=3,
        last_reset_at=datetime.now(timezone.utc) - timedelta(days=1),
    ))
    ledger = _ledger(repository)
    now = datetime.now(timezone.utc)

    assert await ledger.reset_daily(now) is True
    assert await ledger.reset_daily(now) is False

    status = await ledger.get_status()
    assert status.daily_loss_usd == 0.0
    assert status.daily_trade_count == 0
    assert status.consecutive_failures == 0


@pytest.mark.asyncio
async def test_outcomes_commute(tmp_path):
    outcomes = [(12.0, 2.0, True), (-8.0, 3.0, False), (0.0, 1.5, True), (30.0, 4.0, True)]
    totals = []
    for index, ordering in enumerate((outcomes, list(reversed(outcomes)))):
        repo = SQLiteRepository(db_path=tmp_path / f"order{index}.db")
        ledger = _ledger(repo)
        for profit, gas, success in ordering:
            await ledger.record_trade_outcome(profit, gas, success)
        status = await ledger.get_status()
        totals.append((status.daily_loss_usd, status.daily_profit_usd, status.daily_gas_used_usd, status.daily_trade_count))
        repo.close()

    assert totals[0] == pytest.approx(totals[1])


@pytest.mark.asyncio
async def test_concurrent_outcomes_are_not_lost(repository):
    ledger = _ledger(repository)
    await asyncio.gather(*(ledger.record_trade_outcome(1.0, 0.5, True) for _ in range(10)))

    status = await ledger.get_status()
    assert status.daily_trade_count == 10
    assert status.daily_profit_usd == pytest.approx(5.0)

    persisted = await repository.get_risk_limits("user-1")
    assert persisted.daily_trade_count == 10


@pytest.mark.asyncio
async def test_pre_check_limits(repository):
    ledger = _ledger(repository)

    assert (await ledger.pre_check(20_000.0, 1.0)).allowed is False
    assert (await ledger.pre_check(1_000.0, 100.0)).allowed is False
    low_gas = await ledger.pre_check(1_000.0, 1.0, native_balance_usd=1.0, gas_cost_usd=1.0)
    assert low_gas.allowed is False
    assert "native balance" in low_gas.reason
    assert (await ledger.pre_check(1_000.0, 1.0, native_balance_usd=2.0, gas_cost_usd=1.0)).allowed is True


@pytest.mark.asyncio
async def test_trip_notifies(repository):
    notifier = MagicMock()
    ledger = _ledger(repository, notifier=notifier)
    await ledger.record_trade_outcome(0.0, 150.0, False)
    notifier.notify_nowait.assert_called_once()
    assert "single_loss_limit" in notifier.notify_nowait.call_args.args[0]
