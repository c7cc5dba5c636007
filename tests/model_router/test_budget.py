"""Tests for the in-memory quota and budget ledger."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from ai_orchestrator.errors import QuotaExceededError
from ai_orchestrator.model_router.budget import BudgetLedger, next_utc_midnight
from ai_orchestrator.model_router.catalog import CHEAP, CREDIT
from ai_orchestrator.model_router.types import SubscriptionTier
from ai_orchestrator.model_router.usage import InMemoryUsageSink, UsageRecord

FREE = SubscriptionTier.FREE
PRO = SubscriptionTier.PRO


@pytest.fixture
def ledger(clock) -> BudgetLedger:
    return BudgetLedger(credit_pools={CREDIT: 2500}, clock=clock.now)


@pytest.fixture
def sink() -> InMemoryUsageSink:
    return InMemoryUsageSink()


def _record(user_id: str = "u1", backend: str = CHEAP, cost: str = "0.135") -> UsageRecord:
    return UsageRecord(user_id=user_id, backend=backend, feature="chat", cost_cents=Decimal(cost))


async def _serve(ledger, sink, user_id="u1", tier=FREE, backend=CHEAP, cost="0.135"):
    admission = await ledger.admit(user_id, tier)
    await ledger.settle(admission, _record(user_id, backend, cost), sink)


class TestQuota:
    @pytest.mark.asyncio
    async def test_fresh_user_has_full_quota(self, ledger):
        status = await ledger.check_quota("u1", FREE)
        assert status.allowed is True
        assert status.used == 0
        assert status.limit == 5
        assert status.remaining == 5
        assert status.reset_at == datetime(2026, 3, 15, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_tier_limits(self, ledger):
        assert ledger.daily_limit(FREE) == 5
        assert ledger.daily_limit(PRO) == 50
        assert ledger.daily_limit(SubscriptionTier.ENTERPRISE) == 200

    @pytest.mark.asyncio
    async def test_sixth_free_request_refused(self, ledger, sink):
        for _ in range(5):
            await _serve(ledger, sink)

        with pytest.raises(QuotaExceededError) as exc_info:
            await ledger.admit("u1", FREE)

        err = exc_info.value
        assert err.tier == "free"
        assert err.limit == 5
        assert err.remaining == 0
        assert err.reset_at == datetime(2026, 3, 15, tzinfo=UTC)
        assert (await ledger.get_state("u1")).requests_today == 5

    @pytest.mark.asyncio
    async def test_in_flight_requests_count_against_quota(self, ledger):
        for _ in range(5):
            await ledger.admit("u1", FREE)

        state = await ledger.get_state("u1")
        assert state.in_flight == 5
        assert state.requests_today == 0
        with pytest.raises(QuotaExceededError):
            await ledger.admit("u1", FREE)

    @pytest.mark.asyncio
    async def test_release_frees_the_slot_without_counting(self, ledger):
        admissions = [await ledger.admit("u1", FREE) for _ in range(5)]
        await ledger.release(admissions[0])

        state = await ledger.get_state("u1")
        assert state.in_flight == 4
        assert state.requests_today == 0
        await ledger.admit("u1", FREE)

    @pytest.mark.asyncio
    async def test_check_quota_is_advisory(self, ledger):
        for _ in range(3):
            await ledger.check_quota("u1", FREE)
        state = await ledger.get_state("u1")
        assert state.in_flight == 0
        assert state.requests_today == 0

    @pytest.mark.asyncio
    async def test_users_are_independent(self, ledger, sink):
        for _ in range(5):
            await _serve(ledger, sink, user_id="u1")
        await ledger.admit("u2", FREE)

    @pytest.mark.asyncio
    async def test_concurrent_admits_never_overshoot(self, ledger):
        results = await asyncio.gather(
            *(ledger.admit("u1", FREE) for _ in range(20)), return_exceptions=True
        )
        admitted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(admitted) == 5
        assert len(refused) == 15

    @pytest.mark.asyncio
    async def test_zero_limit_refuses_everything(self, clock):
        ledger = BudgetLedger(daily_limits={FREE: 0}, clock=clock.now)
        with pytest.raises(QuotaExceededError):
            await ledger.admit("u1", FREE)

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError):
            BudgetLedger(daily_limits={FREE: -1})


class TestSettle:
    @pytest.mark.asyncio
    async def test_settle_counts_charges_and_appends(self, ledger, sink):
        admission = await ledger.admit("u1", FREE)
        await ledger.settle(admission, _record(), sink)

        state = await ledger.get_state("u1")
        assert state.requests_today == 1
        assert state.in_flight == 0
        assert state.cost_this_month_cents == Decimal("0.135")
        assert len(sink) == 1
        assert (await sink.records_for("u1"))[0].backend == CHEAP

    @pytest.mark.asyncio
    async def test_double_settle_rejected(self, ledger, sink):
        admission = await ledger.admit("u1", FREE)
        await ledger.settle(admission, _record(), sink)
        with pytest.raises(ValueError):
            await ledger.settle(admission, _record(), sink)
        with pytest.raises(ValueError):
            await ledger.release(admission)
        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_remaining_budget(self, ledger, sink):
        await _serve(ledger, sink, cost="100")
        remaining = await ledger.remaining_budget("u1")
        assert remaining.general_cents == Decimal("1400")
        assert remaining.credit_for(CREDIT) == Decimal("2500")
        assert remaining.credit_for("unknown") == Decimal("0")

    @pytest.mark.asyncio
    async def test_credit_pool_debited_before_general_budget(self, ledger, sink):
        await _serve(ledger, sink, tier=PRO, backend=CREDIT, cost="2000")

        remaining = await ledger.remaining_budget("u1")
        assert remaining.credit_for(CREDIT) == Decimal("500")
        assert remaining.general_cents == Decimal("1500")

    @pytest.mark.asyncio
    async def test_credit_overflow_hits_general_budget(self, ledger, sink):
        await _serve(ledger, sink, tier=PRO, backend=CREDIT, cost="2000")
        await _serve(ledger, sink, tier=PRO, backend=CREDIT, cost="600")

        state = await ledger.get_state("u1")
        assert state.provider_credit_spent_cents[CREDIT] == Decimal("2500")
        assert state.cost_this_month_cents == Decimal("100")
        remaining = await ledger.remaining_budget("u1")
        assert remaining.credit_for(CREDIT) == Decimal("0")
        assert remaining.general_cents == Decimal("1400")

    @pytest.mark.asyncio
    async def test_general_budget_floors_at_zero(self, ledger, sink):
        await _serve(ledger, sink, tier=PRO, cost="2000")
        remaining = await ledger.remaining_budget("u1")
        assert remaining.general_cents == Decimal("0")


class TestWindows:
    @pytest.mark.asyncio
    async def test_daily_reset_at_utc_midnight(self, ledger, sink, clock):
        for _ in range(5):
            await _serve(ledger, sink)
        clock.set(datetime(2026, 3, 15, 0, 0, 1, tzinfo=UTC))

        status = await ledger.check_quota("u1", FREE)
        assert status.used == 0
        assert status.reset_at == datetime(2026, 3, 16, tzinfo=UTC)
        await ledger.admit("u1", FREE)

    @pytest.mark.asyncio
    async def test_daily_reset_keeps_monthly_cost(self, ledger, sink, clock):
        await _serve(ledger, sink, cost="10")
        clock.advance(days=1)
        state = await ledger.get_state("u1")
        assert state.requests_today == 0
        assert state.cost_this_month_cents == Decimal("10")

    @pytest.mark.asyncio
    async def test_monthly_reset(self, ledger, sink, clock):
        await _serve(ledger, sink, tier=PRO, backend=CREDIT, cost="2600")
        clock.set(datetime(2026, 4, 1, 0, 0, tzinfo=UTC))

        state = await ledger.get_state("u1")
        assert state.cost_this_month_cents == Decimal("0")
        assert state.provider_credit_spent_cents == {}
        remaining = await ledger.remaining_budget("u1")
        assert remaining.credit_for(CREDIT) == Decimal("2500")

    def test_next_utc_midnight(self):
        now = datetime(2026, 12, 31, 23, 59, tzinfo=UTC)
        assert next_utc_midnight(now) == datetime(2027, 1, 1, tzinfo=UTC)


class TestThresholds:
    @pytest.mark.asyncio
    async def test_warning_at_80_percent(self, ledger, sink):
        with capture_logs() as logs:
            await _serve(ledger, sink, tier=PRO, cost="1200")
        events = [entry["event"] for entry in logs]
        assert "budget_ledger.monthly_warning" in events
        assert "budget_ledger.monthly_critical" not in events

    @pytest.mark.asyncio
    async def test_critical_at_95_percent(self, ledger, sink):
        with capture_logs() as logs:
            await _serve(ledger, sink, tier=PRO, cost="1450")
        assert "budget_ledger.monthly_critical" in [entry["event"] for entry in logs]

    @pytest.mark.asyncio
    async def test_no_alert_below_threshold(self, ledger, sink):
        with capture_logs() as logs:
            await _serve(ledger, sink, cost="10")
        events = [entry["event"] for entry in logs]
        assert not any(e.startswith("budget_ledger.monthly_") for e in events)


def test_from_settings(test_settings, catalog):
    settings = test_settings.model_copy(update={"daily_limit_pro": 7})
    ledger = BudgetLedger.from_settings(settings, catalog)
    assert ledger.daily_limit(PRO) == 7
    assert ledger.monthly_budget_cents == Decimal("1500")


class TestOrphanedReservations:
    @pytest.mark.asyncio
    async def test_daily_reset_drops_unfinished_reservations(self, ledger, clock):
        for _ in range(5):
            await ledger.admit("u1", FREE)
        clock.advance(days=1)

        state = await ledger.get_state("u1")
        assert state.in_flight == 0
        await ledger.admit("u1", FREE)

    @pytest.mark.asyncio
    async def test_late_release_keeps_todays_reservations(self, ledger, clock):
        stale = await ledger.admit("u1", FREE)
        clock.advance(days=1)
        await ledger.admit("u1", FREE)

        await ledger.release(stale)

        assert (await ledger.get_state("u1")).in_flight == 1

    @pytest.mark.asyncio
    async def test_late_settle_charges_cost_but_not_todays_quota(self, ledger, sink, clock):
        stale = await ledger.admit("u1", FREE)
        clock.advance(days=1)

        await ledger.settle(stale, _record(cost="10"), sink)

        state = await ledger.get_state("u1")
        assert state.requests_today == 0
        assert state.in_flight == 0
        assert state.cost_this_month_cents == Decimal("10")
        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_failed_settle_keeps_admission_open(self, ledger):
        class BrokenSink(InMemoryUsageSink):
            async def append(self, record):
                raise ConnectionError("usage store down")

        admission = await ledger.admit("u1", FREE)

        with pytest.raises(ConnectionError):
            await ledger.settle(admission, _record(), BrokenSink())

        assert ledger.is_open(admission) is True
        state = await ledger.get_state("u1")
        assert state.requests_today == 0
        assert state.in_flight == 1
        await ledger.release(admission)
        assert (await ledger.get_state("u1")).in_flight == 0
        assert ledger.is_open(admission) is False
