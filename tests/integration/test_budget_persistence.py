"""Integration tests for PersistentBudgetLedger and SqlAlchemyUsageSink.

Tests that quota and budget counters are persisted to the database, that
usage rows commit together with the counter update, and that a fully wired
orchestrator with persist_usage on works end to end.

Run with:
    pytest -m integration tests/integration/test_budget_persistence.py
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from ai_orchestrator.database import close_db, create_tables, init_db
from ai_orchestrator.errors import QuotaExceededError
from ai_orchestrator.main import create_app
from ai_orchestrator.model_router.budget import PersistentBudgetLedger
from ai_orchestrator.model_router.catalog import CHEAP, CREDIT
from ai_orchestrator.model_router.types import SubscriptionTier
from ai_orchestrator.model_router.usage import SqlAlchemyUsageSink, UsageRecord
from ai_orchestrator.models import AIBudgetStateRecord, AIUsageLogRecord
from ai_orchestrator.service import build_orchestrator
from tests.conftest import FREE_USER, make_request

pytestmark = pytest.mark.integration


@pytest.fixture
def ledger(session_factory, clock) -> PersistentBudgetLedger:
    return PersistentBudgetLedger(
        session_factory,
        credit_pools={CREDIT: 2500},
        clock=clock.now,
    )


@pytest.fixture
def sink(session_factory) -> SqlAlchemyUsageSink:
    return SqlAlchemyUsageSink(session_factory)


def _record(backend: str = CHEAP, cost: str = "0.135") -> UsageRecord:
    return UsageRecord(
        user_id=FREE_USER,
        backend=backend,
        feature="chat",
        input_units=1000,
        output_units=2000,
        cost_cents=Decimal(cost),
    )


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_read_does_not_create_row(ledger, session_factory):
    state = await ledger.get_state(FREE_USER)

    assert state.requests_today == 0
    assert await _count(session_factory, AIBudgetStateRecord) == 0


@pytest.mark.asyncio
async def test_admit_persists_in_flight(ledger, session_factory, clock):
    await ledger.admit(FREE_USER, SubscriptionTier.FREE)

    other = PersistentBudgetLedger(session_factory, clock=clock.now)
    state = await other.get_state(FREE_USER)
    assert state.in_flight == 1
    assert state.requests_today == 0


@pytest.mark.asyncio
async def test_settle_commits_counters_and_usage_row(ledger, sink, session_factory):
    admission = await ledger.admit(FREE_USER, SubscriptionTier.FREE)

    await ledger.settle(admission, _record(), sink)

    state = await ledger.get_state(FREE_USER)
    assert state.in_flight == 0
    assert state.requests_today == 1
    assert state.cost_this_month_cents == Decimal("0.135")

    (record,) = await sink.records_for(FREE_USER)
    assert record.backend == CHEAP
    assert record.cost_cents == Decimal("0.135")
    assert await _count(session_factory, AIUsageLogRecord) == 1


@pytest.mark.asyncio
async def test_double_settle_rejected(ledger, sink):
    admission = await ledger.admit(FREE_USER, SubscriptionTier.FREE)
    await ledger.settle(admission, _record(), sink)

    with pytest.raises(ValueError):
        await ledger.settle(admission, _record(), sink)


@pytest.mark.asyncio
async def test_quota_counts_in_flight(ledger, sink):
    admissions = [await ledger.admit(FREE_USER, SubscriptionTier.FREE) for _ in range(5)]

    with pytest.raises(QuotaExceededError) as exc_info:
        await ledger.admit(FREE_USER, SubscriptionTier.FREE)
    assert exc_info.value.limit == 5

    await ledger.release(admissions[0])
    await ledger.admit(FREE_USER, SubscriptionTier.FREE)

    status = await ledger.check_quota(FREE_USER, SubscriptionTier.FREE)
    assert status.allowed is False
    assert status.used == 5


@pytest.mark.asyncio
async def test_concurrent_admits_never_overshoot(ledger):
    results = await asyncio.gather(
        *(ledger.admit(FREE_USER, SubscriptionTier.FREE) for _ in range(12)),
        return_exceptions=True,
    )

    refused = [r for r in results if isinstance(r, QuotaExceededError)]
    assert len(refused) == 7
    assert (await ledger.get_state(FREE_USER)).in_flight == 5


@pytest.mark.asyncio
async def test_credit_pool_persisted(ledger, sink):
    admission = await ledger.admit(FREE_USER, SubscriptionTier.FREE)
    await ledger.settle(admission, _record(backend=CREDIT, cost="0.125"), sink)

    remaining = await ledger.remaining_budget(FREE_USER)
    assert remaining.credit_for(CREDIT) == Decimal("2499.875")
    assert remaining.general_cents == Decimal("1500")


@pytest.mark.asyncio
async def test_daily_window_rolls_over(ledger, sink, clock):
    for _ in range(5):
        admission = await ledger.admit(FREE_USER, SubscriptionTier.FREE)
        await ledger.settle(admission, _record(), sink)

    clock.advance(days=1)

    state = await ledger.get_state(FREE_USER)
    assert state.requests_today == 0
    assert state.cost_this_month_cents == Decimal("0.675")
    await ledger.admit(FREE_USER, SubscriptionTier.FREE)


@pytest.mark.asyncio
async def test_stale_reservations_do_not_count_next_day(ledger, session_factory, clock):
    for _ in range(5):
        await ledger.admit(FREE_USER, SubscriptionTier.FREE)
    clock.advance(days=1)

    # A fresh ledger stands in for a restarted worker that lost its admissions
    restarted = PersistentBudgetLedger(session_factory, clock=clock.now)
    state = await restarted.get_state(FREE_USER)
    assert state.in_flight == 0
    await restarted.admit(FREE_USER, SubscriptionTier.FREE)
    assert (await restarted.get_state(FREE_USER)).in_flight == 1


@pytest.mark.asyncio
async def test_late_release_keeps_todays_reservations(ledger, clock):
    stale = await ledger.admit(FREE_USER, SubscriptionTier.FREE)
    clock.advance(days=1)
    await ledger.admit(FREE_USER, SubscriptionTier.FREE)

    await ledger.release(stale)

    assert (await ledger.get_state(FREE_USER)).in_flight == 1


@pytest.mark.asyncio
async def test_cancelled_request_releases_persisted_slot(
    integration_settings, session_factory, catalog, registry, fake_adapter, tier_provider, clock
):
    orchestrator = build_orchestrator(
        integration_settings,
        catalog=catalog,
        registry=registry,
        tier_provider=tier_provider,
        session_factory=session_factory,
        clock=clock.now,
    )
    fake_adapter.delay = 10
    task = asyncio.create_task(orchestrator.process_request(make_request("hi")))
    while not fake_adapter.calls:
        await asyncio.sleep(0.01)

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    state = await orchestrator.ledger.get_state(FREE_USER)
    assert state.in_flight == 0
    assert state.requests_today == 0


@pytest.mark.asyncio
async def test_orchestrator_with_persistence(
    integration_settings, session_factory, catalog, registry, cache_backend, tier_provider, clock
):
    orchestrator = build_orchestrator(
        integration_settings,
        catalog=catalog,
        registry=registry,
        cache_backend=cache_backend,
        tier_provider=tier_provider,
        session_factory=session_factory,
        clock=clock.now,
    )

    first = await orchestrator.process_request(make_request("hi"))
    second = await orchestrator.process_request(make_request("hi"))

    assert first.cost_cents == Decimal("0.135")
    assert second.cache_hit is True
    records = await orchestrator.recorder.sink.records_for(FREE_USER)
    assert [r.cache_hit for r in records] == [False, True]

    summary = await orchestrator.usage_summary(FREE_USER)
    assert summary.requests_today == 1
    assert summary.totals["requests"] == 2


def test_persistence_requires_session_factory(integration_settings):
    with pytest.raises(ValueError):
        build_orchestrator(integration_settings)


@pytest.mark.asyncio
async def test_readiness_checks_database(integration_settings, orchestrator):
    init_db(integration_settings, for_test=True)
    try:
        await create_tables()
        app = create_app(integration_settings, orchestrator=orchestrator)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health/ready")
    finally:
        await close_db()

    assert resp.json()["status"] == "ready"
    assert resp.json()["database"] == "ok"
