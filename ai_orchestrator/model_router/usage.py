"""Usage recording - append-only log of every dispatch and cache hit.

One UsageRecord is written per request that reached a backend (including a
fallback dispatch, which counts as a single request) and one zero-cost
record per cache hit. Records are never updated after being appended.

The recorder does not write counters itself: for dispatches it hands the
record to BudgetLedger.settle(), which bumps the counters and appends the
record under the same per-user lock (and, for the persistent ledger, in
the same database transaction).

Sinks:
- InMemoryUsageSink: process-local list, used in dev and tests
- SqlAlchemyUsageSink: ai_usage_logs table via SQLAlchemy async sessions
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ai_orchestrator.model_router.types import AIRequest, AIResponse
from ai_orchestrator.models.ai_usage import AIUsageLogRecord

if TYPE_CHECKING:
    from ai_orchestrator.model_router.budget import Admission, BudgetLedger
    from ai_orchestrator.model_router.fallback import DispatchOutcome

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    """One billable (or cache-served) event.

    Attributes:
        user_id: Requesting user
        backend: Backend identifier actually used ("... (fallback)" on fallback)
        feature: Feature tag of the request
        input_units: Input units consumed
        output_units: Output units produced
        cost_cents: Cost charged (zero for cache hits and failures)
        latency_ms: Wall-clock dispatch time
        cache_hit: True when served from cache
        fallback_used: True when the fallback backend served the request
        success: False when the dispatch failed terminally
        error: Error message for failed dispatches
        timestamp: When the event was recorded (UTC)
    """

    user_id: str
    backend: str
    feature: str
    input_units: int = 0
    output_units: int = 0
    cost_cents: Decimal = Decimal("0")
    latency_ms: int = 0
    cache_hit: bool = False
    fallback_used: bool = False
    success: bool = True
    error: str | None = None
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if self.timestamp is None:
            object.__setattr__(self, "timestamp", datetime.now(UTC))

    def to_orm(self) -> AIUsageLogRecord:
        return AIUsageLogRecord(
            user_id=self.user_id,
            backend=self.backend,
            feature=self.feature,
            input_units=self.input_units,
            output_units=self.output_units,
            cost_cents=self.cost_cents,
            latency_ms=self.latency_ms,
            cache_hit=self.cache_hit,
            fallback_used=self.fallback_used,
            success=self.success,
            error_message=self.error,
            created_at=self.timestamp,
        )

    @classmethod
    def from_orm(cls, row: AIUsageLogRecord) -> UsageRecord:
        created_at = row.created_at
        if created_at is not None and created_at.tzinfo is None:
            # SQLite drops tzinfo; everything is stored in UTC
            created_at = created_at.replace(tzinfo=UTC)
        return cls(
            user_id=row.user_id,
            backend=row.backend,
            feature=row.feature,
            input_units=row.input_units,
            output_units=row.output_units,
            cost_cents=Decimal(row.cost_cents),
            latency_ms=row.latency_ms,
            cache_hit=row.cache_hit,
            fallback_used=row.fallback_used,
            success=row.success,
            error=row.error_message,
            timestamp=created_at,
        )


def summarize(records: Iterable[UsageRecord]) -> dict[str, Any]:
    """Aggregate a user's records into request / cost totals per backend."""
    summary: dict[str, Any] = {
        "requests": 0,
        "cache_hits": 0,
        "fallbacks": 0,
        "failures": 0,
        "cost_cents": Decimal("0"),
        "by_backend": {},
    }
    for record in records:
        summary["requests"] += 1
        summary["cache_hits"] += int(record.cache_hit)
        summary["fallbacks"] += int(record.fallback_used)
        summary["failures"] += int(not record.success)
        summary["cost_cents"] += record.cost_cents
        per_backend = summary["by_backend"].setdefault(
            record.backend, {"requests": 0, "cost_cents": Decimal("0")}
        )
        per_backend["requests"] += 1
        per_backend["cost_cents"] += record.cost_cents
    return summary


class UsageSink(Protocol):
    """Append-only destination for usage records."""

    async def append(self, record: UsageRecord) -> None: ...

    async def records_for(self, user_id: str) -> list[UsageRecord]: ...


class InMemoryUsageSink:
    """Process-local usage log (non-persistent)."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: UsageRecord) -> None:
        async with self._lock:
            self._records.append(record)

    async def records_for(self, user_id: str) -> list[UsageRecord]:
        async with self._lock:
            return [r for r in self._records if r.user_id == user_id]

    async def summary(self, user_id: str) -> dict[str, Any]:
        return summarize(await self.records_for(user_id))

    def __len__(self) -> int:
        return len(self._records)


class SqlAlchemyUsageSink:
    """Usage log stored in the ai_usage_logs table.

    append() opens its own transaction. stage() adds the row to a session
    the caller already holds, so PersistentBudgetLedger can commit the
    counter update and the usage row together.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    def stage(self, session: AsyncSession, record: UsageRecord) -> None:
        session.add(record.to_orm())

    async def append(self, record: UsageRecord) -> None:
        async with self._session_factory() as session, session.begin():
            self.stage(session, record)

    async def records_for(self, user_id: str) -> list[UsageRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AIUsageLogRecord)
                .where(AIUsageLogRecord.user_id == user_id)
                .order_by(AIUsageLogRecord.created_at)
            )
            return [UsageRecord.from_orm(row) for row in result.scalars()]

    async def summary(self, user_id: str) -> dict[str, Any]:
        return summarize(await self.records_for(user_id))


class UsageRecorder:
    """Builds usage records and commits them through the ledger."""

    def __init__(self, ledger: BudgetLedger, sink: UsageSink) -> None:
        self._ledger = ledger
        self._sink = sink

    @property
    def sink(self) -> UsageSink:
        return self._sink

    async def record_dispatch(
        self,
        admission: Admission,
        request: AIRequest,
        outcome: DispatchOutcome,
    ) -> AIResponse:
        """Price a completed dispatch, settle the admission and append the record.

        Returns:
            The response with cost_cents filled in from the serving descriptor
        """
        response = outcome.response
        cost = outcome.descriptor.cost_cents(response.input_units, response.output_units)
        record = UsageRecord(
            user_id=request.user_id,
            backend=response.backend,
            feature=str(request.feature),
            input_units=response.input_units,
            output_units=response.output_units,
            cost_cents=cost,
            latency_ms=response.latency_ms,
            fallback_used=outcome.fallback_used,
        )
        await self._ledger.settle(admission, record, self._sink)

        log.info(
            "usage.dispatch_recorded",
            user_id=request.user_id,
            backend=record.backend,
            feature=record.feature,
            cost_cents=str(cost),
            fallback_used=outcome.fallback_used,
        )
        return replace(response, cost_cents=cost)

    async def record_cache_hit(self, request: AIRequest, response: AIResponse) -> None:
        record = UsageRecord(
            user_id=request.user_id,
            backend=response.backend,
            feature=str(request.feature),
            cache_hit=True,
        )
        await self._sink.append(record)
        log.debug("usage.cache_hit_recorded", user_id=request.user_id, backend=response.backend)

    async def record_failure(
        self,
        admission: Admission,
        request: AIRequest,
        backend: str,
        error: Exception,
    ) -> None:
        """Release the admission and log a failed, zero-cost record."""
        await self._ledger.release(admission)
        record = UsageRecord(
            user_id=request.user_id,
            backend=backend,
            feature=str(request.feature),
            success=False,
            error=str(error),
        )
        await self._sink.append(record)
        log.warning(
            "usage.failure_recorded",
            user_id=request.user_id,
            backend=backend,
            error_kind=getattr(error, "kind", type(error).__name__),
        )
