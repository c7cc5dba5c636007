"""Budget & quota ledger - per-user daily quota and monthly cost budget.

The ledger enforces three limits:
- Daily request quota per subscription tier (free / pro / enterprise)
- Monthly general cost budget per user (cents)
- Monthly promotional credit pools for specific backends (cents)

Quota admission is a two-phase protocol so concurrent requests from the
same user can never overshoot the daily limit:

    admission = await ledger.admit(user_id, tier)   # check + reserve
    ...dispatch...
    await ledger.settle(admission, record, sink)    # count + charge + log
    # or, on terminal failure:
    await ledger.release(admission)                 # drop the reservation

A request is admitted while requests_today + in_flight < limit. Every
mutation of a user's state happens under that user's asyncio.Lock.

Daily windows reset at UTC midnight, monthly windows on the first of the
month. Within a window counters never decrease.

BudgetLedger keeps state in process memory. PersistentBudgetLedger keeps
the same contract against the ai_budget_states table with
SELECT ... FOR UPDATE, committing the usage row in the same transaction.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ai_orchestrator.errors import QuotaExceededError
from ai_orchestrator.model_router.types import SubscriptionTier
from ai_orchestrator.models.ai_usage import AIBudgetStateRecord

if TYPE_CHECKING:
    from ai_orchestrator.config import Settings
    from ai_orchestrator.model_router.catalog import ModelCatalog
    from ai_orchestrator.model_router.usage import UsageRecord, UsageSink

log = structlog.get_logger(__name__)

DEFAULT_DAILY_LIMITS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 5,
    SubscriptionTier.PRO: 50,
    SubscriptionTier.ENTERPRISE: 200,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def next_utc_midnight(now: datetime) -> datetime:
    start = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return start + timedelta(days=1)


@dataclass
class BudgetState:
    """Mutable per-user counters for the current day and month.

    Attributes:
        user_id: Owning user
        day: Current daily window (YYYY-MM-DD, UTC)
        month: Current monthly window (YYYY-MM, UTC)
        requests_today: Settled requests in the daily window
        in_flight: Admitted requests not yet settled or released
        cost_this_month_cents: General cost accrued this month
        provider_credit_spent_cents: Promotional credit spent per backend this month
    """

    user_id: str
    day: str
    month: str
    requests_today: int = 0
    in_flight: int = 0
    cost_this_month_cents: Decimal = Decimal("0")
    provider_credit_spent_cents: dict[str, Decimal] = field(default_factory=dict)

    def copy(self) -> BudgetState:
        return BudgetState(
            user_id=self.user_id,
            day=self.day,
            month=self.month,
            requests_today=self.requests_today,
            in_flight=self.in_flight,
            cost_this_month_cents=self.cost_this_month_cents,
            provider_credit_spent_cents=dict(self.provider_credit_spent_cents),
        )


@dataclass(frozen=True)
class RemainingBudget:
    """What a user may still spend this month."""

    general_cents: Decimal
    provider_credits_cents: Mapping[str, Decimal] = field(default_factory=dict)

    def credit_for(self, backend: str) -> Decimal:
        return self.provider_credits_cents.get(backend, Decimal("0"))


@dataclass(frozen=True)
class QuotaStatus:
    """Advisory snapshot of a user's daily quota."""

    allowed: bool
    tier: SubscriptionTier
    used: int
    limit: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class Admission:
    """A reserved quota slot. Settle or release exactly once."""

    user_id: str
    tier: SubscriptionTier
    admitted_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)


class BudgetLedger:
    """In-memory quota and budget ledger with per-user atomic cells."""

    # Alert thresholds (fraction of the monthly budget)
    WARNING_THRESHOLD = 0.80
    CRITICAL_THRESHOLD = 0.95

    def __init__(
        self,
        daily_limits: Mapping[SubscriptionTier, int] | None = None,
        monthly_budget_cents: int = 1500,
        credit_pools: Mapping[str, int] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the ledger.

        Args:
            daily_limits: Requests per day for each tier
            monthly_budget_cents: General monthly budget per user
            credit_pools: Backend name -> monthly promotional credit (cents)
            clock: Source of the current UTC time (injectable for tests)
        """
        self._daily_limits = dict(DEFAULT_DAILY_LIMITS)
        self._daily_limits.update(daily_limits or {})
        if any(limit < 0 for limit in self._daily_limits.values()):
            raise ValueError("daily limits cannot be negative")
        if monthly_budget_cents < 0:
            raise ValueError("monthly_budget_cents cannot be negative")

        self._monthly_budget = Decimal(monthly_budget_cents)
        self._credit_pools = {name: Decimal(cents) for name, cents in (credit_pools or {}).items()}
        self._clock = clock

        self._states: dict[str, BudgetState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._open: set[uuid.UUID] = set()

        log.info(
            "budget_ledger.initialized",
            daily_limits={str(t): v for t, v in self._daily_limits.items()},
            monthly_budget_cents=monthly_budget_cents,
            credit_pools=sorted(self._credit_pools),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        catalog: ModelCatalog,
        clock: Callable[[], datetime] = _utcnow,
    ) -> BudgetLedger:
        return cls(
            daily_limits=_limits_from_settings(settings),
            monthly_budget_cents=settings.monthly_budget_cents,
            credit_pools=catalog.credit_pools(),
            clock=clock,
        )

    def daily_limit(self, tier: SubscriptionTier) -> int:
        return self._daily_limits[tier]

    @property
    def monthly_budget_cents(self) -> Decimal:
        return self._monthly_budget

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check_quota(self, user_id: str, tier: SubscriptionTier) -> QuotaStatus:
        """Advisory read of the user's daily quota. Reserves nothing."""
        async with self._lock_for(user_id):
            now = self._clock()
            state = self._state_for(user_id, now)
            return self._quota_status(state, tier, now)

    async def admit(self, user_id: str, tier: SubscriptionTier) -> Admission:
        """Atomically check the daily quota and reserve one slot.

        Raises:
            QuotaExceededError: requests_today + in_flight already at the limit
        """
        async with self._lock_for(user_id):
            now = self._clock()
            state = self._state_for(user_id, now)
            status = self._quota_status(state, tier, now)
            if not status.allowed:
                self._raise_quota_exceeded(user_id, status)
            state.in_flight += 1

        admission = Admission(user_id=user_id, tier=tier, admitted_at=now)
        self._open.add(admission.id)
        log.debug(
            "budget_ledger.admitted",
            user_id=user_id,
            tier=str(tier),
            used=status.used + 1,
            limit=status.limit,
        )
        return admission

    async def settle(self, admission: Admission, record: UsageRecord, sink: UsageSink) -> None:
        """Count a completed dispatch, charge its cost and append its record.

        The counter update and the append happen under the user's lock, so
        readers never observe one without the other.
        """
        self._consume(admission)
        try:
            async with self._lock_for(admission.user_id):
                now = self._clock()
                state = self._state_for(admission.user_id, now)
                await sink.append(record)
                if self._holds_slot(admission, state):
                    state.in_flight = max(0, state.in_flight - 1)
                    state.requests_today += 1
                self._charge(state, record.backend, record.cost_cents)
                snapshot = state.copy()
        except BaseException:
            # Nothing was counted, so the reservation is still held
            self._reopen(admission)
            raise

        log.info(
            "budget_ledger.settled",
            user_id=admission.user_id,
            backend=record.backend,
            cost_cents=str(record.cost_cents),
            requests_today=snapshot.requests_today,
            month_cost_cents=str(snapshot.cost_this_month_cents),
        )
        self._check_thresholds(snapshot)

    async def release(self, admission: Admission) -> None:
        """Drop a reservation without counting the request."""
        self._consume(admission)
        async with self._lock_for(admission.user_id):
            state = self._state_for(admission.user_id, self._clock())
            if self._holds_slot(admission, state):
                state.in_flight = max(0, state.in_flight - 1)
        log.debug("budget_ledger.released", user_id=admission.user_id)

    async def remaining_budget(self, user_id: str) -> RemainingBudget:
        async with self._lock_for(user_id):
            state = self._state_for(user_id, self._clock())
            return self._remaining(state)

    async def get_state(self, user_id: str) -> BudgetState:
        """Return a snapshot of the user's counters (after any window reset)."""
        async with self._lock_for(user_id):
            return self._state_for(user_id, self._clock()).copy()

    def is_open(self, admission: Admission) -> bool:
        """True until the admission has been settled or released."""
        return admission.id in self._open

    # ------------------------------------------------------------------
    # Internals shared with PersistentBudgetLedger
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def _consume(self, admission: Admission) -> None:
        if admission.id not in self._open:
            raise ValueError(f"admission {admission.id} already settled or released")
        self._open.discard(admission.id)

    def _reopen(self, admission: Admission) -> None:
        self._open.add(admission.id)

    @staticmethod
    def _holds_slot(admission: Admission, state: BudgetState) -> bool:
        """False once the day the admission was made in has rolled over.

        The daily reset drops every in-flight reservation, so a late settle or
        release must not take a slot away from today's admissions.
        """
        return day_key(admission.admitted_at) == state.day

    def _state_for(self, user_id: str, now: datetime) -> BudgetState:
        state = self._states.get(user_id)
        if state is None:
            state = self._states[user_id] = BudgetState(
                user_id=user_id, day=day_key(now), month=month_key(now)
            )
        self._roll_windows(state, now)
        return state

    @staticmethod
    def _roll_windows(state: BudgetState, now: datetime) -> None:
        today, this_month = day_key(now), month_key(now)
        if state.day != today:
            log.info(
                "budget_ledger.daily_reset",
                user_id=state.user_id,
                previous_requests=state.requests_today,
                dropped_in_flight=state.in_flight,
            )
            state.requests_today = 0
            state.in_flight = 0
            state.day = today
        if state.month != this_month:
            log.info(
                "budget_ledger.monthly_reset",
                user_id=state.user_id,
                previous_cost_cents=str(state.cost_this_month_cents),
            )
            state.cost_this_month_cents = Decimal("0")
            state.provider_credit_spent_cents = {}
            state.month = this_month

    def _quota_status(
        self, state: BudgetState, tier: SubscriptionTier, now: datetime
    ) -> QuotaStatus:
        limit = self._daily_limits[tier]
        used = state.requests_today + state.in_flight
        return QuotaStatus(
            allowed=used < limit,
            tier=tier,
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            reset_at=next_utc_midnight(now),
        )

    @staticmethod
    def _raise_quota_exceeded(user_id: str, status: QuotaStatus) -> None:
        log.warning(
            "budget_ledger.quota_exceeded",
            user_id=user_id,
            tier=str(status.tier),
            used=status.used,
            limit=status.limit,
        )
        raise QuotaExceededError(
            f"Daily limit of {status.limit} requests reached for the {status.tier} tier",
            tier=str(status.tier),
            limit=status.limit,
            remaining=0,
            reset_at=status.reset_at,
        )

    def _charge(self, state: BudgetState, backend: str, cost: Decimal) -> None:
        """Debit the backend's credit pool first; any overflow hits the general budget."""
        if cost <= 0:
            return
        pool = self._credit_pools.get(backend)
        if pool is not None:
            spent = state.provider_credit_spent_cents.get(backend, Decimal("0"))
            from_pool = min(cost, max(Decimal("0"), pool - spent))
            state.provider_credit_spent_cents[backend] = spent + from_pool
            cost -= from_pool
        state.cost_this_month_cents += cost

    def _remaining(self, state: BudgetState) -> RemainingBudget:
        return RemainingBudget(
            general_cents=max(Decimal("0"), self._monthly_budget - state.cost_this_month_cents),
            provider_credits_cents={
                name: max(
                    Decimal("0"),
                    pool - state.provider_credit_spent_cents.get(name, Decimal("0")),
                )
                for name, pool in self._credit_pools.items()
            },
        )

    def _check_thresholds(self, state: BudgetState) -> None:
        """Log an alert when the monthly budget crosses 80% / 95%."""
        if self._monthly_budget <= 0:
            return
        pct = float(state.cost_this_month_cents / self._monthly_budget)
        if pct >= self.CRITICAL_THRESHOLD:
            log.critical(
                "budget_ledger.monthly_critical",
                user_id=state.user_id,
                usage_pct=round(pct * 100, 1),
                used_cents=str(state.cost_this_month_cents),
                limit_cents=str(self._monthly_budget),
            )
        elif pct >= self.WARNING_THRESHOLD:
            log.warning(
                "budget_ledger.monthly_warning",
                user_id=state.user_id,
                usage_pct=round(pct * 100, 1),
                used_cents=str(state.cost_this_month_cents),
                limit_cents=str(self._monthly_budget),
            )


def _limits_from_settings(settings: Settings) -> dict[SubscriptionTier, int]:
    return {
        SubscriptionTier.FREE: settings.daily_limit_free,
        SubscriptionTier.PRO: settings.daily_limit_pro,
        SubscriptionTier.ENTERPRISE: settings.daily_limit_enterprise,
    }


# ---------------------------------------------------------------------------
# Persistent ledger backed by the database
# ---------------------------------------------------------------------------


class PersistentBudgetLedger(BudgetLedger):
    """Budget ledger backed by the ai_budget_states table.

    Every mutation loads the user's row with SELECT ... FOR UPDATE inside a
    single transaction, so counters stay correct across worker processes.
    The per-user asyncio.Lock is still taken first: it keeps coroutines in
    this process from queueing on the same row lock (and serialises access
    on backends such as SQLite that ignore FOR UPDATE).

    When the sink is a SqlAlchemyUsageSink the usage row is staged in the
    same session as the counter update and both commit together.

    Usage:
        ledger = PersistentBudgetLedger(get_session_factory(), daily_limits=...)
        admission = await ledger.admit(user_id, tier)
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        daily_limits: Mapping[SubscriptionTier, int] | None = None,
        monthly_budget_cents: int = 1500,
        credit_pools: Mapping[str, int] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(
            daily_limits=daily_limits,
            monthly_budget_cents=monthly_budget_cents,
            credit_pools=credit_pools,
            clock=clock,
        )
        self._session_factory = session_factory
        log.info("persistent_budget_ledger.initialized")

    @classmethod
    def from_settings(  # type: ignore[override]
        cls,
        settings: Settings,
        catalog: ModelCatalog,
        session_factory: Callable[[], AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> PersistentBudgetLedger:
        return cls(
            session_factory,
            daily_limits=_limits_from_settings(settings),
            monthly_budget_cents=settings.monthly_budget_cents,
            credit_pools=catalog.credit_pools(),
            clock=clock,
        )

    async def check_quota(self, user_id: str, tier: SubscriptionTier) -> QuotaStatus:
        async with self._session_factory() as session:
            now = self._clock()
            row = await self._load(session, user_id, now, lock=False)
            return self._quota_status(self._to_state(row, now), tier, now)

    async def admit(self, user_id: str, tier: SubscriptionTier) -> Admission:
        async with self._lock_for(user_id):
            async with self._session_factory() as session, session.begin():
                now = self._clock()
                row = await self._load(session, user_id, now, lock=True)
                state = self._to_state(row, now)
                status = self._quota_status(state, tier, now)
                if not status.allowed:
                    self._raise_quota_exceeded(user_id, status)
                state.in_flight += 1
                self._apply(row, state)

        admission = Admission(user_id=user_id, tier=tier, admitted_at=now)
        self._open.add(admission.id)
        log.debug(
            "persistent_budget_ledger.admitted",
            user_id=user_id,
            tier=str(tier),
            used=status.used + 1,
            limit=status.limit,
        )
        return admission

    async def settle(self, admission: Admission, record: UsageRecord, sink: UsageSink) -> None:
        # Imported here: usage imports this module for type hints only
        from ai_orchestrator.model_router.usage import SqlAlchemyUsageSink

        self._consume(admission)
        staged = isinstance(sink, SqlAlchemyUsageSink)
        try:
            async with self._lock_for(admission.user_id):
                async with self._session_factory() as session, session.begin():
                    now = self._clock()
                    row = await self._load(session, admission.user_id, now, lock=True)
                    state = self._to_state(row, now)
                    if self._holds_slot(admission, state):
                        state.in_flight = max(0, state.in_flight - 1)
                        state.requests_today += 1
                    self._charge(state, record.backend, record.cost_cents)
                    self._apply(row, state)
                    if staged:
                        sink.stage(session, record)
                    else:
                        await sink.append(record)
        except BaseException:
            # The transaction rolled back, so the reservation is still held
            self._reopen(admission)
            raise

        log.info(
            "persistent_budget_ledger.settled",
            user_id=admission.user_id,
            backend=record.backend,
            cost_cents=str(record.cost_cents),
            requests_today=state.requests_today,
            month_cost_cents=str(state.cost_this_month_cents),
        )
        self._check_thresholds(state)

    async def release(self, admission: Admission) -> None:
        self._consume(admission)
        async with self._lock_for(admission.user_id):
            async with self._session_factory() as session, session.begin():
                now = self._clock()
                row = await self._load(session, admission.user_id, now, lock=True)
                state = self._to_state(row, now)
                if self._holds_slot(admission, state):
                    state.in_flight = max(0, state.in_flight - 1)
                self._apply(row, state)
        log.debug("persistent_budget_ledger.released", user_id=admission.user_id)

    async def remaining_budget(self, user_id: str) -> RemainingBudget:
        async with self._session_factory() as session:
            now = self._clock()
            row = await self._load(session, user_id, now, lock=False)
            return self._remaining(self._to_state(row, now))

    async def get_state(self, user_id: str) -> BudgetState:
        async with self._session_factory() as session:
            now = self._clock()
            row = await self._load(session, user_id, now, lock=False)
            return self._to_state(row, now)

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    async def _load(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime,
        *,
        lock: bool,
    ) -> AIBudgetStateRecord:
        """Fetch the user's row, creating it on first use.

        Rows created for read-only callers are never flushed, so plain reads
        do not write to the database.
        """
        stmt = select(AIBudgetStateRecord).where(AIBudgetStateRecord.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is not None:
            return row

        row = AIBudgetStateRecord(
            user_id=user_id,
            day=day_key(now),
            month=month_key(now),
            requests_today=0,
            in_flight=0,
            cost_this_month_cents=Decimal("0"),
            credit_spent={},
        )
        if lock:
            session.add(row)
            await session.flush()
            log.debug("persistent_budget_ledger.row_created", user_id=user_id)
        return row

    def _to_state(self, row: AIBudgetStateRecord, now: datetime) -> BudgetState:
        state = BudgetState(
            user_id=row.user_id,
            day=row.day,
            month=row.month,
            requests_today=row.requests_today,
            in_flight=row.in_flight,
            cost_this_month_cents=Decimal(row.cost_this_month_cents),
            provider_credit_spent_cents={
                name: Decimal(str(spent)) for name, spent in (row.credit_spent or {}).items()
            },
        )
        self._roll_windows(state, now)
        return state

    @staticmethod
    def _apply(row: AIBudgetStateRecord, state: BudgetState) -> None:
        row.day = state.day
        row.month = state.month
        row.requests_today = state.requests_today
        row.in_flight = state.in_flight
        row.cost_this_month_cents = state.cost_this_month_cents
        # Reassign rather than mutate so SQLAlchemy sees the JSON change
        row.credit_spent = {
            name: str(spent) for name, spent in state.provider_credit_spent_cents.items()
        }
