"""AI usage and budget ORM models.

Design principles:
- AIBudgetStateRecord: per-user quota / budget state. One row per user,
  updated in place with SELECT ... FOR UPDATE to avoid lost updates.
- AIUsageLogRecord: append-only log of every dispatch and cache hit, for
  audit and budget replenishment. Never updated, never deleted here.

No foreign keys to the profiles table - identity lives in a separate
service and the orchestrator must keep working when it is unavailable.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ai_orchestrator.database import Base

_COST = Numeric(18, 6)


class AIBudgetStateRecord(Base):
    """Per-user daily quota and monthly budget state.

    Attributes:
        id: UUID primary key
        user_id: Owning user (unique - one row per user)
        day: YYYY-MM-DD of the current daily window (UTC)
        month: YYYY-MM of the current monthly window (UTC)
        requests_today: Settled dispatches in the daily window
        in_flight: Admitted dispatches not yet settled or released
        cost_this_month_cents: Cost accrued in the monthly window
        credit_spent: Per-backend promotional credit spent this month (cents, as strings)
        updated_at: Last modification timestamp (UTC)
    """

    __tablename__ = "ai_budget_states"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[str] = mapped_column(String(10), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    requests_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    in_flight: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_this_month_cents: Mapped[Decimal] = mapped_column(
        _COST, nullable=False, default=Decimal("0")
    )
    credit_spent: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("ix_ai_budget_states_user", "user_id", unique=True),)

    def __repr__(self) -> str:
        return (
            f"<AIBudgetStateRecord user={self.user_id} "
            f"today={self.requests_today}+{self.in_flight} "
            f"month_cost={self.cost_this_month_cents}>"
        )


class AIUsageLogRecord(Base):
    """Append-only log of orchestrator usage events.

    One row per dispatch that reached a backend (success, fallback or
    failure) and one zero-cost row per cache hit.
    """

    __tablename__ = "ai_usage_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    backend: Mapped[str] = mapped_column(String(64), nullable=False)
    feature: Mapped[str] = mapped_column(String(40), nullable=False)
    input_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_cents: Mapped[Decimal] = mapped_column(_COST, nullable=False, default=Decimal("0"))
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_ai_usage_logs_user_time", "user_id", "created_at"),
        Index("ix_ai_usage_logs_backend", "backend"),
    )

    def __repr__(self) -> str:
        return (
            f"<AIUsageLogRecord user={self.user_id} backend={self.backend} "
            f"feature={self.feature} cost={self.cost_cents}>"
        )
