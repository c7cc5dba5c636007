"""Integration test fixtures.

Provides a real SQLite database (file-backed, via aiosqlite) with the
orchestrator tables created, and settings pointing at it.

Key Fixtures:
- integration_settings: Test settings with persist_usage on
- integration_engine: Async engine with ai_budget_states / ai_usage_logs created
- session_factory: async_sessionmaker bound to the engine
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

import ai_orchestrator.models  # noqa: F401  (registers tables on Base.metadata)
from ai_orchestrator.config import Settings
from ai_orchestrator.database import Base


@pytest.fixture
def integration_settings(test_settings: Settings, tmp_path) -> Settings:
    return test_settings.model_copy(
        update={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}",
            "persist_usage": True,
        }
    )


@pytest_asyncio.fixture
async def integration_engine(
    integration_settings: Settings,
) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(integration_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(integration_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(integration_engine, class_=AsyncSession, expire_on_commit=False)
