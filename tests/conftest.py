"""
Shared test fixtures for pytest.

Provides fakes and wiring used across the test modules:
- FakeClock: controllable UTC clock + monotonic clock (ledger and cache)
- FakeAdapter: scripted backend adapter that never touches the network
- test_settings: Test environment configuration
- catalog, fake_adapter, registry: default catalog with a fake adapter behind it
- tier_provider: StaticTierProvider with a free, a pro and an enterprise user
- orchestrator: fully wired AIOrchestrator over the fakes
- make_request: AIRequest builder with sensible defaults
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from ai_orchestrator.adapters.base import AdapterRegistry, BackendAdapter
from ai_orchestrator.cache.backend import InMemoryCacheBackend
from ai_orchestrator.config import Environment, Settings, get_settings
from ai_orchestrator.model_router.catalog import Capability, ModelDescriptor, default_catalog
from ai_orchestrator.model_router.types import (
    AIRequest,
    AIResponse,
    Attachment,
    Citation,
    Feature,
    SubscriptionTier,
)
from ai_orchestrator.providers import StaticTierProvider
from ai_orchestrator.service import build_orchestrator

FREE_USER = "user-free"
PRO_USER = "user-pro"
ENTERPRISE_USER = "user-enterprise"

# 1x1 transparent PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeClock:
    """Wall clock (UTC datetime) and monotonic clock that advance together."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
        self._monotonic = 1_000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, **delta: float) -> None:
        step = timedelta(**delta)
        self._now += step
        self._monotonic += step.total_seconds()

    def set(self, when: datetime) -> None:
        self._monotonic += (when - self._now).total_seconds()
        self._now = when


class FakeAdapter(BackendAdapter):
    """Scripted adapter: echoes the message, or raises queued failures.

    Attributes:
        calls: Backend names dispatched to, in order
        requests: Requests received, in order
        failures: Backend name -> exceptions to raise on the next calls
        units: (input_units, output_units) reported by chat responses
        delay: Seconds to sleep before answering
    """

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.calls: list[str] = []
        self.requests: list[AIRequest] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.units = (1000, 2000)
        self.delay = 0.0

    def fail(self, backend: str, *errors: BaseException) -> None:
        self.failures.setdefault(backend, []).extend(errors)

    async def _call(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        self.calls.append(descriptor.name)
        self.requests.append(request)
        queued = self.failures.get(descriptor.name)
        if queued:
            raise queued.pop(0)
        if self.delay:
            await asyncio.sleep(self.delay)

        if descriptor.supports(Capability.IMAGE_GENERATION):
            return AIResponse(
                content="https://images.example.com/1.png",
                backend=descriptor.name,
                confidence=descriptor.default_confidence,
                output_units=1,
                images=("https://images.example.com/1.png",),
            )

        citations: tuple[Citation, ...] = ()
        if descriptor.supports(Capability.CITATIONS):
            citations = (Citation(number=1, url="https://example.com/source"),)
        return AIResponse(
            content=f"[{descriptor.name}] {request.message}",
            backend=descriptor.name,
            confidence=descriptor.default_confidence,
            input_units=self.units[0],
            output_units=self.units[1],
            citations=citations,
        )


# ------------------------------------------------------------------ #
# Settings & wiring
# ------------------------------------------------------------------ #


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment=Environment.TEST,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="",
        persist_usage=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def catalog(test_settings: Settings):
    return default_catalog(test_settings)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter: FakeAdapter) -> AdapterRegistry:
    return AdapterRegistry({}, default=fake_adapter)


@pytest.fixture
def tier_provider() -> StaticTierProvider:
    return StaticTierProvider(
        {
            FREE_USER: SubscriptionTier.FREE,
            PRO_USER: SubscriptionTier.PRO,
            ENTERPRISE_USER: SubscriptionTier.ENTERPRISE,
        }
    )


@pytest.fixture
def cache_backend(clock: FakeClock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(max_entries=100, clock=clock.monotonic)


@pytest.fixture
def orchestrator(test_settings, catalog, registry, cache_backend, tier_provider, clock):
    return build_orchestrator(
        test_settings,
        catalog=catalog,
        registry=registry,
        cache_backend=cache_backend,
        tier_provider=tier_provider,
        clock=clock.now,
    )


def make_request(
    message: str = "hi",
    *,
    feature: Feature = Feature.CHAT,
    user_id: str = FREE_USER,
    **kwargs: Any,
) -> AIRequest:
    if feature.is_vision and "attachments" not in kwargs:
        kwargs["attachments"] = (Attachment(mime_type="image/png", data=PNG_BYTES),)
    return AIRequest(user_id=user_id, feature=feature, message=message, **kwargs)
