"""Composition root: builds a fully wired AIOrchestrator from settings.

Every collaborator can be overridden, which is how tests swap in fake
adapters, a fixed clock or a static tier provider.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ai_orchestrator.adapters import AdapterRegistry, build_adapter_registry
from ai_orchestrator.cache import CacheBackend, ResponseCache, get_cache_backend
from ai_orchestrator.config import Settings
from ai_orchestrator.model_router.budget import BudgetLedger, PersistentBudgetLedger
from ai_orchestrator.model_router.catalog import ModelCatalog, default_catalog
from ai_orchestrator.model_router.classifier import RequestClassifier
from ai_orchestrator.model_router.fallback import FallbackController
from ai_orchestrator.model_router.orchestrator import AIOrchestrator
from ai_orchestrator.model_router.selector import ModelSelector
from ai_orchestrator.model_router.usage import (
    InMemoryUsageSink,
    SqlAlchemyUsageSink,
    UsageRecorder,
    UsageSink,
)
from ai_orchestrator.providers import (
    ContextProvider,
    StaticContextProvider,
    StaticTierProvider,
    TierProvider,
)

log = structlog.get_logger(__name__)


def build_orchestrator(
    settings: Settings,
    *,
    catalog: ModelCatalog | None = None,
    registry: AdapterRegistry | None = None,
    cache_backend: CacheBackend | None = None,
    tier_provider: TierProvider | None = None,
    context_provider: ContextProvider | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AIOrchestrator:
    """Wire an orchestrator.

    Args:
        settings: Application settings
        catalog: Backend catalog (default: built from settings)
        registry: Adapter registry (default: litellm adapters from settings)
        cache_backend: Cache backend (default: Redis or in-memory per settings)
        tier_provider: Subscription tier lookup (default: everyone free)
        context_provider: User context lookup (default: empty context)
        session_factory: Required when settings.persist_usage is set
        clock: UTC clock for the ledger (injectable for tests)

    Returns:
        A ready-to-use AIOrchestrator
    """
    catalog = catalog or default_catalog(settings)
    registry = registry or build_adapter_registry(settings)
    cache = ResponseCache.from_settings(cache_backend or get_cache_backend(settings), settings)
    ledger_kwargs = {"clock": clock} if clock is not None else {}

    sink: UsageSink
    ledger: BudgetLedger
    if settings.persist_usage:
        if session_factory is None:
            raise ValueError("persist_usage requires a session_factory")
        sink = SqlAlchemyUsageSink(session_factory)
        ledger = PersistentBudgetLedger.from_settings(
            settings, catalog, session_factory, **ledger_kwargs
        )
    else:
        sink = InMemoryUsageSink()
        ledger = BudgetLedger.from_settings(settings, catalog, **ledger_kwargs)

    log.info(
        "orchestrator.built",
        backends=len(catalog),
        persistent=settings.persist_usage,
    )

    return AIOrchestrator(
        classifier=RequestClassifier(),
        cache=cache,
        ledger=ledger,
        selector=ModelSelector.from_settings(catalog, settings),
        fallback=FallbackController(registry, catalog),
        recorder=UsageRecorder(ledger, sink),
        tier_provider=tier_provider or StaticTierProvider(),
        context_provider=context_provider or StaticContextProvider(),
        max_message_chars=settings.max_message_chars,
        max_attachment_bytes=settings.max_attachment_bytes,
    )
