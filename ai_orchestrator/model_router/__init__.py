"""Request routing and cost control for AI-assisted features.

Classifies each request, enforces per-user daily quotas and monthly
budgets, picks one backend from the model catalog, dispatches it with a
single fallback to the always-available zero-cost backend, and records
usage for every dispatch and cache hit.

BudgetLedger and InMemoryUsageSink keep state in process memory. Use
PersistentBudgetLedger and SqlAlchemyUsageSink for durable, multi-worker
deployments.
"""

from __future__ import annotations

from ai_orchestrator.model_router.budget import (
    Admission,
    BudgetLedger,
    BudgetState,
    PersistentBudgetLedger,
    QuotaStatus,
    RemainingBudget,
)
from ai_orchestrator.model_router.catalog import (
    Capability,
    ModelCatalog,
    ModelDescriptor,
    default_catalog,
)
from ai_orchestrator.model_router.classifier import Classification, RequestClassifier
from ai_orchestrator.model_router.fallback import DispatchOutcome, FallbackController
from ai_orchestrator.model_router.orchestrator import AIOrchestrator, UsageSummary
from ai_orchestrator.model_router.selector import ModelSelector
from ai_orchestrator.model_router.types import (
    AIRequest,
    AIResponse,
    Attachment,
    Citation,
    Complexity,
    ConversationTurn,
    Feature,
    Priority,
    SubscriptionTier,
    UserContext,
    UserProfile,
)
from ai_orchestrator.model_router.usage import (
    InMemoryUsageSink,
    SqlAlchemyUsageSink,
    UsageRecord,
    UsageRecorder,
)

__all__ = [
    "AIOrchestrator",
    "AIRequest",
    "AIResponse",
    "Admission",
    "Attachment",
    "BudgetLedger",
    "BudgetState",
    "Capability",
    "Citation",
    "Classification",
    "Complexity",
    "ConversationTurn",
    "DispatchOutcome",
    "FallbackController",
    "Feature",
    "InMemoryUsageSink",
    "ModelCatalog",
    "ModelDescriptor",
    "ModelSelector",
    "PersistentBudgetLedger",
    "Priority",
    "QuotaStatus",
    "RemainingBudget",
    "RequestClassifier",
    "SqlAlchemyUsageSink",
    "SubscriptionTier",
    "UsageRecord",
    "UsageRecorder",
    "UsageSummary",
    "UserContext",
    "UserProfile",
    "default_catalog",
]
