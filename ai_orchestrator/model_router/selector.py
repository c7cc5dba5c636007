"""Model selector - pure decision table from request shape to backend.

select(feature, complexity, tier, budget) -> ModelDescriptor

Routing rules:
- Image generation: the image backend, unconditionally
- Grounded research: citation backend for paid tiers, zero-cost backend
  (no citations) for the free tier
- General budget low: cheapest backend with the required capabilities
- Vision and structured extraction: cheap fast backend
- Chat: simple -> cheap; medium/complex -> quality while budget allows
- Deep generation (notes, mind maps): promotional-credit backend while its
  pool has balance (paid tiers), then quality, then cheap
- Summaries and briefings: quality for paid tiers with budget, else cheap

The function is total: it never raises for a valid input tuple. If a
role's backend is missing from a custom catalog it resolves to the
catalog's always-available backend.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from ai_orchestrator.model_router.catalog import (
    CHEAP,
    CITATIONS,
    CREDIT,
    IMAGE,
    QUALITY,
    Capability,
    ModelCatalog,
    ModelDescriptor,
)
from ai_orchestrator.model_router.types import Complexity, Feature, SubscriptionTier

if TYPE_CHECKING:
    from ai_orchestrator.config import Settings
    from ai_orchestrator.model_router.budget import RemainingBudget

log = structlog.get_logger(__name__)

EXTRACTION_FEATURES = frozenset(
    {
        Feature.VISION_OCR,
        Feature.VISION_EVENT_DETECTION,
        Feature.TASK_PARSING,
        Feature.CALENDAR_EVENT_PARSING,
        Feature.EMAIL_EVENT_EXTRACTION,
    }
)

GENERATION_FEATURES = frozenset(
    {Feature.NOTE_GENERATION, Feature.NOTE_AUTOFILL, Feature.MINDMAP_GENERATION}
)

SUMMARY_FEATURES = frozenset(
    {Feature.STRATEGIC_BRIEFING, Feature.COMPLETION_SUMMARY, Feature.NOTE_SUMMARY}
)


def required_capabilities(feature: Feature) -> frozenset[Capability]:
    """Capabilities a backend must have to serve this feature at all."""
    if feature is Feature.IMAGE_GENERATION:
        return frozenset({Capability.IMAGE_GENERATION})
    if feature.is_vision:
        return frozenset({Capability.CHAT, Capability.VISION})
    return frozenset({Capability.CHAT})


class ModelSelector:
    """Chooses one backend per request from the catalog."""

    def __init__(
        self,
        catalog: ModelCatalog,
        chat_upgrade_min_budget_cents: int = 5,
        low_budget_threshold_cents: int = 3,
    ) -> None:
        self._catalog = catalog
        self._chat_upgrade_min = Decimal(chat_upgrade_min_budget_cents)
        self._low_budget = Decimal(low_budget_threshold_cents)

    @classmethod
    def from_settings(cls, catalog: ModelCatalog, settings: Settings) -> ModelSelector:
        return cls(
            catalog,
            chat_upgrade_min_budget_cents=settings.chat_upgrade_min_budget_cents,
            low_budget_threshold_cents=settings.low_budget_threshold_cents,
        )

    def select(
        self,
        feature: Feature,
        complexity: Complexity,
        tier: SubscriptionTier,
        budget: RemainingBudget,
    ) -> ModelDescriptor:
        """Pick the backend for one request.

        Args:
            feature: Feature tag of the request
            complexity: Classifier output
            tier: Requesting user's subscription tier
            budget: User's remaining general budget and credit pools

        Returns:
            The chosen ModelDescriptor (never raises)
        """
        name, reason = self._decide(feature, complexity, tier, budget)
        descriptor = self._resolve(name, feature)

        log.debug(
            "model_selector.selected",
            feature=str(feature),
            complexity=str(complexity),
            tier=str(tier),
            backend=descriptor.name,
            reason=reason,
            general_budget_cents=str(budget.general_cents),
        )
        return descriptor

    def _decide(
        self,
        feature: Feature,
        complexity: Complexity,
        tier: SubscriptionTier,
        budget: RemainingBudget,
    ) -> tuple[str, str]:
        # No substitute exists for these, so budget never downgrades them
        if feature is Feature.IMAGE_GENERATION:
            return IMAGE, "image_only_backend"
        if feature is Feature.GROUNDED_RESEARCH:
            if tier.is_paid:
                return CITATIONS, "paid_research"
            return self._catalog.fallback.name, "free_research"

        general = budget.general_cents
        if general <= self._low_budget:
            cheapest = self._catalog.cheapest(*required_capabilities(feature))
            if cheapest is not None:
                return cheapest.name, "low_budget_downgrade"

        if feature in EXTRACTION_FEATURES:
            return CHEAP, "extraction"

        if feature is Feature.CHAT:
            if complexity is Complexity.SIMPLE:
                return CHEAP, "simple_chat"
            if general > self._chat_upgrade_min:
                return QUALITY, "chat_upgrade"
            return CHEAP, "chat_budget_limited"

        if feature in GENERATION_FEATURES:
            if budget.credit_for(CREDIT) > 0:
                return CREDIT, "promotional_credit"
            if tier.is_paid:
                return QUALITY, "credit_exhausted"
            return CHEAP, "free_generation"

        if feature in SUMMARY_FEATURES and tier.is_paid:
            return QUALITY, "paid_summary"

        return CHEAP, "default"

    def _resolve(self, name: str, feature: Feature) -> ModelDescriptor:
        if name in self._catalog:
            descriptor = self._catalog.get(name)
            if descriptor.supports(*required_capabilities(feature)):
                return descriptor
        log.warning("model_selector.role_unavailable", backend=name, feature=str(feature))
        return self._catalog.fallback
