"""AI orchestrator - the single entry point for every AI-assisted feature.

process_request() runs one request through the pipeline:

    validate -> resolve tier / context -> classify -> cache lookup
      hit:  record zero-cost usage, return
      miss: admit (quota) -> select backend -> dispatch with fallback
            -> settle ledger + usage record -> cache store -> return

The cache is consulted before the quota so a cached answer is never
refused for quota reasons; every cache-miss dispatch still goes through
an atomic admission first.

All collaborators are injected. See ai_orchestrator.service for the
production wiring.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog
from structlog.contextvars import bound_contextvars

from ai_orchestrator.errors import (
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from ai_orchestrator.model_router.budget import BudgetLedger
from ai_orchestrator.model_router.classifier import RequestClassifier
from ai_orchestrator.model_router.fallback import FallbackController
from ai_orchestrator.model_router.selector import ModelSelector
from ai_orchestrator.model_router.types import AIRequest, AIResponse, Feature
from ai_orchestrator.model_router.usage import UsageRecorder, summarize

if TYPE_CHECKING:
    from ai_orchestrator.cache.response_cache import ResponseCache
    from ai_orchestrator.providers import ContextProvider, TierProvider

log = structlog.get_logger(__name__)

ALLOWED_ATTACHMENT_TYPES = ("image/", "application/pdf")
ALLOWED_ROLES = frozenset({"user", "assistant", "system"})


@dataclass(frozen=True)
class UsageSummary:
    """Per-user usage snapshot for the usage-stats endpoint."""

    user_id: str
    tier: str
    requests_today: int
    in_flight: int
    daily_limit: int
    remaining_today: int
    reset_at: datetime
    cost_this_month_cents: Decimal
    remaining_budget_cents: Decimal
    remaining_credits_cents: dict[str, Decimal] = field(default_factory=dict)
    totals: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier,
            "requests_today": self.requests_today,
            "in_flight": self.in_flight,
            "daily_limit": self.daily_limit,
            "remaining_today": self.remaining_today,
            "reset_at": self.reset_at.isoformat(),
            "cost_this_month_cents": str(self.cost_this_month_cents),
            "remaining_budget_cents": str(self.remaining_budget_cents),
            "remaining_credits_cents": {
                name: str(cents) for name, cents in self.remaining_credits_cents.items()
            },
            "totals": {
                **self.totals,
                "cost_cents": str(self.totals.get("cost_cents", Decimal("0"))),
                "by_backend": {
                    name: {**stats, "cost_cents": str(stats["cost_cents"])}
                    for name, stats in self.totals.get("by_backend", {}).items()
                },
            },
        }


class AIOrchestrator:
    """Classifies, admits, routes, dispatches and records AI requests."""

    def __init__(
        self,
        *,
        classifier: RequestClassifier,
        cache: ResponseCache,
        ledger: BudgetLedger,
        selector: ModelSelector,
        fallback: FallbackController,
        recorder: UsageRecorder,
        tier_provider: TierProvider,
        context_provider: ContextProvider,
        max_message_chars: int = 32_000,
        max_attachment_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self._classifier = classifier
        self._cache = cache
        self._ledger = ledger
        self._selector = selector
        self._fallback = fallback
        self._recorder = recorder
        self._tiers = tier_provider
        self._contexts = context_provider
        self._max_message_chars = max_message_chars
        self._max_attachment_bytes = max_attachment_bytes

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def ledger(self) -> BudgetLedger:
        return self._ledger

    @property
    def recorder(self) -> UsageRecorder:
        return self._recorder

    async def process_request(self, request: AIRequest) -> AIResponse:
        """Serve one AI request.

        Raises:
            ValidationError: The request is malformed (never billed)
            QuotaExceededError: Daily allowance used up (cache misses only)
            ServiceError: The selected backend rejected the request
            ServiceUnavailableError: Primary and fallback backends both failed
        """
        request = self.validate(request)

        with bound_contextvars(user_id=request.user_id, feature=str(request.feature)):
            tier = await self._tiers.get_user_tier(request.user_id)
            request = await self._enrich(request)
            classification = self._classifier.classify(request, partition=str(tier))

            cached = await self._cache.lookup(classification.fingerprint)
            if cached is not None:
                await self._recorder.record_cache_hit(request, cached)
                log.info("orchestrator.cache_hit", backend=cached.backend)
                return cached

            admission = await self._ledger.admit(request.user_id, tier)
            try:
                budget = await self._ledger.remaining_budget(request.user_id)
                descriptor = self._selector.select(
                    request.feature, classification.complexity, tier, budget
                )
                outcome = await self._fallback.execute(request, descriptor)
                response = await self._recorder.record_dispatch(admission, request, outcome)
            except ServiceError as exc:
                await self._recorder.record_failure(admission, request, exc.backend, exc)
                raise
            except ServiceUnavailableError as exc:
                backend = exc.attempted[-1] if exc.attempted else "unknown"
                await self._recorder.record_failure(admission, request, backend, exc)
                raise
            except BaseException:
                # Includes cancellation: the slot must never outlive the request
                if self._ledger.is_open(admission):
                    await self._ledger.release(admission)
                raise

            if outcome.fallback_used:
                # A degraded answer should not be served for the whole TTL
                log.info("orchestrator.fallback_not_cached", backend=response.backend)
            else:
                await self._cache.store(
                    classification.fingerprint,
                    response,
                    self._cache.ttl_for(request.feature),
                )

            log.info(
                "orchestrator.request_served",
                tier=str(tier),
                complexity=str(classification.complexity),
                backend=response.backend,
                cost_cents=str(response.cost_cents),
                latency_ms=response.latency_ms,
                fallback_used=response.fallback_used,
            )
            return response

    async def usage_summary(self, user_id: str) -> UsageSummary:
        """Today's quota, this month's spend and lifetime totals for a user."""
        tier = await self._tiers.get_user_tier(user_id)
        quota = await self._ledger.check_quota(user_id, tier)
        state = await self._ledger.get_state(user_id)
        remaining = await self._ledger.remaining_budget(user_id)
        records = await self._recorder.sink.records_for(user_id)

        return UsageSummary(
            user_id=user_id,
            tier=str(tier),
            requests_today=state.requests_today,
            in_flight=state.in_flight,
            daily_limit=quota.limit,
            remaining_today=quota.remaining,
            reset_at=quota.reset_at,
            cost_this_month_cents=state.cost_this_month_cents,
            remaining_budget_cents=remaining.general_cents,
            remaining_credits_cents=dict(remaining.provider_credits_cents),
            totals=summarize(records),
        )

    def validate(self, request: AIRequest) -> AIRequest:
        """Reject malformed requests before any quota or cache access.

        Returns:
            The request, with a string feature tag coerced to Feature
        """
        if not request.user_id or not request.user_id.strip():
            raise ValidationError("user_id is required")

        if not isinstance(request.feature, Feature):
            try:
                request = replace(request, feature=Feature(request.feature))
            except ValueError:
                raise ValidationError(f"unknown feature: {request.feature!r}") from None

        message = request.message if isinstance(request.message, str) else ""
        if not message.strip():
            raise ValidationError("message must not be empty")
        if len(message) > self._max_message_chars:
            raise ValidationError(
                f"message exceeds {self._max_message_chars} characters"
            )

        for turn in request.history:
            if turn.role not in ALLOWED_ROLES:
                raise ValidationError(f"invalid history role: {turn.role!r}")

        for attachment in request.attachments:
            if not attachment.mime_type.startswith(ALLOWED_ATTACHMENT_TYPES):
                raise ValidationError(f"unsupported attachment type: {attachment.mime_type}")
            if len(attachment.data) > self._max_attachment_bytes:
                raise ValidationError(
                    f"attachment exceeds {self._max_attachment_bytes} bytes"
                )

        if request.feature.is_vision and not any(a.is_image for a in request.attachments):
            raise ValidationError(f"{request.feature} requires an image attachment")

        return request

    async def _enrich(self, request: AIRequest) -> AIRequest:
        """Fill in the user's context (and profile) when the caller sent none."""
        if request.context is not None:
            return request
        context = await self._contexts.get_user_context(request.user_id)
        if context.profile is None:
            profile = await self._tiers.get_user_profile(request.user_id)
            if profile is not None:
                context = replace(context, profile=profile)
        return request.with_context(context)
