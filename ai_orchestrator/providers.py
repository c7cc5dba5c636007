"""Collaborator interfaces: subscription tier and user context lookup.

The orchestrator only depends on these Protocols. Identity, billing and the
notes / tasks store live in other services; the Static* implementations
below back dev and tests.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import structlog

from ai_orchestrator.model_router.types import SubscriptionTier, UserContext, UserProfile

log = structlog.get_logger(__name__)


class TierProvider(Protocol):
    async def get_user_tier(self, user_id: str) -> SubscriptionTier: ...

    async def get_user_profile(self, user_id: str) -> UserProfile | None: ...


class ContextProvider(Protocol):
    async def get_user_context(self, user_id: str) -> UserContext: ...


class StaticTierProvider:
    """Tier and profile lookup from fixed maps. Unknown users are free tier."""

    def __init__(
        self,
        tiers: Mapping[str, SubscriptionTier] | None = None,
        profiles: Mapping[str, UserProfile] | None = None,
        default_tier: SubscriptionTier = SubscriptionTier.FREE,
    ) -> None:
        self._tiers = dict(tiers or {})
        self._profiles = dict(profiles or {})
        self._default_tier = default_tier

    def set_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        self._tiers[user_id] = tier

    async def get_user_tier(self, user_id: str) -> SubscriptionTier:
        tier = self._tiers.get(user_id)
        if tier is None:
            log.debug("tier_provider.default_tier", user_id=user_id, tier=str(self._default_tier))
            return self._default_tier
        return tier

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)


class StaticContextProvider:
    """Context lookup from a fixed map. Unknown users get an empty context."""

    def __init__(self, contexts: Mapping[str, UserContext] | None = None) -> None:
        self._contexts = dict(contexts or {})

    async def get_user_context(self, user_id: str) -> UserContext:
        return self._contexts.get(user_id, UserContext())
