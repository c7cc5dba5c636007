"""Response cache - content-addressed store of AI responses.

Maps a request fingerprint (see model_router.classifier.make_fingerprint)
to a previously computed AIResponse. Entries are immutable once written;
a re-fetch replaces the whole entry.

TTL design (per feature, overridable via Settings):
- chat, strategic_briefing, mindmap_generation: 1 hour
- grounded_research: 2 hours
- note_summary: 24 hours (expensive to regenerate, rarely stale)
- everything else: cache_ttl_default

A hit is returned with cache_hit=True and cost_cents=0; content is
byte-identical to the stored response.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from ai_orchestrator.cache.backend import CacheBackend
from ai_orchestrator.model_router.types import AIResponse, Feature

if TYPE_CHECKING:
    from ai_orchestrator.config import Settings

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """One cached response and the moment it stops being served."""

    fingerprint: str
    response: AIResponse
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "response": self.response.to_dict(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            fingerprint=data["fingerprint"],
            response=AIResponse.from_dict(data["response"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class ResponseCache:
    """Fingerprint-keyed response cache over a pluggable backend.

    All public methods are async to allow the underlying backend to be
    I/O-bound (Redis). The class holds no mutable state beyond the
    injected backend and its TTL table.
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttls: dict[Feature, int] | None = None,
        default_ttl: int = 3600,
    ) -> None:
        self._backend = backend
        self._ttls = dict(ttls or {})
        self._default_ttl = default_ttl

    @classmethod
    def from_settings(cls, backend: CacheBackend, settings: Settings) -> ResponseCache:
        return cls(
            backend,
            ttls={
                Feature.CHAT: settings.cache_ttl_chat,
                Feature.STRATEGIC_BRIEFING: settings.cache_ttl_strategic_briefing,
                Feature.MINDMAP_GENERATION: settings.cache_ttl_mindmap_generation,
                Feature.GROUNDED_RESEARCH: settings.cache_ttl_grounded_research,
                Feature.NOTE_SUMMARY: settings.cache_ttl_note_summary,
            },
            default_ttl=settings.cache_ttl_default,
        )

    def ttl_for(self, feature: Feature) -> int:
        """Seconds a response for this feature stays fresh."""
        return self._ttls.get(feature, self._default_ttl)

    async def lookup(self, fingerprint: str) -> AIResponse | None:
        """Return the cached response marked as a zero-cost hit, or None on miss."""
        data = await self._backend.get(fingerprint)
        if data is None:
            log.debug("cache.response.miss", key=fingerprint)
            return None

        try:
            entry = CacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            # Written by an incompatible version; treat as a miss and let store() replace it
            log.warning("cache.response.corrupt_entry", key=fingerprint, error=str(exc))
            return None

        log.debug("cache.response.hit", key=fingerprint, backend=entry.response.backend)
        return replace(entry.response, cache_hit=True, cost_cents=Decimal("0"))

    async def store(self, fingerprint: str, response: AIResponse, ttl: int) -> CacheEntry:
        """Store a freshly computed response, replacing any previous entry."""
        if ttl < 1:
            raise ValueError("ttl must be positive")
        entry = CacheEntry(
            fingerprint=fingerprint,
            response=replace(response, cache_hit=False),
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )
        await self._backend.set(fingerprint, entry.to_dict(), ttl)
        log.debug("cache.response.stored", key=fingerprint, ttl=ttl)
        return entry

    async def invalidate(self, fingerprint: str) -> None:
        await self._backend.delete(fingerprint)

    async def flush(self) -> None:
        await self._backend.flush_all()

    async def stats(self) -> dict[str, Any]:
        """Return cache statistics from the underlying backend."""
        return await self._backend.info()
