"""Core request / response types shared by every orchestrator component.

AIRequest is created once per inbound call and is frozen: enrichment (for
example filling in the user's context) produces a new instance via
dataclasses.replace before classification begins, so no component can
mutate a request another component is looking at.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any


class Feature(StrEnum):
    """Product capability requesting AI assistance (closed set)."""

    CHAT = "chat"
    TASK_PARSING = "task_parsing"
    NOTE_GENERATION = "note_generation"
    NOTE_SUMMARY = "note_summary"
    NOTE_AUTOFILL = "note_autofill"
    MINDMAP_GENERATION = "mindmap_generation"
    STRATEGIC_BRIEFING = "strategic_briefing"
    VISION_OCR = "vision_ocr"
    VISION_EVENT_DETECTION = "vision_event_detection"
    CALENDAR_EVENT_PARSING = "calendar_event_parsing"
    EMAIL_EVENT_EXTRACTION = "email_event_extraction"
    GROUNDED_RESEARCH = "grounded_research"
    COMPLETION_SUMMARY = "completion_summary"
    IMAGE_GENERATION = "image_generation"

    @property
    def is_vision(self) -> bool:
        return self in (Feature.VISION_OCR, Feature.VISION_EVENT_DETECTION)


class SubscriptionTier(StrEnum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self != SubscriptionTier.FREE


class Complexity(StrEnum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PersonalityMode(StrEnum):
    SUPPORTIVE = "supportive"
    TOUGH_LOVE = "tough_love"
    ANALYTICAL = "analytical"
    MOTIVATIONAL = "motivational"


@dataclass(frozen=True)
class Attachment:
    """Binary attachment (image or document) tagged with its MIME type."""

    mime_type: str
    data: bytes
    filename: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def digest(self) -> str:
        h = hashlib.sha256(self.mime_type.encode())
        h.update(b"\x00")
        h.update(self.data)
        return h.hexdigest()


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    personality_mode: PersonalityMode | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class UserContext:
    """Structured context fed into prompts (goals, tasks, notes, profile)."""

    goals: tuple[dict[str, Any], ...] = ()
    recent_tasks: tuple[dict[str, Any], ...] = ()
    recent_notes: tuple[dict[str, Any], ...] = ()
    profile: UserProfile | None = None
    current_time: datetime | None = None
    location: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.goals or self.recent_tasks or self.recent_notes or self.profile)


@dataclass(frozen=True)
class AIRequest:
    """One discrete request for AI assistance.

    Attributes:
        user_id: Identity of the requester
        feature: Which product capability is asking
        message: Raw message text
        history: Prior conversation turns, most recent last
        context: Optional structured context
        priority: Caller's priority hint
        attachments: Optional images / files
    """

    user_id: str
    feature: Feature
    message: str
    history: tuple[ConversationTurn, ...] = ()
    context: UserContext | None = None
    priority: Priority = Priority.MEDIUM
    attachments: tuple[Attachment, ...] = ()

    def with_context(self, context: UserContext) -> AIRequest:
        return replace(self, context=context)


@dataclass(frozen=True)
class Citation:
    number: int
    url: str
    title: str = ""
    relevance: float = 0.9


@dataclass(frozen=True)
class AIResponse:
    """Canonical response produced by every backend adapter.

    cost_cents is filled in by the orchestrator from the ModelDescriptor
    that served the request; adapters leave it at zero.
    """

    content: str
    backend: str
    confidence: float
    input_units: int = 0
    output_units: int = 0
    cost_cents: Decimal = Decimal("0")
    latency_ms: int = 0
    cache_hit: bool = False
    fallback_used: bool = False
    citations: tuple[Citation, ...] = ()
    images: tuple[str, ...] = ()

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "backend": self.backend,
            "confidence": self.confidence,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "cost_cents": str(self.cost_cents),
            "latency_ms": self.latency_ms,
            "cache_hit": self.cache_hit,
            "fallback_used": self.fallback_used,
            "citations": [
                {"number": c.number, "url": c.url, "title": c.title, "relevance": c.relevance}
                for c in self.citations
            ],
            "images": list(self.images),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AIResponse:
        return cls(
            content=data["content"],
            backend=data["backend"],
            confidence=data["confidence"],
            input_units=data.get("input_units", 0),
            output_units=data.get("output_units", 0),
            cost_cents=Decimal(data.get("cost_cents", "0")),
            latency_ms=data.get("latency_ms", 0),
            cache_hit=data.get("cache_hit", False),
            fallback_used=data.get("fallback_used", False),
            citations=tuple(Citation(**c) for c in data.get("citations", [])),
            images=tuple(data.get("images", [])),
        )
