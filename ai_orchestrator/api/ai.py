"""AI request endpoints.

POST /api/v1/ai/requests          - Run one AI request through the orchestrator
GET  /api/v1/ai/usage/{user_id}   - Quota, budget and usage totals for a user
GET  /api/v1/ai/cache/stats       - Response cache statistics

Orchestrator errors are translated to HTTP by the exception handlers
registered in ai_orchestrator.main:
    ValidationError -> 422, QuotaExceededError -> 429,
    ServiceError -> 502, ServiceUnavailableError -> 503
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ai_orchestrator.errors import ValidationError
from ai_orchestrator.model_router.orchestrator import AIOrchestrator
from ai_orchestrator.model_router.types import (
    AIRequest,
    AIResponse,
    Attachment,
    ConversationTurn,
    Feature,
    PersonalityMode,
    Priority,
    UserContext,
    UserProfile,
)

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])


def get_orchestrator(request: Request) -> AIOrchestrator:
    """Resolve the orchestrator built at startup. Overridable in tests."""
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class TurnBody(BaseModel):
    role: str = Field(..., pattern="^(user|assistant|system)$")
    content: str


class AttachmentBody(BaseModel):
    mime_type: str = Field(..., examples=["image/png"])
    data_base64: str = Field(..., description="Base64-encoded attachment bytes")
    filename: str | None = None


class ProfileBody(BaseModel):
    personality_mode: PersonalityMode | None = None
    display_name: str | None = None


class ContextBody(BaseModel):
    goals: list[dict[str, Any]] = Field(default_factory=list)
    recent_tasks: list[dict[str, Any]] = Field(default_factory=list)
    recent_notes: list[dict[str, Any]] = Field(default_factory=list)
    profile: ProfileBody | None = None
    location: str | None = None


class AIRequestBody(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    feature: Feature
    message: str = Field(..., description="Raw message text")
    history: list[TurnBody] = Field(default_factory=list)
    context: ContextBody | None = Field(
        default=None,
        description="Structured context. Omit to have it loaded for the user.",
    )
    priority: Priority = Priority.MEDIUM
    attachments: list[AttachmentBody] = Field(default_factory=list)

    def to_request(self) -> AIRequest:
        return AIRequest(
            user_id=self.user_id,
            feature=self.feature,
            message=self.message,
            history=tuple(ConversationTurn(role=t.role, content=t.content) for t in self.history),
            context=self._context(),
            priority=self.priority,
            attachments=tuple(_decode_attachment(a) for a in self.attachments),
        )

    def _context(self) -> UserContext | None:
        if self.context is None:
            return None
        profile = None
        if self.context.profile is not None:
            profile = UserProfile(
                user_id=self.user_id,
                personality_mode=self.context.profile.personality_mode,
                display_name=self.context.profile.display_name,
            )
        return UserContext(
            goals=tuple(self.context.goals),
            recent_tasks=tuple(self.context.recent_tasks),
            recent_notes=tuple(self.context.recent_notes),
            profile=profile,
            location=self.context.location,
        )


class CitationBody(BaseModel):
    number: int
    url: str
    title: str
    relevance: float


class AIResponseBody(BaseModel):
    content: str
    backend: str
    confidence: float
    citations: list[CitationBody]
    images: list[str]
    input_units: int
    output_units: int
    total_units: int
    cost_cents: str
    latency_ms: int
    cache_hit: bool
    fallback_used: bool

    @classmethod
    def from_response(cls, response: AIResponse) -> AIResponseBody:
        return cls(
            content=response.content,
            backend=response.backend,
            confidence=response.confidence,
            citations=[
                CitationBody(number=c.number, url=c.url, title=c.title, relevance=c.relevance)
                for c in response.citations
            ],
            images=list(response.images),
            input_units=response.input_units,
            output_units=response.output_units,
            total_units=response.total_units,
            cost_cents=str(response.cost_cents),
            latency_ms=response.latency_ms,
            cache_hit=response.cache_hit,
            fallback_used=response.fallback_used,
        )


def _decode_attachment(body: AttachmentBody) -> Attachment:
    try:
        data = base64.b64decode(body.data_base64, validate=True)
    except (binascii.Error, ValueError):
        name = body.filename or body.mime_type
        raise ValidationError(f"attachment {name} is not valid base64") from None
    return Attachment(mime_type=body.mime_type, data=data, filename=body.filename)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/requests",
    response_model=AIResponseBody,
    summary="Run one AI request",
)
async def create_request(
    body: AIRequestBody,
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
) -> AIResponseBody:
    response = await orchestrator.process_request(body.to_request())
    return AIResponseBody.from_response(response)


@router.get("/usage/{user_id}", summary="Usage and quota for a user")
async def get_usage(
    user_id: str,
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    summary = await orchestrator.usage_summary(user_id)
    return summary.to_dict()


@router.get("/cache/stats", summary="Response cache statistics")
async def cache_stats(
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.cache.stats()
