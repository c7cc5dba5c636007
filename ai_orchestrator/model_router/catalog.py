"""Model catalog - static table of backend descriptors.

Each ModelDescriptor declares what a backend can do (capabilities), what it
costs (USD per million input / output units), and whether it is the
always-available zero-cost backend used for fallback. The catalog is built
once at startup and shared read-only by every request.

Default catalog (names are the identifiers reported in AIResponse.backend):
- gpt-4o-mini      - cheap and fast; chat, vision, structured JSON
- claude-3.5-haiku - higher quality reasoning and generation
- grok-4-fast      - funded by a monthly promotional credit pool
- perplexity-sonar - citation-grounded research
- gemini-1.5-flash - zero cost, always available (fallback)
- dall-e-3         - the only image-capable backend
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from ai_orchestrator.config import Settings

log = structlog.get_logger(__name__)

# Costs are tracked in cents with micro-cent precision so that a single short
# request on the cheapest paid backend still accrues a nonzero cost.
COST_QUANTUM = Decimal("0.000001")
_MILLION = Decimal(1_000_000)
_CENTS_PER_USD = Decimal(100)


class Capability(StrEnum):
    CHAT = "chat"
    VISION = "vision"
    JSON = "json"
    CITATIONS = "citations"
    IMAGE_GENERATION = "image_generation"
    LARGE_CONTEXT = "large_context"


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one selectable backend.

    Attributes:
        name: Identifier reported in responses and usage records
        provider: Provider key used to pick the backend adapter
        litellm_model: LiteLLM model identifier (e.g. "openai/gpt-4o-mini")
        capabilities: What the backend can do
        input_cost_per_million: USD per million input units
        output_cost_per_million: USD per million output units
        always_available: True for the zero-cost fallback backend
        promotional_credit_cents: Monthly credit pool funding this backend (0 = none)
        default_confidence: Confidence reported for responses from this backend
        max_output_units: Output cap sent with every call
    """

    name: str
    provider: str
    litellm_model: str
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    input_cost_per_million: Decimal = Decimal("0")
    output_cost_per_million: Decimal = Decimal("0")
    always_available: bool = False
    promotional_credit_cents: int = 0
    default_confidence: float = 0.85
    max_output_units: int = 1024

    def __post_init__(self) -> None:
        """Validate descriptor after initialization."""
        if self.input_cost_per_million < 0 or self.output_cost_per_million < 0:
            raise ValueError("costs cannot be negative")
        if self.always_available and not self.is_zero_cost:
            raise ValueError(f"always-available backend {self.name} must be zero-cost")
        if not 0.0 <= self.default_confidence <= 1.0:
            raise ValueError("default_confidence must be 0.0-1.0")
        if self.max_output_units < 1:
            raise ValueError("max_output_units must be positive")

    @property
    def is_zero_cost(self) -> bool:
        return self.input_cost_per_million == 0 and self.output_cost_per_million == 0

    @property
    def has_credit_pool(self) -> bool:
        return self.promotional_credit_cents > 0

    def supports(self, *required: Capability) -> bool:
        return all(cap in self.capabilities for cap in required)

    def cost_cents(self, input_units: int, output_units: int) -> Decimal:
        """Compute the cost of one call in cents.

        Pure and deterministic: the same descriptor and unit counts always
        produce the same Decimal, quantised to COST_QUANTUM.
        """
        if input_units < 0 or output_units < 0:
            raise ValueError("unit counts cannot be negative")
        usd = (
            Decimal(input_units) * self.input_cost_per_million
            + Decimal(output_units) * self.output_cost_per_million
        ) / _MILLION
        return (usd * _CENTS_PER_USD).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class ModelCatalog:
    """Read-only lookup over the configured ModelDescriptors."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]) -> None:
        self._by_name: dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._by_name:
                raise ValueError(f"duplicate backend name: {descriptor.name}")
            self._by_name[descriptor.name] = descriptor

        fallbacks = [d for d in self._by_name.values() if d.always_available]
        if len(fallbacks) != 1:
            raise ValueError(
                f"catalog needs exactly one always-available backend, found {len(fallbacks)}"
            )
        self._fallback = fallbacks[0]

        log.info(
            "model_catalog.initialized",
            backends=sorted(self._by_name),
            fallback=self._fallback.name,
        )

    def __iter__(self):
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> ModelDescriptor:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"unknown backend: {name}") from None

    @property
    def fallback(self) -> ModelDescriptor:
        """The always-available zero-cost backend."""
        return self._fallback

    def credit_pools(self) -> dict[str, int]:
        """Backends funded by a promotional pool, mapped to pool size in cents."""
        return {
            d.name: d.promotional_credit_cents for d in self._by_name.values() if d.has_credit_pool
        }

    def cheapest(self, *required: Capability) -> ModelDescriptor | None:
        """Cheapest backend supporting all required capabilities.

        Ties are broken by name so the choice is stable.
        """
        candidates = [d for d in self._by_name.values() if d.supports(*required)]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda d: (d.input_cost_per_million + d.output_cost_per_million, d.name),
        )


# Names of the roles the selector routes to
CHEAP = "gpt-4o-mini"
QUALITY = "claude-3.5-haiku"
CREDIT = "grok-4-fast"
CITATIONS = "perplexity-sonar"
FREE = "gemini-1.5-flash"
IMAGE = "dall-e-3"


def default_catalog(settings: Settings) -> ModelCatalog:
    """Build the production catalog from settings."""
    return ModelCatalog(
        [
            ModelDescriptor(
                name=CHEAP,
                provider="openai",
                litellm_model=settings.model_cheap,
                capabilities=frozenset({Capability.CHAT, Capability.VISION, Capability.JSON}),
                input_cost_per_million=Decimal("0.15"),
                output_cost_per_million=Decimal("0.60"),
                default_confidence=0.85,
                max_output_units=1000,
            ),
            ModelDescriptor(
                name=QUALITY,
                provider="anthropic",
                litellm_model=settings.model_quality,
                capabilities=frozenset({Capability.CHAT, Capability.VISION}),
                input_cost_per_million=Decimal("0.80"),
                output_cost_per_million=Decimal("4.00"),
                default_confidence=0.92,
                max_output_units=1024,
            ),
            ModelDescriptor(
                name=CREDIT,
                provider="xai",
                litellm_model=settings.model_credit,
                capabilities=frozenset({Capability.CHAT, Capability.VISION}),
                input_cost_per_million=Decimal("5.00"),
                output_cost_per_million=Decimal("15.00"),
                promotional_credit_cents=settings.credit_pool_cents,
                default_confidence=0.90,
                max_output_units=2048,
            ),
            ModelDescriptor(
                name=CITATIONS,
                provider="perplexity",
                litellm_model=settings.model_citations,
                capabilities=frozenset({Capability.CHAT, Capability.CITATIONS}),
                input_cost_per_million=Decimal("5.00"),
                output_cost_per_million=Decimal("5.00"),
                default_confidence=0.95,
                max_output_units=1024,
            ),
            ModelDescriptor(
                name=FREE,
                provider="gemini",
                litellm_model=settings.model_free,
                capabilities=frozenset(
                    {Capability.CHAT, Capability.VISION, Capability.LARGE_CONTEXT}
                ),
                always_available=True,
                default_confidence=0.80,
                max_output_units=1024,
            ),
            ModelDescriptor(
                name=IMAGE,
                provider="openai_images",
                litellm_model=settings.model_image,
                capabilities=frozenset({Capability.IMAGE_GENERATION}),
                # $0.04 per image, billed as one output unit per image
                output_cost_per_million=Decimal("40000"),
                default_confidence=0.90,
                max_output_units=1,
            ),
        ]
    )
