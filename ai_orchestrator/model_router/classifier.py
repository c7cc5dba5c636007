"""Request classification - complexity tag and cache fingerprint.

The classifier turns an AIRequest into:
- a coarse complexity tag (simple / medium / complex) used by the selector
- a deterministic cache fingerprint

Heuristics:
- SIMPLE: short message (< 100 chars) opening with a greeting,
  acknowledgement or short-lookup phrase
- COMPLEX: estimated token count >= 2000, or a deep conversation
  (> 5 prior turns) combined with reasoning keywords
- MEDIUM: everything else, including empty or ambiguous input

Classification is pure and never raises: on anything unexpected it fails
open to MEDIUM rather than rejecting the request.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import asdict, dataclass, field

import structlog

from ai_orchestrator.model_router.types import AIRequest, Complexity, Feature

log = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    """Lowercase, strip and collapse runs of whitespace."""
    return _WHITESPACE.sub(" ", message.strip().lower())


def make_fingerprint(
    feature: Feature | str,
    message: str,
    *,
    attachment_digests: tuple[str, ...] = (),
    partition: str = "",
) -> str:
    """Build the cache fingerprint for a (feature, message) pair.

    SHA-256 over the feature tag, the normalised message, the digests of any
    attachments, and an optional partition (the orchestrator passes the
    subscription tier, since routing and therefore content depend on it).
    Fields are NUL-separated so no two distinct inputs share a preimage.

    Returns:
        String of the form "ai:<hex_digest>"
    """
    parts = [str(feature), normalize_message(message), *attachment_digests, partition]
    digest = hashlib.sha256("\x00".join(parts).encode()).hexdigest()
    return f"ai:{digest}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class Classification:
    """Result of classifying one request.

    Attributes:
        complexity: Coarse complexity tag
        fingerprint: Cache key for this request
        estimated_tokens: Estimated prompt size (message + history + context)
        signals: Which heuristics fired, for observability
    """

    complexity: Complexity
    fingerprint: str
    estimated_tokens: int
    signals: dict[str, bool] = field(default_factory=dict)


class RequestClassifier:
    """Heuristic classifier over message shape, history depth and keywords."""

    SIMPLE_MAX_CHARS = 100
    COMPLEX_TOKEN_THRESHOLD = 2000
    DEEP_HISTORY_THRESHOLD = 5

    SIMPLE_PATTERNS = (
        re.compile(r"^(hi|hello|hey|good morning|good afternoon)\b", re.IGNORECASE),
        re.compile(r"^(what is|who is|when is|where is)\b", re.IGNORECASE),
        re.compile(r"^(yes|no|ok|okay|sure|thanks)\b", re.IGNORECASE),
    )

    REASONING_PATTERN = re.compile(
        r"\b(analy[sz]e|compare|explain why|how would|strategy|plan)\b",
        re.IGNORECASE,
    )

    def classify(self, request: AIRequest, *, partition: str = "") -> Classification:
        """Classify a request and compute its cache fingerprint.

        Args:
            request: The request to classify
            partition: Extra fingerprint component (e.g. subscription tier)

        Returns:
            Classification with complexity tag, fingerprint and signals
        """
        fingerprint = make_fingerprint(
            request.feature,
            request.message,
            attachment_digests=tuple(a.digest for a in request.attachments),
            partition=partition,
        )

        try:
            complexity, tokens, signals = self._analyze(request)
        except (TypeError, ValueError) as exc:
            # Unserialisable context or similar: fail open
            log.warning("classifier.fail_open", error=str(exc))
            complexity, tokens, signals = Complexity.MEDIUM, 0, {}

        log.debug(
            "classifier.classified",
            feature=str(request.feature),
            complexity=complexity.value,
            estimated_tokens=tokens,
            signals=signals,
        )

        return Classification(
            complexity=complexity,
            fingerprint=fingerprint,
            estimated_tokens=tokens,
            signals=signals,
        )

    def is_simple_message(self, message: str) -> bool:
        text = message.strip()
        return len(text) < self.SIMPLE_MAX_CHARS and any(
            pattern.search(text) for pattern in self.SIMPLE_PATTERNS
        )

    def _analyze(self, request: AIRequest) -> tuple[Complexity, int, dict[str, bool]]:
        message = request.message or ""
        tokens = estimate_tokens(message + self._serialise_context(request))

        deep_history = len(request.history) > self.DEEP_HISTORY_THRESHOLD
        reasoning = bool(self.REASONING_PATTERN.search(message))
        long_input = tokens >= self.COMPLEX_TOKEN_THRESHOLD
        simple = self.is_simple_message(message)

        signals = {
            "simple_pattern": simple,
            "long_input": long_input,
            "deep_history": deep_history,
            "reasoning_keywords": reasoning,
        }

        if not message.strip():
            return Complexity.MEDIUM, tokens, signals
        if long_input or (deep_history and reasoning):
            return Complexity.COMPLEX, tokens, signals
        if simple:
            return Complexity.SIMPLE, tokens, signals
        return Complexity.MEDIUM, tokens, signals

    @staticmethod
    def _serialise_context(request: AIRequest) -> str:
        chunks = [turn.content for turn in request.history]
        if request.context is not None:
            chunks.append(json.dumps(asdict(request.context), default=str))
        return "".join(chunks)
