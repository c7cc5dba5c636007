"""Chat-completion adapters (OpenAI, Anthropic, xAI, Gemini, Perplexity).

All of them go through litellm.acompletion; litellm handles the provider
wire formats, so the adapters only build messages and normalise replies.
"""

from __future__ import annotations

import re
from typing import Any

import litellm
import structlog

from ai_orchestrator.adapters.base import BackendAdapter
from ai_orchestrator.adapters.prompts import build_messages
from ai_orchestrator.errors import TransientProviderError
from ai_orchestrator.model_router.catalog import Capability, ModelDescriptor
from ai_orchestrator.model_router.types import AIRequest, AIResponse, Citation, Feature

log = structlog.get_logger(__name__)

# Features whose output is parsed by the caller as JSON
JSON_FEATURES = frozenset(
    {
        Feature.TASK_PARSING,
        Feature.MINDMAP_GENERATION,
        Feature.VISION_EVENT_DETECTION,
        Feature.CALENDAR_EVENT_PARSING,
        Feature.EMAIL_EVENT_EXTRACTION,
    }
)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a litellm object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class ChatCompletionAdapter(BackendAdapter):
    """Generic chat completion with system prompt and recent history."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        api_key: str | None = None,
        history_window: int = 10,
        temperature: float = 0.7,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, api_key=api_key)
        self._history_window = history_window
        self._temperature = temperature

    async def _call(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        kwargs: dict[str, Any] = {}
        if request.feature in JSON_FEATURES and descriptor.supports(Capability.JSON):
            kwargs["response_format"] = {"type": "json_object"}

        response = await litellm.acompletion(
            model=descriptor.litellm_model,
            messages=self._messages(request, descriptor),
            max_tokens=descriptor.max_output_units,
            temperature=self._temperature,
            **kwargs,
            **self._key_kwargs(),
        )

        content = self._extract_text(response, descriptor)
        usage = _field(response, "usage")
        return AIResponse(
            content=content,
            backend=descriptor.name,
            confidence=descriptor.default_confidence,
            input_units=int(_field(usage, "prompt_tokens", 0) or 0),
            output_units=int(_field(usage, "completion_tokens", 0) or 0),
            citations=self._citations(response, content),
        )

    def _messages(self, request: AIRequest, descriptor: ModelDescriptor) -> list[dict[str, Any]]:
        return build_messages(
            request,
            history_window=self._history_window,
            vision=descriptor.supports(Capability.VISION),
        )

    def _citations(self, response: Any, content: str) -> tuple[Citation, ...]:
        return ()

    @staticmethod
    def _extract_text(response: Any, descriptor: ModelDescriptor) -> str:
        choices = _field(response, "choices") or []
        if not choices:
            # Some providers answer 200 with no choices under load
            raise TransientProviderError(
                f"{descriptor.name} returned no choices", backend=descriptor.name
            )
        message = _field(choices[0], "message")
        return _field(message, "content") or ""


class CitationAdapter(ChatCompletionAdapter):
    """Perplexity: chat completion whose reply carries numbered sources.

    Sources come from the response's citations list when the provider
    sends one, otherwise from "[n] https://..." markers in the content.
    """

    CITATION_PATTERN = re.compile(r"\[(\d+)\]\s*(https?://[^\s\])]+)")
    DEFAULT_RELEVANCE = 0.9

    SYSTEM_PROMPT = (
        "You are Kiko, a helpful AI assistant. Provide detailed answers with citations."
    )

    def _messages(self, request: AIRequest, descriptor: ModelDescriptor) -> list[dict[str, Any]]:
        return build_messages(
            request,
            history_window=self._history_window,
            system_prompt=self.SYSTEM_PROMPT,
        )

    def _citations(self, response: Any, content: str) -> tuple[Citation, ...]:
        urls = _field(response, "citations") or []
        if urls:
            return tuple(
                Citation(number=i, url=str(url), relevance=self.DEFAULT_RELEVANCE)
                for i, url in enumerate(urls, start=1)
            )

        seen: set[int] = set()
        citations = []
        for match in self.CITATION_PATTERN.finditer(content):
            number = int(match.group(1))
            if number in seen:
                continue
            seen.add(number)
            citations.append(
                Citation(number=number, url=match.group(2), relevance=self.DEFAULT_RELEVANCE)
            )
        if not citations:
            log.debug("adapter.citations_missing")
        return tuple(citations)
