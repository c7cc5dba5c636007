"""Backend adapters - one uniform execute() contract over every provider.

Public API:
    BackendAdapter           - Abstract base (timeout + error classification)
    ChatCompletionAdapter    - litellm chat completion (OpenAI/Anthropic/xAI/Gemini)
    CitationAdapter          - Perplexity, extracts numbered citations
    ImageGenerationAdapter   - litellm image generation
    AdapterRegistry          - provider name -> adapter
    build_adapter_registry   - Factory: registry wired from settings
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ai_orchestrator.adapters.base import (
    AdapterRegistry,
    BackendAdapter,
    classify_provider_error,
)
from ai_orchestrator.adapters.chat import ChatCompletionAdapter, CitationAdapter
from ai_orchestrator.adapters.image import ImageGenerationAdapter

if TYPE_CHECKING:
    from pydantic import SecretStr

    from ai_orchestrator.config import Settings


def _secret(value: SecretStr | None) -> str | None:
    if value is None:
        return None
    return value.get_secret_value() or None


def build_adapter_registry(settings: Settings) -> AdapterRegistry:
    """Wire one adapter per provider with its API key and timeout."""
    timeout = settings.adapter_timeout_seconds
    window = settings.history_window

    def chat(key: SecretStr | None) -> ChatCompletionAdapter:
        return ChatCompletionAdapter(
            timeout_seconds=timeout, api_key=_secret(key), history_window=window
        )

    return AdapterRegistry(
        {
            "openai": chat(settings.openai_api_key),
            "anthropic": chat(settings.anthropic_api_key),
            "xai": chat(settings.xai_api_key),
            "gemini": chat(settings.gemini_api_key),
            "perplexity": CitationAdapter(
                timeout_seconds=timeout,
                api_key=_secret(settings.perplexity_api_key),
                history_window=window,
            ),
            "openai_images": ImageGenerationAdapter(
                timeout_seconds=max(timeout, 60.0),
                api_key=_secret(settings.openai_api_key),
            ),
        },
        default=chat(None),
    )


__all__ = [
    "AdapterRegistry",
    "BackendAdapter",
    "ChatCompletionAdapter",
    "CitationAdapter",
    "ImageGenerationAdapter",
    "build_adapter_registry",
    "classify_provider_error",
]
