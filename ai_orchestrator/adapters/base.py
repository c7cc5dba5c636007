"""Backend adapter contract and provider error classification.

Every adapter exposes one operation:

    await adapter.execute(request, descriptor) -> AIResponse

and fails with exactly one of two errors:
- TransientProviderError: network, timeout, rate limit, provider 5xx
- PermanentProviderError: malformed request, content policy, auth, 4xx

Each call is bounded by asyncio.wait_for; a timeout is transient. The
adapter measures latency itself so every response carries it.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import replace

import litellm
import structlog

from ai_orchestrator.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from ai_orchestrator.model_router.catalog import ModelDescriptor
from ai_orchestrator.model_router.types import AIRequest, AIResponse

log = structlog.get_logger(__name__)

# Network / capacity failures worth a fallback attempt
_TRANSIENT = (
    litellm.exceptions.Timeout,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.InternalServerError,
    asyncio.TimeoutError,
    ConnectionError,
)

# Requests the provider will never accept as sent
_PERMANENT = (
    litellm.exceptions.ContentPolicyViolationError,
    litellm.exceptions.BadRequestError,
    litellm.exceptions.AuthenticationError,
    litellm.exceptions.NotFoundError,
    litellm.exceptions.PermissionDeniedError,
)


def classify_provider_error(exc: BaseException, backend: str) -> ProviderError:
    """Map any exception raised by a provider call to transient or permanent."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, _PERMANENT):
        return PermanentProviderError(f"{backend} rejected the request: {exc}", backend=backend)
    if isinstance(exc, _TRANSIENT):
        return TransientProviderError(f"{backend} unavailable: {exc}", backend=backend)
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return TransientProviderError(f"{backend} returned {status}: {exc}", backend=backend)
    return PermanentProviderError(f"{backend} call failed: {exc}", backend=backend)


class BackendAdapter(ABC):
    """Uniform call contract to one external model provider.

    Subclasses implement _call(); execute() adds the timeout, latency
    measurement and error classification.

    Args:
        timeout_seconds: Upper bound on one provider round trip
        api_key: Provider API key (None lets litellm read its env vars)
    """

    def __init__(self, *, timeout_seconds: float = 30.0, api_key: str | None = None) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout = timeout_seconds
        self._api_key = api_key

    async def execute(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        log.debug(
            "adapter.call_started",
            adapter=type(self).__name__,
            backend=descriptor.name,
            model=descriptor.litellm_model,
        )
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._call(request, descriptor), timeout=self._timeout
            )
        except Exception as exc:
            error = classify_provider_error(exc, descriptor.name)
            log.warning(
                "adapter.call_failed",
                backend=descriptor.name,
                error_kind=error.kind,
                error=str(exc),
            )
            raise error from exc

        latency_ms = int((time.perf_counter() - started) * 1000)
        log.info(
            "adapter.call_done",
            backend=descriptor.name,
            input_units=response.input_units,
            output_units=response.output_units,
            latency_ms=latency_ms,
        )
        return replace(response, latency_ms=latency_ms)

    @abstractmethod
    async def _call(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        """Perform the provider call and normalise its reply."""

    def _key_kwargs(self) -> dict[str, str]:
        return {"api_key": self._api_key} if self._api_key else {}


class AdapterRegistry:
    """Maps a descriptor's provider name to the adapter that speaks to it."""

    def __init__(
        self,
        adapters: Mapping[str, BackendAdapter],
        default: BackendAdapter | None = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._default = default

    def for_descriptor(self, descriptor: ModelDescriptor) -> BackendAdapter:
        adapter = self._adapters.get(descriptor.provider, self._default)
        if adapter is None:
            raise PermanentProviderError(
                f"no adapter registered for provider {descriptor.provider}",
                backend=descriptor.name,
            )
        return adapter

    async def execute(self, request: AIRequest, descriptor: ModelDescriptor) -> AIResponse:
        return await self.for_descriptor(descriptor).execute(request, descriptor)

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters
