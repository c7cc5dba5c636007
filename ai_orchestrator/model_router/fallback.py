"""Fallback controller - one retry on the always-available backend.

Attempt plan for a request routed to `primary`:

    attempt 1: primary
    attempt 2: catalog.fallback  (only after a TransientProviderError)

Outcomes:
- primary succeeds                       -> its response
- primary transient, fallback succeeds   -> fallback response tagged
                                            "<name> (fallback)", fallback_used=True
- primary permanent                      -> ServiceError (no retry)
- fallback fails for any reason          -> ServiceUnavailableError
- primary transient and the fallback lacks a required capability
  (image generation)                     -> ServiceUnavailableError

Retry control uses tenacity's AsyncRetrying, limited to two attempts and
to transient errors only. There is no backoff: the second attempt goes
to a different provider.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from ai_orchestrator.errors import (
    PermanentProviderError,
    ServiceError,
    ServiceUnavailableError,
    TransientProviderError,
)
from ai_orchestrator.model_router.catalog import ModelCatalog, ModelDescriptor
from ai_orchestrator.model_router.selector import required_capabilities
from ai_orchestrator.model_router.types import AIRequest, AIResponse

if TYPE_CHECKING:
    from ai_orchestrator.adapters.base import AdapterRegistry

log = structlog.get_logger(__name__)

FALLBACK_SUFFIX = " (fallback)"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of a successful dispatch.

    Attributes:
        response: Normalised response (backend tagged on fallback)
        descriptor: Descriptor that actually served the request (used for pricing)
        fallback_used: True when the fallback backend served it
        attempted: Backend names tried, in order
    """

    response: AIResponse
    descriptor: ModelDescriptor
    fallback_used: bool = False
    attempted: tuple[str, ...] = ()


class FallbackController:
    """Wraps adapter dispatch with a single fallback attempt."""

    def __init__(self, registry: AdapterRegistry, catalog: ModelCatalog) -> None:
        self._registry = registry
        self._catalog = catalog

    def plan(self, request: AIRequest, primary: ModelDescriptor) -> list[ModelDescriptor]:
        """Backends to try, in order."""
        fallback = self._catalog.fallback
        if fallback.supports(*required_capabilities(request.feature)):
            return [primary, fallback]
        return [primary]

    async def execute(self, request: AIRequest, primary: ModelDescriptor) -> DispatchOutcome:
        """Dispatch to primary, falling back once on a transient failure.

        Raises:
            ServiceError: The primary backend rejected the request permanently
            ServiceUnavailableError: No attempt succeeded
        """
        plan = self.plan(request, primary)
        attempted: list[str] = []
        response: AIResponse | None = None
        descriptor = primary

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(len(plan)),
                retry=retry_if_exception_type(TransientProviderError),
                reraise=True,
            ):
                with attempt:
                    descriptor = plan[attempt.retry_state.attempt_number - 1]
                    if attempted:
                        log.warning(
                            "fallback.engaged",
                            primary=primary.name,
                            fallback=descriptor.name,
                            feature=str(request.feature),
                        )
                    attempted.append(descriptor.name)
                    response = await self._registry.execute(request, descriptor)
        except TransientProviderError as exc:
            log.error("fallback.exhausted", attempted=attempted, error=str(exc))
            raise ServiceUnavailableError(
                "AI service is temporarily unavailable, please try again",
                attempted=attempted,
            ) from exc
        except PermanentProviderError as exc:
            if len(attempted) > 1:
                log.error("fallback.failed_permanently", attempted=attempted, error=str(exc))
                raise ServiceUnavailableError(
                    "AI service is temporarily unavailable, please try again",
                    attempted=attempted,
                ) from exc
            raise ServiceError(exc.message, backend=exc.backend) from exc

        if response is None:
            raise ServiceUnavailableError(
                "AI service is temporarily unavailable, please try again",
                attempted=attempted,
            )
        fallback_used = len(attempted) > 1
        if fallback_used:
            response = replace(
                response,
                backend=f"{descriptor.name}{FALLBACK_SUFFIX}",
                fallback_used=True,
            )
        return DispatchOutcome(
            response=response,
            descriptor=descriptor,
            fallback_used=fallback_used,
            attempted=tuple(attempted),
        )
