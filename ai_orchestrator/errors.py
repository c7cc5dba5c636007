"""Error taxonomy for the AI request orchestrator.

Only TransientProviderError is ever recovered from (by the fallback
controller). Every other error is terminal for the call and carries enough
structure for the caller to render a specific message:

- ValidationError         - malformed request, rejected before quota check
- QuotaExceededError      - daily allowance used up; drives an upgrade prompt
- TransientProviderError  - network / timeout / provider 5xx (internal)
- PermanentProviderError  - malformed request / policy / provider 4xx (internal)
- ServiceError            - permanent provider failure surfaced to the caller
- ServiceUnavailableError - primary and fallback both failed
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class OrchestratorError(Exception):
    """Base class for all errors raised by process_request()."""

    kind = "orchestrator_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(OrchestratorError, ValueError):
    """Raised when an AIRequest is malformed. Never billed."""

    kind = "validation_error"


class QuotaExceededError(OrchestratorError):
    """Raised when a user's daily request allowance is used up."""

    kind = "quota_exceeded"

    def __init__(
        self,
        message: str,
        *,
        tier: str,
        limit: int,
        remaining: int,
        reset_at: datetime,
    ) -> None:
        super().__init__(message)
        self.tier = tier
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "tier": self.tier,
                "limit": self.limit,
                "remaining": self.remaining,
                "reset_at": self.reset_at.isoformat(),
            }
        )
        return data


class ProviderError(OrchestratorError):
    """Base for failures reported by a backend adapter."""

    kind = "provider_error"

    def __init__(self, message: str, *, backend: str) -> None:
        super().__init__(message)
        self.backend = backend


class TransientProviderError(ProviderError):
    """Network, timeout or provider 5xx. Triggers fallback."""

    kind = "transient_provider_error"


class PermanentProviderError(ProviderError):
    """Malformed request, content policy or provider 4xx. Not retried."""

    kind = "permanent_provider_error"


class ServiceError(OrchestratorError):
    """A backend rejected the request permanently."""

    kind = "service_error"

    def __init__(self, message: str, *, backend: str) -> None:
        super().__init__(message)
        self.backend = backend

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["backend"] = self.backend
        return data


class ServiceUnavailableError(OrchestratorError):
    """Both the selected backend and the fallback backend failed."""

    kind = "service_unavailable"

    def __init__(self, message: str, *, attempted: list[str]) -> None:
        super().__init__(message)
        self.attempted = attempted

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["attempted"] = list(self.attempted)
        return data
