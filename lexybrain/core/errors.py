from __future__ import annotations

from typing import Any


class LexyBrainError(Exception):
    """Base error for LexyBrain."""


class ProviderConfigError(LexyBrainError):
    """Missing or invalid provider configuration."""


class RetrievalError(LexyBrainError):
    """Corpus retrieval failure."""


class OrchestrationError(LexyBrainError):
    """Terminal insight failure with a machine-readable kind."""

    kind = "internal"
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {"kind": self.kind}


class NoReliableData(OrchestrationError):
    """No keyword or corpus data to ground an answer."""

    kind = "no_data"
    code = "NO_RELIABLE_DATA"


class QuotaExceeded(OrchestrationError):
    """Monthly plan allowance exhausted for a quota key."""

    kind = "quota_exceeded"
    code = "QUOTA_EXCEEDED"

    def __init__(self, *, quota_key: str, used: int, limit: int) -> None:
        super().__init__(
            f"LexyBrain quota exceeded for {quota_key}: {used}/{limit}. "
            "Upgrade your plan for more AI insights."
        )
        self.quota_key = quota_key
        self.used = used
        self.limit = limit

    def details(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "quota_key": self.quota_key,
            "used": self.used,
            "limit": self.limit,
        }


class CostCapReached(OrchestrationError):
    """Global daily generation spend reached."""

    kind = "cost_cap_reached"
    code = "COST_CAP_REACHED"


class GenerationFailed(OrchestrationError):
    """Model output could not be produced or validated."""

    kind = "generation_failed"
    code = "GENERATION_FAILED"


class ModelUnavailable(GenerationFailed):
    """Model endpoint returned a non-success status or was unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None, body_excerpt: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body_excerpt = body_excerpt

    def details(self) -> dict[str, Any]:
        return {"kind": self.kind, "status_code": self.status_code}


class OutputValidationFailed(GenerationFailed):
    """Model returned JSON that does not match the output schema."""

    def __init__(self, message: str, *, errors: list[str] | None = None, raw_output: str = "") -> None:
        super().__init__(message)
        self.errors = errors or []
        self.raw_output = raw_output

    def details(self) -> dict[str, Any]:
        return {"kind": self.kind, "errors": self.errors[:10]}


class StoreUnavailable(OrchestrationError):
    """Backing store rejected a billing-adjacent write."""

    kind = "store_unavailable"
    code = "STORE_UNAVAILABLE"
