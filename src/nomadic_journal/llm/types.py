"""Shared LLM data structures and the provider error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    system: str = ""
    template_id: str = ""
    model: str = ""
    max_tokens: int = 600
    temperature: float = 0.4
    top_p: float = 1.0
    stop: Tuple[str, ...] = ()
    timeout_seconds: float = 30.0

    def generation_params(self) -> Dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stop": list(self.stop),
        }


@dataclass
class CompletionResult:
    text: str
    provider: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    cached: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderError(RuntimeError):
    """Provider failed to return a valid generation."""

    kind = "unknown"
    retryable = False
    counts_as_failure = True
    # Set on copies handed to callers that joined another caller's in-flight call.
    shared = False

    def __init__(self, message: str = "", provider: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.provider = provider

    def shared_copy(self) -> "ProviderError":
        copy = type(self)(str(self), provider=self.provider)
        copy.shared = True
        return copy


class Unauthorized(ProviderError):
    kind = "unauthorized"


class RateLimited(ProviderError):
    kind = "rate_limited"
    retryable = True


class ProviderTimeout(ProviderError):
    kind = "timeout"
    retryable = True


class InvalidRequest(ProviderError):
    kind = "invalid_request"
    counts_as_failure = False


class ProviderUnavailable(ProviderError):
    kind = "unavailable"
    retryable = True


class UnknownProviderError(ProviderError):
    kind = "unknown"
