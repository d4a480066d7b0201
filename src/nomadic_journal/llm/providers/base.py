"""Completion provider interface and shared HTTP error mapping."""

from __future__ import annotations

from typing import Any, Dict, Protocol

import requests

from ..deadline import Deadline
from ..types import (
    CompletionRequest,
    CompletionResult,
    InvalidRequest,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    Unauthorized,
    UnknownProviderError,
)


class CompletionProvider(Protocol):
    name: str

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        ...


def error_for_status(status_code: int, message: str, provider: str) -> ProviderError:
    if status_code in (401, 403):
        return Unauthorized(message, provider=provider)
    if status_code == 429:
        return RateLimited(message, provider=provider)
    if status_code in (408, 504):
        return ProviderTimeout(message, provider=provider)
    if status_code in (400, 404, 413, 422):
        return InvalidRequest(message, provider=provider)
    if 500 <= status_code < 600:
        return ProviderUnavailable(message, provider=provider)
    return UnknownProviderError(message, provider=provider)


def effective_timeout(request: CompletionRequest, deadline: Deadline, provider: str) -> float:
    deadline.check(provider)
    remaining = deadline.remaining()
    if remaining is None:
        return float(request.timeout_seconds)
    return max(0.001, min(float(request.timeout_seconds), remaining))


def post_json(
    provider: str,
    url: str,
    payload: Dict[str, Any],
    timeout: float,
    headers: Dict[str, str] | None = None,
) -> Dict[str, Any]:
    """POSTs JSON and maps every failure onto the provider error taxonomy."""
    try:
        res = requests.post(url, headers=headers, json=payload, timeout=timeout)
    except requests.Timeout as exc:
        raise ProviderTimeout(str(exc), provider=provider) from exc
    except requests.ConnectionError as exc:
        raise ProviderUnavailable(str(exc), provider=provider) from exc
    except requests.RequestException as exc:
        raise UnknownProviderError(str(exc), provider=provider) from exc

    if res.status_code >= 400:
        raise error_for_status(res.status_code, f"HTTP {res.status_code}: {res.text[:200]}", provider)

    try:
        data = res.json()
    except ValueError as exc:
        raise UnknownProviderError(f"non-JSON response: {exc}", provider=provider) from exc
    if not isinstance(data, dict):
        raise UnknownProviderError("unexpected response shape", provider=provider)
    return data


def apply_stop_sequences(text: str, stop: tuple[str, ...]) -> str:
    """Cuts ``text`` at the first stop sequence for APIs that ignore them."""
    cut = len(text)
    for seq in stop:
        if not seq:
            continue
        idx = text.find(seq)
        if idx != -1:
            cut = min(cut, idx)
    return text[:cut]
