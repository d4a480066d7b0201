"""Anthropic Messages API provider."""

from __future__ import annotations

import os
import time
from typing import Any, Dict

from ..deadline import Deadline
from ..types import CompletionRequest, CompletionResult, Unauthorized
from .base import effective_timeout, post_json

API_URL = "https://api.anthropic.com/v1/messages"


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        if not self._api_key:
            raise Unauthorized("ANTHROPIC_API_KEY missing", provider=self.name)

        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": request.model,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system:
            payload["system"] = request.system
        if request.stop:
            payload["stop_sequences"] = list(request.stop)

        start = time.perf_counter()
        data = post_json(
            self.name,
            API_URL,
            payload,
            timeout=effective_timeout(request, deadline, self.name),
            headers=headers,
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        content = data.get("content", [])
        text = ""
        if content and isinstance(content, list):
            text = "".join(
                item.get("text", "")
                for item in content
                if isinstance(item, dict) and item.get("type") == "text"
            )

        usage = data.get("usage", {})
        return CompletionResult(
            text=text.strip(),
            provider=self.name,
            model=request.model,
            tokens_in=int(usage.get("input_tokens", 0) or 0),
            tokens_out=int(usage.get("output_tokens", 0) or 0),
            latency_ms=latency_ms,
            raw={"id": data.get("id")},
        )
