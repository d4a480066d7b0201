"""Google Gemini REST provider."""

from __future__ import annotations

import os
import time
from typing import Any, Dict

from ..deadline import Deadline
from ..types import CompletionRequest, CompletionResult, Unauthorized
from .base import effective_timeout, post_json


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        if not self._api_key:
            raise Unauthorized("GEMINI_API_KEY/GOOGLE_API_KEY missing", provider=self.name)

        url = (
            f"https://generativelanguage.googleapis.com/v1beta/models/{request.model}:generateContent"
            f"?key={self._api_key}"
        )
        generation_config: Dict[str, Any] = {
            "temperature": request.temperature,
            "topP": request.top_p,
            "maxOutputTokens": request.max_tokens,
        }
        if request.stop:
            generation_config["stopSequences"] = list(request.stop)
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": request.prompt}]}],
            "generationConfig": generation_config,
        }
        if request.system:
            payload["system_instruction"] = {"parts": [{"text": request.system}]}

        start = time.perf_counter()
        data = post_json(
            self.name,
            url,
            payload,
            timeout=effective_timeout(request, deadline, self.name),
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        candidates = data.get("candidates", [])
        text = ""
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))

        usage = data.get("usageMetadata", {})
        return CompletionResult(
            text=text.strip(),
            provider=self.name,
            model=request.model,
            tokens_in=int(usage.get("promptTokenCount", 0) or 0),
            tokens_out=int(usage.get("candidatesTokenCount", 0) or 0),
            latency_ms=latency_ms,
            raw={"responseId": data.get("responseId")},
        )
