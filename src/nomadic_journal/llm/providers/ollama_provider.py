"""Local inference through an Ollama server."""

from __future__ import annotations

import os
import time

from ..deadline import Deadline
from ..types import CompletionRequest, CompletionResult
from .base import effective_timeout, post_json

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider:
    name = "ollama"

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        options = {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "num_predict": request.max_tokens,
        }
        if request.stop:
            options["stop"] = list(request.stop)
        payload = {
            "model": request.model,
            "prompt": request.prompt,
            "system": request.system,
            "stream": False,
            "options": options,
        }

        start = time.perf_counter()
        data = post_json(
            self.name,
            f"{self._base_url}/api/generate",
            payload,
            timeout=effective_timeout(request, deadline, self.name),
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        return CompletionResult(
            text=str(data.get("response", "")).strip(),
            provider=self.name,
            model=request.model,
            tokens_in=int(data.get("prompt_eval_count", 0) or 0),
            tokens_out=int(data.get("eval_count", 0) or 0),
            latency_ms=latency_ms,
            raw={"created_at": data.get("created_at")},
        )
