"""OpenAI Responses API provider."""

from __future__ import annotations

import os
import time

import openai
from openai import OpenAI

from ..deadline import Deadline
from ..types import (
    CompletionRequest,
    CompletionResult,
    ProviderTimeout,
    ProviderUnavailable,
    Unauthorized,
    UnknownProviderError,
)
from .base import apply_stop_sequences, effective_timeout, error_for_status


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str | None = None) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = OpenAI(api_key=api_key, max_retries=0) if api_key else None

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        if self._client is None:
            raise Unauthorized("OPENAI_API_KEY missing", provider=self.name)

        timeout = effective_timeout(request, deadline, self.name)
        messages = [{"role": "user", "content": request.prompt}]
        if request.system:
            messages.insert(0, {"role": "system", "content": request.system})

        start = time.perf_counter()
        try:
            response = self._client.responses.create(
                model=request.model,
                temperature=request.temperature,
                top_p=request.top_p,
                max_output_tokens=request.max_tokens,
                input=messages,
                timeout=timeout,
            )
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(str(exc), provider=self.name) from exc
        except openai.APIConnectionError as exc:
            raise ProviderUnavailable(str(exc), provider=self.name) from exc
        except openai.APIStatusError as exc:
            raise error_for_status(exc.status_code, str(exc), self.name) from exc
        except openai.OpenAIError as exc:
            raise UnknownProviderError(str(exc), provider=self.name) from exc

        latency_ms = int((time.perf_counter() - start) * 1000)
        text = getattr(response, "output_text", "") or ""
        usage = getattr(response, "usage", None)

        return CompletionResult(
            text=apply_stop_sequences(text, request.stop).strip(),
            provider=self.name,
            model=request.model,
            tokens_in=int(getattr(usage, "input_tokens", 0) or 0),
            tokens_out=int(getattr(usage, "output_tokens", 0) or 0),
            latency_ms=latency_ms,
            raw={"id": getattr(response, "id", None)},
        )
