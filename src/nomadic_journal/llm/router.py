"""Stage-based provider routing over cached, resilient provider chains."""

from __future__ import annotations

import logging
import random
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from ..config import LLMSettings, parse_route
from ..models import apply_migrations, get_connection, get_cost_summary, log_llm_call
from .cache import CacheError, CacheStore, CachingProvider, InMemoryCacheStore, SQLiteCacheStore
from .deadline import Deadline
from .providers.anthropic_provider import AnthropicProvider
from .providers.base import CompletionProvider
from .providers.gemini_provider import GeminiProvider
from .providers.ollama_provider import OllamaProvider
from .providers.openai_provider import OpenAIProvider
from .resilience import CircuitBreaker, Outcome, ResilientProvider, RetryPolicy, run_with_fallback
from .types import CompletionRequest, CompletionResult, ProviderError, ProviderTimeout, ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_cache_store(settings: LLMSettings) -> CacheStore | None:
    if settings.cache_backend == "none":
        return None
    if settings.cache_backend == "sqlite":
        try:
            return SQLiteCacheStore(settings.database_path)
        except CacheError as exc:
            logger.warning("SQLite cache unavailable, using in-memory cache: %s", exc)
    return InMemoryCacheStore(maxsize=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)


def retry_policy(settings: LLMSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.max_attempts,
        base_delay_seconds=settings.base_delay_seconds,
        max_delay_seconds=settings.max_delay_seconds,
        backoff_multiplier=settings.backoff_multiplier,
        jitter_seconds=settings.jitter_seconds,
    )


class LLMRouter:
    def __init__(
        self,
        settings: LLMSettings,
        providers: Mapping[str, CompletionProvider] | None = None,
        cache_store: CacheStore | None = None,
        breaker: CircuitBreaker | None = None,
        usage_db_path: str | None = None,
        threaded: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.providers = dict(providers if providers is not None else self._default_providers())
        self.cache_store = cache_store
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.failure_threshold,
            window_seconds=settings.failure_window_seconds,
            cooldown_seconds=settings.cooldown_seconds,
        )
        self.policy = retry_policy(settings)
        self.usage_db_path = usage_db_path
        if usage_db_path:
            apply_migrations(usage_db_path)
        self.executor = (
            ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="llm-call")
            if threaded
            else None
        )
        self.chains: Dict[str, ResilientProvider] = {}
        for name, provider in self.providers.items():
            inner: CompletionProvider = provider
            if cache_store is not None:
                inner = CachingProvider(provider, cache_store, ttl_seconds=settings.cache_ttl_seconds)
            self.chains[name] = ResilientProvider(inner, self.policy, self.breaker, self.executor, rng=rng)

    @classmethod
    def from_settings(cls, settings: LLMSettings, **kwargs: Any) -> "LLMRouter":
        kwargs.setdefault("cache_store", build_cache_store(settings))
        kwargs.setdefault("usage_db_path", settings.database_path)
        return cls(settings, **kwargs)

    def _default_providers(self) -> Dict[str, CompletionProvider]:
        available: Dict[str, CompletionProvider] = {}
        for provider_cls in (OpenAIProvider, AnthropicProvider, GeminiProvider, OllamaProvider):
            try:
                provider = provider_cls()
            except Exception as exc:
                logger.warning("Provider %s unavailable: %s", provider_cls.name, exc)
                continue
            available[provider.name] = provider
        return available

    def _estimate_cost(self, provider: str, model: str, tokens_in: int, tokens_out: int) -> float:
        pricing = self.settings.pricing.get(f"{provider}:{model}")
        if not pricing:
            return 0.0
        in_price = float(pricing.get("input_per_1k", 0.0))
        out_price = float(pricing.get("output_per_1k", 0.0))
        return ((tokens_in / 1000.0) * in_price) + ((tokens_out / 1000.0) * out_price)

    def _record_usage(self, stage: str, result: CompletionResult, meta: Dict[str, Any] | None) -> None:
        if not self.usage_db_path or result.cached:
            return
        try:
            conn = get_connection(self.usage_db_path)
            try:
                log_llm_call(
                    conn,
                    stage=stage,
                    provider=result.provider,
                    model=result.model,
                    tokens_in=result.tokens_in,
                    tokens_out=result.tokens_out,
                    cost_usd=self._estimate_cost(result.provider, result.model, result.tokens_in, result.tokens_out),
                    latency_ms=result.latency_ms,
                    meta=meta,
                )
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Could not record LLM usage for %s: %s", stage, exc)

    def complete(
        self,
        stage: str,
        request: CompletionRequest,
        deadline: Deadline,
        meta: Dict[str, Any] | None = None,
    ) -> CompletionResult:
        """Tries each route for ``stage`` in order; raises the last error if all fail."""
        routes = self.settings.routes_for(stage)
        if not routes:
            raise ProviderUnavailable(f"No routes configured for stage '{stage}'")

        errors: list[str] = []
        last_error: ProviderError | None = None
        for route in routes:
            provider_name, model = parse_route(route)
            chain = self.chains.get(provider_name)
            if chain is None:
                errors.append(f"{route}: provider not available")
                continue
            try:
                result = chain.complete(replace(request, model=model), deadline)
            except ProviderError as exc:
                errors.append(f"{route}: {exc.kind}: {exc}")
                last_error = exc
                if isinstance(exc, ProviderTimeout) and deadline.expired():
                    break
                continue
            self._record_usage(stage, result, meta)
            return result

        logger.warning("All provider routes failed for %s: %s", stage, " | ".join(errors))
        if last_error is not None:
            raise last_error
        raise ProviderUnavailable("All provider routes failed: " + " | ".join(errors))

    def generate(
        self,
        stage: str,
        request: CompletionRequest,
        deadline: Deadline,
        fallback: Optional[Callable[[Optional[ProviderError]], T]] = None,
        meta: Dict[str, Any] | None = None,
    ) -> Outcome[T]:
        return run_with_fallback(lambda: self.complete(stage, request, deadline, meta), fallback)

    def provider_status(self) -> Dict[str, Dict[str, Any]]:
        health = self.breaker.snapshot()
        status: Dict[str, Dict[str, Any]] = {}
        for name in sorted(self.providers):
            status[name] = health.get(name) or {
                "provider": name,
                "state": "closed",
                "consecutive_failures": 0,
                "total_failures": 0,
                "total_successes": 0,
                "last_error": None,
            }
        return status

    def cost_summary(self) -> list[Dict[str, Any]]:
        if not self.usage_db_path:
            return []
        conn = get_connection(self.usage_db_path)
        try:
            return get_cost_summary(conn)
        finally:
            conn.close()

    def sweep_cache(self) -> int:
        if self.cache_store is None:
            return 0
        try:
            return self.cache_store.sweep(time.time())
        except CacheError as exc:
            logger.warning("Cache sweep failed: %s", exc)
            return 0

    def close(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)
