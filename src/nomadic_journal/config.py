"""Configuration loading and defaults."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

import yaml

DEFAULT_SETTINGS: Dict[str, Any] = {
    "database": {
        "path": "data/nomadic_journal.db",
    },
    "paths": {
        "templates_path": "./config/templates.yaml",
    },
    "logging": {
        "level": "INFO",
    },
    "llm": {
        "enabled": True,
        "temperature": 0.4,
        "top_p": 1.0,
        "max_tokens": 600,
        "stop": [],
        "timeout_seconds": 30,
        "call_deadline_seconds": 90,
        "max_workers": 4,
    },
    "routing": {
        "default": [
            "openai:gpt-4.1-mini",
            "anthropic:claude-3-5-haiku-latest",
            "gemini:gemini-1.5-flash",
        ],
        "summarize_entries": [
            "openai:gpt-4.1-mini",
            "anthropic:claude-3-5-haiku-latest",
            "gemini:gemini-1.5-flash",
        ],
        "extract_metadata": [
            "openai:gpt-4.1-nano",
            "gemini:gemini-1.5-flash-8b",
        ],
    },
    "cache": {
        "backend": "memory",
        "ttl_seconds": 86400,
        "max_entries": 1024,
    },
    "resilience": {
        "max_attempts": 3,
        "base_delay_seconds": 0.5,
        "max_delay_seconds": 8.0,
        "backoff_multiplier": 2.0,
        "jitter_seconds": 0.25,
        "failure_threshold": 5,
        "failure_window_seconds": 60,
        "cooldown_seconds": 30,
    },
    "analysis": {
        "prompt_budget": 6000,
        "truncation_strategy": "most_recent",
        "max_entries": 200,
        "question_count": 5,
        "place_count": 5,
        "corrective_instruction": (
            "Your previous answer could not be parsed. Respond only with valid JSON "
            "matching the requested shape, with no prose and no code fences."
        ),
    },
    "pricing": {
        "openai:gpt-4.1-mini": {"input_per_1k": 0.0004, "output_per_1k": 0.0016},
        "openai:gpt-4.1-nano": {"input_per_1k": 0.0001, "output_per_1k": 0.0004},
        "anthropic:claude-3-5-haiku-latest": {"input_per_1k": 0.00025, "output_per_1k": 0.00125},
        "gemini:gemini-1.5-flash": {"input_per_1k": 0.00015, "output_per_1k": 0.0006},
        "gemini:gemini-1.5-flash-8b": {"input_per_1k": 0.00008, "output_per_1k": 0.0003},
    },
}

TRUNCATION_STRATEGIES = ("most_recent", "evenly_sampled")
CACHE_BACKENDS = ("memory", "sqlite", "none")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(settings_path: str = "config/settings.yaml") -> Dict[str, Any]:
    """Loads settings.yaml and merges it onto defaults."""
    merged = deepcopy(DEFAULT_SETTINGS)
    config_path = Path(settings_path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as f:
            user_cfg = yaml.safe_load(f) or {}
        merged = _deep_merge(merged, user_cfg)
    return merged


def parse_route(route: str) -> tuple[str, str]:
    """Parses 'provider:model' route strings."""
    if ":" not in route:
        raise ValueError(f"Invalid route format: {route}")
    provider, model = route.split(":", 1)
    return provider.strip(), model.strip()


@dataclass(frozen=True)
class LLMSettings:
    """Immutable view of the configuration consumed by the LLM layer."""

    enabled: bool = True
    temperature: float = 0.4
    top_p: float = 1.0
    max_tokens: int = 600
    stop: Tuple[str, ...] = ()
    timeout_seconds: float = 30.0
    call_deadline_seconds: float | None = 90.0
    max_workers: int = 4
    routes: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    cache_backend: str = "memory"
    cache_ttl_seconds: float = 86400.0
    cache_max_entries: int = 1024
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 0.25
    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    prompt_budget: int = 6000
    truncation_strategy: str = "most_recent"
    max_entries: int = 200
    question_count: int = 5
    place_count: int = 5
    corrective_instruction: str = DEFAULT_SETTINGS["analysis"]["corrective_instruction"]
    pricing: Mapping[str, Mapping[str, float]] = field(default_factory=lambda: MappingProxyType({}))
    database_path: str = "data/nomadic_journal.db"

    def routes_for(self, stage: str) -> Tuple[str, ...]:
        return self.routes.get(stage) or self.routes.get("default", ())


def build_settings(config: Dict[str, Any]) -> LLMSettings:
    """Validates a merged config dict and freezes it into LLMSettings."""
    llm = config.get("llm", {})
    cache = config.get("cache", {})
    res = config.get("resilience", {})
    analysis = config.get("analysis", {})

    routes: Dict[str, Tuple[str, ...]] = {}
    for stage, stage_routes in (config.get("routing") or {}).items():
        if not isinstance(stage_routes, list):
            raise ValueError(f"routing.{stage} must be a list of 'provider:model' strings")
        for route in stage_routes:
            parse_route(str(route))
        routes[str(stage)] = tuple(str(r) for r in stage_routes)

    strategy = str(analysis.get("truncation_strategy", "most_recent"))
    if strategy not in TRUNCATION_STRATEGIES:
        raise ValueError(f"Unknown truncation_strategy: {strategy}")
    backend = str(cache.get("backend", "memory"))
    if backend not in CACHE_BACKENDS:
        raise ValueError(f"Unknown cache backend: {backend}")

    deadline = llm.get("call_deadline_seconds")
    pricing = {
        str(key): MappingProxyType({k: float(v) for k, v in (value or {}).items()})
        for key, value in (config.get("pricing") or {}).items()
    }

    return LLMSettings(
        enabled=bool(llm.get("enabled", True)),
        temperature=float(llm.get("temperature", 0.4)),
        top_p=float(llm.get("top_p", 1.0)),
        max_tokens=int(llm.get("max_tokens", 600)),
        stop=tuple(str(s) for s in (llm.get("stop") or [])),
        timeout_seconds=float(llm.get("timeout_seconds", 30)),
        call_deadline_seconds=None if deadline is None else float(deadline),
        max_workers=max(1, int(llm.get("max_workers", 4))),
        routes=MappingProxyType(routes),
        cache_backend=backend,
        cache_ttl_seconds=float(cache.get("ttl_seconds", 86400)),
        cache_max_entries=max(1, int(cache.get("max_entries", 1024))),
        max_attempts=max(1, int(res.get("max_attempts", 3))),
        base_delay_seconds=float(res.get("base_delay_seconds", 0.5)),
        max_delay_seconds=float(res.get("max_delay_seconds", 8.0)),
        backoff_multiplier=float(res.get("backoff_multiplier", 2.0)),
        jitter_seconds=float(res.get("jitter_seconds", 0.25)),
        failure_threshold=int(res.get("failure_threshold", 5)),
        failure_window_seconds=float(res.get("failure_window_seconds", 60)),
        cooldown_seconds=float(res.get("cooldown_seconds", 30)),
        prompt_budget=int(analysis.get("prompt_budget", 6000)),
        truncation_strategy=strategy,
        max_entries=max(1, int(analysis.get("max_entries", 200))),
        question_count=max(1, int(analysis.get("question_count", 5))),
        place_count=max(1, int(analysis.get("place_count", 5))),
        corrective_instruction=str(
            analysis.get("corrective_instruction") or DEFAULT_SETTINGS["analysis"]["corrective_instruction"]
        ),
        pricing=MappingProxyType(pricing),
        database_path=str(config.get("database", {}).get("path", "data/nomadic_journal.db")),
    )
