"""Fingerprint cache around a completion provider, with request collapsing."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Callable, Dict, Protocol

from cachetools import TTLCache

from ..models import (
    apply_migrations,
    delete_cache_row,
    delete_expired_cache_rows,
    get_cache_row,
    get_connection,
    upsert_cache_row,
)
from ..utils import hash_text, json_dumps, json_loads
from .deadline import Deadline
from .providers.base import CompletionProvider
from .types import CompletionRequest, CompletionResult, ProviderError

logger = logging.getLogger(__name__)


class CacheError(RuntimeError):
    """Cache storage failed; callers treat it as a miss."""


def fingerprint(request: CompletionRequest, provider: str = "") -> str:
    payload = {
        "provider": provider,
        "template": request.template_id,
        "model": request.model,
        "system": request.system,
        "prompt": request.prompt,
        "params": request.generation_params(),
    }
    return hash_text(json_dumps(payload))


@dataclass(frozen=True)
class CacheEntry:
    key: str
    result: CompletionResult
    created_at: float
    ttl_seconds: float

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStore(Protocol):
    def get(self, key: str) -> CacheEntry | None:
        ...

    def put(self, entry: CacheEntry) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def sweep(self, now: float) -> int:
        ...


class InMemoryCacheStore:
    """Process-local store guarded by a single lock.

    Backed by a ``TTLCache``: at most ``maxsize`` entries are kept and entries
    older than ``ttl_seconds`` are dropped on the next write even if their key
    is never read again.
    """

    def __init__(
        self,
        maxsize: int = 1024,
        ttl_seconds: float = 86400.0,
        timer: Callable[[], float] = time.time,
    ) -> None:
        self._entries: TTLCache = TTLCache(maxsize=max(1, int(maxsize)), ttl=float(ttl_seconds), timer=timer)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: float) -> int:
        removed = 0
        with self._lock:
            for key in list(self._entries.keys()):
                entry = self._entries.get(key)
                if entry is None or entry.is_expired(now):
                    self._entries.pop(key, None)
                    removed += 1
            self._entries.expire()
        return removed


class SQLiteCacheStore:
    """Durable store; one short-lived connection per operation."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        try:
            apply_migrations(db_path)
        except sqlite3.Error as exc:
            raise CacheError(f"cannot initialise cache at {db_path}: {exc}") from exc

    def _run(self, fn, *args):
        try:
            conn = get_connection(self.db_path)
            try:
                return fn(conn, *args)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise CacheError(str(exc)) from exc

    def get(self, key: str) -> CacheEntry | None:
        row = self._run(get_cache_row, key)
        if row is None:
            return None
        result = CompletionResult(
            text=row["text"],
            provider=row["provider"],
            model=row["model"],
            tokens_in=int(row["tokens_in"]),
            tokens_out=int(row["tokens_out"]),
            latency_ms=int(row["latency_ms"]),
            raw=json_loads(row["raw_json"]),
        )
        return CacheEntry(
            key=key,
            result=result,
            created_at=float(row["created_at"]),
            ttl_seconds=float(row["ttl_seconds"]),
        )

    def put(self, entry: CacheEntry) -> None:
        result = entry.result
        self._run(
            upsert_cache_row,
            {
                "cache_key": entry.key,
                "text": result.text,
                "provider": result.provider,
                "model": result.model,
                "tokens_in": result.tokens_in,
                "tokens_out": result.tokens_out,
                "latency_ms": result.latency_ms,
                "raw_json": json_dumps(result.raw),
                "created_at": entry.created_at,
                "ttl_seconds": entry.ttl_seconds,
            },
        )

    def delete(self, key: str) -> None:
        self._run(delete_cache_row, key)

    def sweep(self, now: float) -> int:
        return self._run(delete_expired_cache_rows, now)


class CachingProvider:
    """Serves repeated requests from ``store``; never caches failures.

    Concurrent misses on the same fingerprint collapse into one upstream call:
    the first caller runs it and every other caller waits on its future.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        store: CacheStore,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.name = provider.name
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def _lookup(self, key: str) -> CompletionResult | None:
        try:
            entry = self.store.get(key)
        except CacheError as exc:
            logger.warning("Cache read failed for %s, treating as miss: %s", self.name, exc)
            return None
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            try:
                self.store.delete(key)
            except CacheError as exc:
                logger.warning("Cache eviction failed for %s: %s", self.name, exc)
            return None
        logger.debug("Cache hit %s for %s", key[:12], self.name)
        return replace(entry.result, cached=True)

    def _commit(self, key: str, result: CompletionResult) -> None:
        entry = CacheEntry(
            key=key,
            result=replace(result, cached=False),
            created_at=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        try:
            self.store.put(entry)
        except CacheError as exc:
            logger.warning("Cache write failed for %s: %s", self.name, exc)

    def lookup(self, request: CompletionRequest) -> CompletionResult | None:
        """Unexpired cached result for ``request``, without calling the provider."""
        return self._lookup(fingerprint(request, self.name))

    def complete(self, request: CompletionRequest, deadline: Deadline) -> CompletionResult:
        key = fingerprint(request, self.name)
        cached = self._lookup(key)
        if cached is not None:
            return cached

        with self._lock:
            pending = self._inflight.get(key)
            if pending is None:
                pending = Future()
                self._inflight[key] = pending
                leader = True
            else:
                leader = False

        if not leader:
            logger.debug("Joining in-flight call %s for %s", key[:12], self.name)
            try:
                result = deadline.wait_future(pending, provider=self.name)
            except ProviderError as exc:
                # Counted once, by the leader's caller.
                if pending.done() and pending.exception() is exc:
                    raise exc.shared_copy() from exc
                raise
            return replace(result, cached=True)

        try:
            # Another leader may have committed between the lookup and the lock.
            cached = self._lookup(key)
            if cached is not None:
                pending.set_result(cached)
                return cached
            result = self.provider.complete(request, deadline)
            self._commit(key, result)
            pending.set_result(result)
            return result
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)
