"""SQLite schema, migrations, and data access helpers."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List

from .utils import json_dumps, utc_now_iso

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS llm_calls (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            stage TEXT NOT NULL,
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            tokens_in INTEGER NOT NULL DEFAULT 0,
            tokens_out INTEGER NOT NULL DEFAULT 0,
            cost_usd REAL NOT NULL DEFAULT 0,
            latency_ms INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            meta_json TEXT NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_llm_calls_stage_created ON llm_calls(stage, created_at);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS completion_cache (
            cache_key TEXT PRIMARY KEY,
            text TEXT NOT NULL,
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            tokens_in INTEGER NOT NULL DEFAULT 0,
            tokens_out INTEGER NOT NULL DEFAULT 0,
            latency_ms INTEGER NOT NULL DEFAULT 0,
            raw_json TEXT NOT NULL DEFAULT '{}',
            created_at REAL NOT NULL,
            ttl_seconds REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_completion_cache_expiry ON completion_cache(created_at);
        """,
    ),
]


def get_connection(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    return conn


def apply_migrations(db_path: str) -> None:
    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            applied = {
                row["version"]
                for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
            }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            conn.executescript(sql)
            with conn:
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                    (version, utc_now_iso()),
                )
    finally:
        conn.close()


def log_llm_call(
    conn: sqlite3.Connection,
    stage: str,
    provider: str,
    model: str,
    tokens_in: int,
    tokens_out: int,
    cost_usd: float,
    latency_ms: int,
    meta: Dict[str, Any] | None = None,
) -> int:
    with conn:
        cur = conn.execute(
            """
            INSERT INTO llm_calls(stage, provider, model, tokens_in, tokens_out, cost_usd, latency_ms, created_at, meta_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stage,
                provider,
                model,
                tokens_in,
                tokens_out,
                cost_usd,
                latency_ms,
                utc_now_iso(),
                json_dumps(meta),
            ),
        )
    return int(cur.lastrowid)


def get_cost_summary(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT provider, model, COUNT(*) AS calls,
               SUM(tokens_in) AS tokens_in, SUM(tokens_out) AS tokens_out,
               ROUND(SUM(cost_usd), 6) AS cost_usd
        FROM llm_calls
        GROUP BY provider, model
        ORDER BY cost_usd DESC, provider, model
        """
    ).fetchall()
    return [dict(row) for row in rows]


def get_cache_row(conn: sqlite3.Connection, cache_key: str) -> Dict[str, Any] | None:
    row = conn.execute("SELECT * FROM completion_cache WHERE cache_key = ?", (cache_key,)).fetchone()
    return dict(row) if row is not None else None


def upsert_cache_row(conn: sqlite3.Connection, row: Dict[str, Any]) -> None:
    with conn:
        conn.execute(
            """
            INSERT INTO completion_cache(cache_key, text, provider, model, tokens_in, tokens_out,
                                         latency_ms, raw_json, created_at, ttl_seconds)
            VALUES (:cache_key, :text, :provider, :model, :tokens_in, :tokens_out,
                    :latency_ms, :raw_json, :created_at, :ttl_seconds)
            ON CONFLICT(cache_key) DO UPDATE SET
                text = excluded.text,
                provider = excluded.provider,
                model = excluded.model,
                tokens_in = excluded.tokens_in,
                tokens_out = excluded.tokens_out,
                latency_ms = excluded.latency_ms,
                raw_json = excluded.raw_json,
                created_at = excluded.created_at,
                ttl_seconds = excluded.ttl_seconds
            """,
            row,
        )


def delete_cache_row(conn: sqlite3.Connection, cache_key: str) -> None:
    with conn:
        conn.execute("DELETE FROM completion_cache WHERE cache_key = ?", (cache_key,))


def delete_expired_cache_rows(conn: sqlite3.Connection, now: float) -> int:
    with conn:
        cur = conn.execute("DELETE FROM completion_cache WHERE created_at + ttl_seconds <= ?", (now,))
    return int(cur.rowcount)
