from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone

from auraquest import config

logger = logging.getLogger(__name__)

DB_PATH = config.DB_PATH


def get_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_json(raw: str | None, fallback=None):
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable cache value")
        return fallback


def init_db() -> None:
    conn = get_conn()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv_cache (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date TEXT NOT NULL,
                kind TEXT NOT NULL,
                text TEXT NOT NULL,
                meta_json TEXT
            );
            """
        )
        conn.commit()
    finally:
        conn.close()


def cache_get(key: str, fallback=None):
    conn = get_conn()
    try:
        row = conn.execute("SELECT value_json FROM kv_cache WHERE key = ?", (key,)).fetchone()
        return _parse_json(row["value_json"], fallback) if row else fallback
    finally:
        conn.close()


def cache_set(key: str, value) -> None:
    conn = get_conn()
    try:
        conn.execute(
            """
            INSERT INTO kv_cache (key, value_json, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), utc_now_iso()),
        )
        conn.commit()
    finally:
        conn.close()


def cache_remove(key: str) -> None:
    conn = get_conn()
    try:
        conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
        conn.commit()
    finally:
        conn.close()


def insert_event(event_date: str, kind: str, text: str, meta: dict | None = None) -> None:
    conn = get_conn()
    try:
        conn.execute(
            "INSERT INTO event_log (date, kind, text, meta_json) VALUES (?, ?, ?, ?)",
            (event_date, kind, text, json.dumps(meta or {})),
        )
        conn.commit()
    finally:
        conn.close()


def get_recent_events(limit: int = 12) -> list[dict]:
    conn = get_conn()
    try:
        rows = conn.execute("SELECT * FROM event_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) | {"meta": _parse_json(r["meta_json"], {})} for r in rows]
    finally:
        conn.close()


class LocalCache:
    """Synchronous string-keyed store backed by the SQLite kv_cache table."""

    def get(self, key: str, fallback=None):
        return cache_get(key, fallback)

    def set(self, key: str, value) -> None:
        cache_set(key, value)

    def remove(self, key: str) -> None:
        cache_remove(key)

    def log_event(self, event_date: str, kind: str, text: str, meta: dict | None = None) -> None:
        insert_event(event_date, kind, text, meta)
