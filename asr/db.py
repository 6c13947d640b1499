from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "asr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              instance TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS intents (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              kind TEXT NOT NULL, -- scaling|lifecycle
              action TEXT NOT NULL, -- scale|create|terminate
              instance TEXT,
              target_replicas INTEGER,
              status TEXT NOT NULL, -- issued|succeeded|failed|degraded
              detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_intents_ts ON intents(ts);
            """
        )


def log_event(level: str, message: str, instance: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, instance, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), instance, message),
        )


def record_intent(
    kind: str,
    action: str,
    status: str,
    instance: str | None = None,
    target_replicas: int | None = None,
    detail: str = "",
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO intents (ts, kind, action, instance, target_replicas, status, detail)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (utc_now(), kind, action, instance, target_replicas, status, detail),
        )


def latest_events(limit: int = 100, instance: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if instance:
            rows = conn.execute(
                "SELECT * FROM events WHERE instance=? ORDER BY id DESC LIMIT ?", (instance, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def latest_intents(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM intents ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
