from __future__ import annotations

import json
import logging
import os
import sqlite3
from typing import Any

from .config import OrchestratorConfig
from .models import utc_now

logger = logging.getLogger(__name__)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

CONFIG_KEY = "orchestration_config"


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    Why this exists:
    - On many systems, if a bind-mounted *file* path does not exist,
      Docker creates a *directory* at that location. If we then try to
      open SQLite on that path, sqlite fails with "unable to open database file".
    - To make the project resilient, if the configured path is a directory,
      we place the DB file inside it.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "fleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class Store:
    """Sqlite-backed event log, key-value config table and span table."""

    def __init__(self, path: str):
        self.path = _resolve_db_path(path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  service_name TEXT,
                  version TEXT,
                  message TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kv (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS spans (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  operation TEXT NOT NULL,
                  duration_ms REAL NOT NULL,
                  metadata TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_spans_operation ON spans(operation);
                """
            )

    def log_event(self, level: str, message: str, service_name: str | None = None, version: str | None = None) -> None:
        level = level.upper()
        logger.log(
            _LEVELS.get(level, logging.INFO),
            "%s%s",
            f"[{service_name}{'@' + version if version else ''}] " if service_name else "",
            message,
        )
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, version, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, service_name, version, message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def get_value(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
            return row["value"] if row else None

    def set_value(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, utc_now()),
            )

    def insert_span(self, operation: str, duration_ms: float, metadata: dict[str, Any]) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO spans (ts, operation, duration_ms, metadata) VALUES (?, ?, ?, ?)",
                (utc_now(), operation, float(duration_ms), json.dumps(metadata, default=str)),
            )

    def latest_spans(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM spans ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["metadata"] = json.loads(d["metadata"])
            out.append(d)
        return out


class ConfigStore:
    """Load/save the orchestration config as one JSON document."""

    def __init__(self, store: Store, key: str = CONFIG_KEY):
        self.store = store
        self.key = key

    def load(self) -> OrchestratorConfig:
        raw = self.store.get_value(self.key)
        if not raw:
            return OrchestratorConfig()
        # Stored values are merged over defaults so new fields pick up their defaults.
        return OrchestratorConfig().merged(json.loads(raw))

    def save(self, config: OrchestratorConfig) -> None:
        self.store.set_value(self.key, config.model_dump_json())


class SqliteSpanSink:
    def __init__(self, store: Store):
        self.store = store

    def record_span(self, operation: str, duration_ms: float, metadata: dict[str, Any]) -> None:
        self.store.insert_span(operation, duration_ms, metadata)
