from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings

logger = logging.getLogger("msr.events")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file path does not exist yet) the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "msr.db")

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
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS upgrades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              service_name TEXT NOT NULL,
              action TEXT NOT NULL,
              outcome TEXT NOT NULL, -- success|failed|rejected
              error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_upgrades_service ON upgrades(service_name);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    if service_name:
        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s", service_name, message)
    else:
        logger.log(_LEVELS.get(level, logging.INFO), "%s", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, service_name, message),
        )


def record_upgrade(service_name: str, action: str, outcome: str, error: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO upgrades (ts, service_name, action, outcome, error) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), service_name, action, outcome, error),
        )


def _recent(table: str, limit: int, service_name: str | None) -> list[dict[str, Any]]:
    # table is one of our own names, never user input
    sql = f"SELECT * FROM {table}"
    params: tuple[Any, ...] = ()
    if service_name:
        sql += " WHERE service_name=?"
        params = (service_name,)
    with connect() as conn:
        rows = conn.execute(sql + " ORDER BY id DESC LIMIT ?", params + (int(limit),)).fetchall()
    return [dict(r) for r in rows]


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    return _recent("events", limit, service_name)


def upgrade_history(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    return _recent("upgrades", limit, service_name)
