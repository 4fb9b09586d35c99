from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime
from typing import Any

from .settings import settings

logger = logging.getLogger("nsc")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the journal is stored
    inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "nsc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the event journal if it does not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              field TEXT,
              value TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_service ON events(service_name);
            """
        )


def log_event(
    level: str,
    message: str,
    service_name: str | None = None,
    field: str | None = None,
    value: Any = None,
) -> None:
    """Journal one operational event and mirror it to the ``nsc`` logger.

    ``field``/``value`` carry the rejected option and its offending value for
    validation events.
    """
    level = level.upper()
    value = None if value is None else str(value)

    parts = [f"Service: {service_name}"] if service_name else []
    parts.append(message)
    if field:
        parts.append(f"{field}={value!r}")
    logger.log(_LEVELS.get(level, logging.INFO), ", ".join(parts))

    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, field, value, message) VALUES (?, ?, ?, ?, ?, ?)",
                (utc_now(), level, service_name, field, value, message),
            )
    except sqlite3.Error as e:
        # Journal failures never propagate into reconciliation.
        logger.warning("event journal unavailable: %s", e)


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
