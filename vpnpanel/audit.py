"""Audit events emitted for every completed lifecycle transition."""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol

from .models import parse_datetime, serialize_datetime

USER_CREATE_COMPLETE = "USER_CREATE_COMPLETE"
USER_CREATE_FAILED = "USER_CREATE_FAILED"
USER_UPDATE_COMPLETE = "USER_UPDATE_COMPLETE"
USER_REACTIVATE_COMPLETE = "USER_REACTIVATE_COMPLETE"
USER_DISABLE_COMPLETE = "USER_DISABLE_COMPLETE"
USER_ENABLE_COMPLETE = "USER_ENABLE_COMPLETE"
USER_EXPIRE_COMPLETE = "USER_EXPIRE_COMPLETE"
USER_EXPIRE_FAILED = "USER_EXPIRE_FAILED"
USER_DELETE_COMPLETE = "USER_DELETE_COMPLETE"

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


@dataclass(frozen=True)
class AuditEvent:
    timestamp: datetime
    event_code: str
    username: str
    description: str
    status: str = STATUS_SUCCESS

    def to_dict(self) -> dict:
        return {
            "timestamp": serialize_datetime(self.timestamp),
            "event_code": self.event_code,
            "username": self.username,
            "description": self.description,
            "status": self.status,
        }


class AuditSink(Protocol):
    def write(self, event: AuditEvent) -> None:
        ...


class SqliteAuditSink:
    """Append-only audit trail stored in SQLite."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    event_code TEXT NOT NULL,
                    username TEXT,
                    description TEXT,
                    status TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_events(timestamp);
                CREATE INDEX IF NOT EXISTS idx_audit_username ON audit_events(username);
                CREATE INDEX IF NOT EXISTS idx_audit_event_code ON audit_events(event_code);
                """
            )

    def write(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_events (timestamp, event_code, username, description, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    serialize_datetime(event.timestamp),
                    event.event_code,
                    event.username,
                    event.description,
                    event.status,
                ),
            )

    def recent(self, limit: int = 20, *, username: Optional[str] = None) -> List[AuditEvent]:
        query = "SELECT * FROM audit_events"
        params: list = []
        if username:
            query += " WHERE username = ?"
            params.append(username)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AuditEvent(
                timestamp=parse_datetime(str(row["timestamp"])),
                event_code=str(row["event_code"]),
                username=str(row["username"] or ""),
                description=str(row["description"] or ""),
                status=str(row["status"]),
            )
            for row in rows
        ]


__all__ = [
    "AuditEvent",
    "AuditSink",
    "SqliteAuditSink",
    "USER_CREATE_COMPLETE",
    "USER_CREATE_FAILED",
    "USER_UPDATE_COMPLETE",
    "USER_REACTIVATE_COMPLETE",
    "USER_DISABLE_COMPLETE",
    "USER_ENABLE_COMPLETE",
    "USER_EXPIRE_COMPLETE",
    "USER_EXPIRE_FAILED",
    "USER_DELETE_COMPLETE",
    "STATUS_SUCCESS",
    "STATUS_FAILURE",
]
