from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.audit import (
    STATUS_FAILURE,
    USER_CREATE_COMPLETE,
    USER_CREATE_FAILED,
    USER_DELETE_COMPLETE,
    AuditEvent,
    SqliteAuditSink,
)

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def sink(tmp_path: Path) -> SqliteAuditSink:
    audit = SqliteAuditSink(tmp_path / "audit" / "audit.sqlite3")
    audit.initialize()
    return audit


def test_events_are_returned_newest_first(sink: SqliteAuditSink) -> None:
    sink.write(AuditEvent(NOW, USER_CREATE_COMPLETE, "alice", "User alice created"))
    sink.write(AuditEvent(NOW + timedelta(minutes=1), USER_CREATE_FAILED, "bob", "proxy failed", STATUS_FAILURE))
    sink.write(AuditEvent(NOW + timedelta(minutes=2), USER_DELETE_COMPLETE, "alice", "User alice deleted"))

    events = sink.recent()
    assert [event.event_code for event in events] == [
        USER_DELETE_COMPLETE,
        USER_CREATE_FAILED,
        USER_CREATE_COMPLETE,
    ]
    assert events[1].status == STATUS_FAILURE
    assert events[2].timestamp == NOW


def test_recent_filters_by_username_and_limit(sink: SqliteAuditSink) -> None:
    for index in range(5):
        sink.write(AuditEvent(NOW + timedelta(seconds=index), USER_CREATE_COMPLETE, "alice", f"event {index}"))
    sink.write(AuditEvent(NOW, USER_CREATE_COMPLETE, "bob", "bob event"))

    alice_events = sink.recent(3, username="alice")
    assert [event.description for event in alice_events] == ["event 4", "event 3", "event 2"]
    assert [event.username for event in sink.recent(10, username="bob")] == ["bob"]


def test_initialize_is_idempotent(sink: SqliteAuditSink) -> None:
    sink.write(AuditEvent(NOW, USER_CREATE_COMPLETE, "alice", "User alice created"))
    sink.initialize()
    assert len(sink.recent()) == 1


def test_event_serialises_to_contract_shape() -> None:
    event = AuditEvent(NOW, USER_CREATE_COMPLETE, "alice", "User alice created")
    assert event.to_dict() == {
        "timestamp": NOW.isoformat(),
        "event_code": USER_CREATE_COMPLETE,
        "username": "alice",
        "description": "User alice created",
        "status": "success",
    }
