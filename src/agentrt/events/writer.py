"""Audit emission helpers."""

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any, Protocol, cast

from agentrt.db.connection import get_conn
from agentrt.db.migrations.runner import apply_migrations
from agentrt.events.models import AuditRecord
from agentrt.ids import new_id

SENSITIVE_KEYS = {
    "access_token",
    "refresh_token",
    "password",
    "api_key",
    "authorization",
    "card_number",
    "ssn",
}


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if str(key).lower() in SENSITIVE_KEYS else _redact_value(nested)
            for key, nested in value.items()
        }
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    return value


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return cast(dict[str, Any], _redact_value(payload))


def emit_event(conn: sqlite3.Connection, record: AuditRecord) -> str:
    event_id = new_id("evt")
    conn.execute(
        """
        INSERT INTO events(
          id, session_id, turn, event_type, component,
          payload_redacted_json, created_at
        ) VALUES(?,?,?,?,?,?,?)
        """,
        (
            event_id,
            record.session_id,
            record.turn,
            record.event_type,
            record.component,
            json.dumps(redact_payload(record.payload), default=str, sort_keys=True),
            now_iso(),
        ),
    )
    return event_id


class AuditSink(Protocol):
    def write(self, records: list[AuditRecord]) -> None: ...


class MemoryAuditSink:
    """Keeps redacted records in process; the default sink."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    def write(self, records: list[AuditRecord]) -> None:
        for record in records:
            self.records.append(
                AuditRecord(
                    session_id=record.session_id,
                    turn=record.turn,
                    event_type=record.event_type,
                    component=record.component,
                    payload=redact_payload(record.payload),
                )
            )

    def for_session(self, session_id: str) -> list[AuditRecord]:
        return [record for record in self.records if record.session_id == session_id]


class SqliteAuditSink:
    def __init__(self, path: str | None = None) -> None:
        self.path = path
        with get_conn(self.path) as conn:
            apply_migrations(conn)

    def write(self, records: list[AuditRecord]) -> None:
        if not records:
            return
        with get_conn(self.path) as conn:
            conn.execute("BEGIN")
            try:
                for record in records:
                    emit_event(conn, record)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

    def for_session(self, session_id: str) -> list[dict[str, Any]]:
        with get_conn(self.path) as conn:
            rows = conn.execute(
                "SELECT turn, event_type, component, payload_redacted_json "
                "FROM events WHERE session_id=? ORDER BY created_at, rowid",
                (session_id,),
            ).fetchall()
        return [
            {
                "turn": row["turn"],
                "event_type": row["event_type"],
                "component": row["component"],
                "payload": json.loads(row["payload_redacted_json"]),
            }
            for row in rows
        ]
