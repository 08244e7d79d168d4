"""Persistence for versioned conversation state."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from typing import Protocol

from agentrt.db.connection import get_conn
from agentrt.db.migrations.runner import apply_migrations
from agentrt.errors import StaleStateError
from agentrt.ids import new_id
from agentrt.memory.conversation import ConversationState

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _stale(session_id: str, stored: int, offered: int) -> StaleStateError:
    return StaleStateError(
        f"stale save for session {session_id}: stored version {stored}, offered {offered}"
    )


class StateStore(Protocol):
    def load(self, session_id: str) -> ConversationState | None: ...

    def save(self, session_id: str, state: ConversationState) -> ConversationState: ...

    def reset(self, session_id: str) -> bool: ...

    def archive(self, session_id: str) -> bool: ...

    def archived(self, session_id: str) -> list[ConversationState]: ...


class InMemoryStateStore:
    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}
        self._archive: dict[str, list[ConversationState]] = {}

    def load(self, session_id: str) -> ConversationState | None:
        stored = self._states.get(session_id)
        return stored.copy() if stored is not None else None

    def save(self, session_id: str, state: ConversationState) -> ConversationState:
        """Persist `state` as version + 1; rejects a version that is not current."""
        stored = self._states.get(session_id)
        current = stored.version if stored is not None else 0
        if state.version != current:
            raise _stale(session_id, current, state.version)
        saved = state.copy()
        saved.session_id = session_id
        saved.version = current + 1
        self._states[session_id] = saved
        return saved.copy()

    def reset(self, session_id: str) -> bool:
        return self._states.pop(session_id, None) is not None

    def archive(self, session_id: str) -> bool:
        stored = self._states.pop(session_id, None)
        if stored is None:
            return False
        self._archive.setdefault(session_id, []).append(stored)
        return True

    def archived(self, session_id: str) -> list[ConversationState]:
        return [state.copy() for state in self._archive.get(session_id, [])]


class SqliteStateStore:
    def __init__(self, path: str | None = None) -> None:
        self.path = path
        with get_conn(self.path) as conn:
            apply_migrations(conn)

    @staticmethod
    def _current_version(conn: sqlite3.Connection, session_id: str) -> int:
        row = conn.execute(
            "SELECT version FROM conversation_state WHERE session_id=?", (session_id,)
        ).fetchone()
        return int(row["version"]) if row else 0

    def load(self, session_id: str) -> ConversationState | None:
        with get_conn(self.path) as conn:
            row = conn.execute(
                "SELECT state_json, version FROM conversation_state WHERE session_id=?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        state = ConversationState.from_dict(json.loads(row["state_json"]))
        state.version = int(row["version"])
        return state

    def save(self, session_id: str, state: ConversationState) -> ConversationState:
        saved = state.copy()
        saved.session_id = session_id
        with get_conn(self.path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = self._current_version(conn, session_id)
                if state.version != current:
                    raise _stale(session_id, current, state.version)
                saved.version = current + 1
                conn.execute(
                    """
                    INSERT INTO conversation_state(
                      session_id, agent, current_state, version, status, state_json, updated_at
                    ) VALUES(?,?,?,?,?,?,?)
                    ON CONFLICT(session_id) DO UPDATE SET
                      agent=excluded.agent,
                      current_state=excluded.current_state,
                      version=excluded.version,
                      status=excluded.status,
                      state_json=excluded.state_json,
                      updated_at=excluded.updated_at
                    """,
                    (
                        session_id,
                        saved.agent,
                        saved.current_state,
                        saved.version,
                        saved.status,
                        json.dumps(saved.to_dict(), sort_keys=True, default=str),
                        _now_iso(),
                    ),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return saved

    def reset(self, session_id: str) -> bool:
        with get_conn(self.path) as conn:
            cursor = conn.execute(
                "DELETE FROM conversation_state WHERE session_id=?", (session_id,)
            )
        return cursor.rowcount > 0

    def archive(self, session_id: str) -> bool:
        with get_conn(self.path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT agent, current_state, version, state_json "
                    "FROM conversation_state WHERE session_id=?",
                    (session_id,),
                ).fetchone()
                if row is None:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute(
                    "INSERT INTO conversation_archive("
                    "id, session_id, agent, final_state, version, state_json, archived_at"
                    ") VALUES(?,?,?,?,?,?,?)",
                    (
                        new_id("arc"),
                        session_id,
                        row["agent"],
                        row["current_state"],
                        row["version"],
                        row["state_json"],
                        _now_iso(),
                    ),
                )
                conn.execute("DELETE FROM conversation_state WHERE session_id=?", (session_id,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info("Archived session %s at version %s", session_id, row["version"])
        return True

    def archived(self, session_id: str) -> list[ConversationState]:
        with get_conn(self.path) as conn:
            rows = conn.execute(
                "SELECT state_json, version FROM conversation_archive "
                "WHERE session_id=? ORDER BY archived_at, rowid",
                (session_id,),
            ).fetchall()
        states = []
        for row in rows:
            state = ConversationState.from_dict(json.loads(row["state_json"]))
            state.version = int(row["version"])
            states.append(state)
        return states
