"""Per-session conversation state record."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from agentrt.dsl.ast import FieldSpec
from agentrt.errors import StateWriteError

STATUS_ACTIVE = "active"
STATUS_TERMINATED = "terminated"


@dataclass(slots=True)
class ConversationState:
    """Versioned session record; callers work on copies and save them back."""

    session_id: str
    agent: str
    current_state: str | None = None
    version: int = 0
    fields: dict[str, Any] = field(default_factory=dict)
    retries: dict[str, int] = field(default_factory=dict)
    turn: int = 0
    status: str = STATUS_ACTIVE
    obligations: list[str] = field(default_factory=list)
    satisfied: list[str] = field(default_factory=list)

    def copy(self) -> ConversationState:
        return copy.deepcopy(self)

    def write(self, schema: Mapping[str, FieldSpec], name: str, value: Any) -> Any:
        """Typed write of a declared field; `null` clears it."""
        spec = schema.get(name)
        if spec is None:
            raise StateWriteError(f"field {name!r} is not declared", construct=f"set {name}")
        if value is None:
            self.fields[name] = None
            return None
        checked = spec.domain.check(value)
        if not checked.ok:
            raise StateWriteError(checked.reason, construct=f"set {name}")
        self.fields[name] = copy.deepcopy(checked.value)
        return checked.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "current_state": self.current_state,
            "version": self.version,
            "fields": copy.deepcopy(self.fields),
            "retries": dict(self.retries),
            "turn": self.turn,
            "status": self.status,
            "obligations": list(self.obligations),
            "satisfied": list(self.satisfied),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConversationState:
        return cls(
            session_id=str(payload["session_id"]),
            agent=str(payload.get("agent", "")),
            current_state=payload.get("current_state"),
            version=int(payload.get("version", 0)),
            fields=dict(payload.get("fields") or {}),
            retries={str(k): int(v) for k, v in (payload.get("retries") or {}).items()},
            turn=int(payload.get("turn", 0)),
            status=str(payload.get("status", STATUS_ACTIVE)),
            obligations=list(payload.get("obligations") or []),
            satisfied=list(payload.get("satisfied") or []),
        )
