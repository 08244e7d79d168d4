"""Audit record definitions."""

from dataclasses import dataclass, field
from typing import Any

EVENT_DECISION = "decision"
EVENT_EXECUTION = "execution"
EVENT_EXECUTION_FAILED = "execution.failed"
EVENT_TRANSITION = "transition"
EVENT_VIOLATION = "constraint.violation"
EVENT_DIAGNOSTIC = "diagnostic"
EVENT_OUTPUT = "output"
EVENT_MODULE_LOADED = "module.loaded"


@dataclass(slots=True)
class AuditRecord:
    session_id: str
    turn: int
    event_type: str
    component: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn": self.turn,
            "event_type": self.event_type,
            "component": self.component,
            "payload": self.payload,
        }
