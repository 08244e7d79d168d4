"""Reasoner contracts."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class DecisionRequest:
    decision_id: str
    domain: dict[str, Any]
    context: Mapping[str, Any]
    constraint: Any = None
    fallback_policy: dict[str, Any] = field(default_factory=dict)
    threshold: float = 0.0


@dataclass(slots=True)
class DecisionResponse:
    value: Any
    confidence: float = 1.0


class Reasoner(Protocol):
    async def decide(self, request: DecisionRequest) -> DecisionResponse: ...

    async def health_check(self) -> bool: ...
