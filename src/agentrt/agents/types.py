"""Compiled agent definition."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from agentrt.dsl.ast import (
    BehaviorBlock,
    Constraint,
    EventHandler,
    FieldSpec,
    StateDefinition,
    Template,
    TestScenario,
)


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """Immutable, validated agent; shared read-only by every session."""

    name: str
    version: int
    role: str
    objective: str
    resources: Mapping[str, str]
    modules: Mapping[str, str]
    schema: Mapping[str, FieldSpec]
    states: Mapping[str, StateDefinition]
    initial_state: str
    hooks: Mapping[tuple[str, str], BehaviorBlock]
    handlers: tuple[EventHandler, ...]
    templates: Mapping[str, Template]
    constraints: tuple[Constraint, ...]
    scenarios: tuple[TestScenario, ...] = ()

    def state(self, name: str) -> StateDefinition:
        return self.states[name]

    def hook(self, state: str, hook: str) -> BehaviorBlock | None:
        return self.hooks.get((state, hook))

    def handlers_for(self, state: str, event: str) -> list[EventHandler]:
        """Candidate handlers in match order: state-scoped first, then global."""
        scoped = [h for h in self.handlers if h.state == state and h.event == event]
        global_ = [h for h in self.handlers if h.is_global and h.event == event]
        return scoped + global_

    def reachable_states(self) -> set[str]:
        seen: set[str] = set()
        pending = [self.initial_state]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            pending.extend(self.states[name].transitions)
        return seen

    def defaults(self) -> dict[str, object]:
        return {
            name: (spec.default.value if spec.default is not None else None)
            for name, spec in self.schema.items()
        }
