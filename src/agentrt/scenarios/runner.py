"""Deterministic replay of embedded test scenarios."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentrt.agents.types import AgentDefinition
from agentrt.dsl.ast import TestScenario
from agentrt.errors import AgentRuntimeError
from agentrt.ids import slug
from agentrt.memory.state_store import InMemoryStateStore, StateStore
from agentrt.modules.catalog import Catalog
from agentrt.orchestrator.engine import StateMachineEngine, TurnResult
from agentrt.providers.scripted import ScriptedReasoner
from agentrt.tools.registry import Adapter, CapabilityRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScenarioReport:
    name: str
    failures: list[str] = field(default_factory=list)
    turns: list[TurnResult] = field(default_factory=list)
    state: str | None = None
    path: list[str] = field(default_factory=list)
    decisions: dict[str, Any] = field(default_factory=dict)
    actions: list[str] = field(default_factory=list)
    values: dict[str, Any] = field(default_factory=dict)
    violations: int = 0

    @property
    def passed(self) -> bool:
        return not self.failures


def _echo(handle: str) -> Adapter:
    async def handler(args: list[Any], kwargs: dict[str, Any]) -> dict[str, Any]:
        return {"adapter": handle, "args": args, **kwargs}

    return handler


def echo_registry(definition: AgentDefinition) -> CapabilityRegistry:
    """Registry answering every bound handle by echoing its arguments back."""
    registry = CapabilityRegistry()
    for handle in sorted(set(definition.resources.values())):
        registry.register(handle, _echo(handle), description="echo")
    return registry


def _is_subsequence(expected: tuple[str, ...], performed: list[str]) -> bool:
    remaining = iter(performed)
    return all(any(action == done for done in remaining) for action in expected)


def _session_id(scenario: TestScenario) -> str:
    return f"scenario-{slug(scenario.name)}"


def check_expectations(scenario: TestScenario, report: ScenarioReport) -> list[str]:
    failures: list[str] = []
    if scenario.expect_state is not None and report.state != scenario.expect_state:
        failures.append(f"expected state {scenario.expect_state!r}, got {report.state!r}")
    if scenario.expect_path is not None and tuple(report.path) != scenario.expect_path:
        failures.append(f"expected path {list(scenario.expect_path)}, got {report.path}")
    for decision_id, expected in scenario.expect_decisions:
        if decision_id not in report.decisions:
            failures.append(f"decision {decision_id!r} was never made")
        elif report.decisions[decision_id] != expected:
            failures.append(
                f"decision {decision_id!r}: expected {expected!r}, "
                f"got {report.decisions[decision_id]!r}"
            )
    if scenario.expect_actions is not None and not _is_subsequence(
        scenario.expect_actions, report.actions
    ):
        failures.append(
            f"expected actions {list(scenario.expect_actions)} in order, got {report.actions}"
        )
    for name, expected in scenario.expect_values:
        actual = report.values.get(name)
        if actual != expected:
            failures.append(f"field {name!r}: expected {expected!r}, got {actual!r}")
    if scenario.expect_violations is not None and report.violations != scenario.expect_violations:
        failures.append(
            f"expected {scenario.expect_violations} violation(s), got {report.violations}"
        )
    return failures


async def run_scenario(
    definition: AgentDefinition,
    scenario: TestScenario,
    *,
    adapters: CapabilityRegistry | None = None,
    store: StateStore | None = None,
    catalog: Catalog | None = None,
    bundle_dir: Path | None = None,
) -> ScenarioReport:
    """Replay a scenario's inputs against a fresh session with a scripted reasoner."""
    reasoner = ScriptedReasoner({key: values for key, values in scenario.answers})
    engine = StateMachineEngine(
        definition,
        reasoner=reasoner,
        registry=adapters if adapters is not None else echo_registry(definition),
        store=store if store is not None else InMemoryStateStore(),
        catalog=catalog,
        bundle_dir=bundle_dir,
    )
    report = ScenarioReport(name=scenario.name)
    session_id = _session_id(scenario)
    for number, text in enumerate(scenario.inputs, start=1):
        try:
            result = await engine.send(session_id, text)
        except AgentRuntimeError as exc:
            report.failures.append(f"turn {number} ({text!r}) raised {type(exc).__name__}: {exc}")
            logger.warning("Scenario %r stopped at turn %d: %s", scenario.name, number, exc)
            return report
        report.turns.append(result)
        report.state = result.state
        report.path.extend(result.path)
        report.actions.extend(result.actions)
        report.violations += len(result.violations)
        report.values = dict(result.fields)
        for outcome in result.decisions:
            report.decisions[outcome.decision_id] = outcome.value
    report.failures.extend(check_expectations(scenario, report))
    return report
