from agentrt.dsl.ast import TestScenario
from agentrt.scenarios.runner import ScenarioReport, echo_registry, run_scenario

__all__ = ["ScenarioReport", "TestScenario", "echo_registry", "run_scenario"]
