"""Click CLI group: check, test, chat and migrate commands."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from agentrt.agents.loader import load_file
from agentrt.agents.types import AgentDefinition
from agentrt.config import get_settings
from agentrt.errors import AgentRuntimeError
from agentrt.logging import configure_logging
from agentrt.scenarios import ScenarioReport, run_scenario


def _load_or_exit(path: Path) -> AgentDefinition:
    try:
        return load_file(path)
    except AgentRuntimeError as exc:
        click.echo(f"{path}: {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)


def _summary(definition: AgentDefinition) -> dict[str, object]:
    return {
        "agent": definition.name,
        "version": definition.version,
        "initial_state": definition.initial_state,
        "states": sorted(definition.states),
        "handlers": len(definition.handlers),
        "constraints": len(definition.constraints),
        "modules": dict(definition.modules),
        "resources": dict(definition.resources),
        "scenarios": [scenario.name for scenario in definition.scenarios],
    }


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
def cli(log_level: str | None) -> None:
    """Agent notation runtime CLI."""
    configure_logging(log_level or get_settings().log_level)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "json_output", is_flag=True, help="Print the summary as JSON.")
def check(path: Path, json_output: bool) -> None:
    """Parse and validate an agent file."""
    definition = _load_or_exit(path)
    summary = _summary(definition)
    if json_output:
        click.echo(json.dumps(summary, indent=2, sort_keys=True))
        return
    click.echo(f"ok: agent {definition.name} (version {definition.version})")
    click.echo(f"  states: {', '.join(sorted(definition.states))}")
    click.echo(f"  initial: {definition.initial_state}")
    click.echo(f"  scenarios: {len(definition.scenarios)}")


@cli.command("test")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--bundle-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding bundled modules (default: MODULE_BUNDLE_DIR).",
)
@click.option("--json", "json_output", is_flag=True, help="Print reports as JSON.")
def run_tests(path: Path, bundle_dir: Path | None, json_output: bool) -> None:
    """Replay the agent's embedded test scenarios with echo adapters."""
    definition = _load_or_exit(path)
    if not definition.scenarios:
        click.echo(f"{path}: no test scenarios")
        return
    reports: list[ScenarioReport] = []
    for scenario in definition.scenarios:
        reports.append(asyncio.run(run_scenario(definition, scenario, bundle_dir=bundle_dir)))
    if json_output:
        payload = [
            {
                "name": report.name,
                "passed": report.passed,
                "failures": report.failures,
                "state": report.state,
                "path": report.path,
            }
            for report in reports
        ]
        click.echo(json.dumps(payload, indent=2))
    else:
        for report in reports:
            click.echo(f"{'PASS' if report.passed else 'FAIL'} {report.name}")
            for failure in report.failures:
                click.echo(f"  - {failure}")
    failed = sum(1 for report in reports if not report.passed)
    click.echo(f"{len(reports) - failed} passed, {failed} failed")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--session-id", default="cli", show_default=True)
@click.option(
    "--bundle-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
)
def chat(path: Path, session_id: str, bundle_dir: Path | None) -> None:
    """Talk to an agent on stdin using the configured reasoner and echo adapters."""
    from agentrt.memory.state_store import SqliteStateStore
    from agentrt.orchestrator.engine import StateMachineEngine
    from agentrt.providers.http import HttpReasoner
    from agentrt.scenarios import echo_registry

    definition = _load_or_exit(path)
    engine = StateMachineEngine(
        definition,
        reasoner=HttpReasoner(),
        registry=echo_registry(definition),
        store=SqliteStateStore(),
        bundle_dir=bundle_dir,
    )

    async def loop() -> None:
        for line in sys.stdin:
            text = line.rstrip("\n")
            try:
                result = await engine.send(session_id, text)
            except AgentRuntimeError as exc:
                click.echo(f"error: {type(exc).__name__}: {exc}", err=True)
                continue
            for output in result.outputs:
                click.echo(output)
            for diagnostic in result.diagnostics:
                click.echo(f"[{diagnostic['kind']}]", err=True)
            if result.terminated:
                click.echo(f"[session ended in {result.state}]")
                return

    asyncio.run(loop())


@cli.command()
def migrate() -> None:
    """Apply pending SQL migrations to APP_DB."""
    from agentrt.db.migrations.runner import run_migrations

    applied = run_migrations()
    click.echo(f"applied: {', '.join(applied) if applied else 'nothing'}")


if __name__ == "__main__":
    cli()
