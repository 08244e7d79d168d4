import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from agentrt.cli.main import cli
from agentrt.config import get_settings

TINY = """
version 1
agent tiny {
  states {
    initial state a {
      transitions [b]
      on input { transition_to b }
    }
    final state b { }
  }
  test "goes to b" {
    inputs ["x"]
    expect state b
  }
  test "stays in a" {
    inputs ["x"]
    expect state a
  }
}
"""


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_check_prints_summary(fixtures_dir: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli, ["--log-level", "ERROR", "check", str(fixtures_dir / "billing_dispute.agent")]
    )
    assert result.exit_code == 0
    assert "ok: agent billing_dispute (version 1)" in result.output
    assert "initial: menu" in result.output
    assert "scenarios: 3" in result.output


def test_check_json(fixtures_dir: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["--log-level", "ERROR", "check", "--json", str(fixtures_dir / "billing_dispute.agent")],
    )
    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary["agent"] == "billing_dispute"
    assert summary["modules"] == {"billing": "bundle:billing_common"}
    assert summary["scenarios"] == ["happy path", "validation exhaustion", "decision timeout"]


def test_check_reports_invalid_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.agent"
    path.write_text("version 2\nagent x { }\n", encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(cli, ["--log-level", "ERROR", "check", str(path)])
    assert result.exit_code == 1
    assert "ParseError" in result.output


def test_embedded_scenarios_pass(fixtures_dir: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli,
        [
            "--log-level",
            "ERROR",
            "test",
            str(fixtures_dir / "billing_dispute.agent"),
            "--bundle-dir",
            str(fixtures_dir),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "PASS happy path" in result.output
    assert "3 passed, 0 failed" in result.output


def test_failing_scenario_exits_nonzero(tmp_path: Path) -> None:
    path = tmp_path / "tiny.agent"
    path.write_text(TINY, encoding="utf-8")
    runner = CliRunner()
    result = runner.invoke(cli, ["--log-level", "ERROR", "test", str(path)])
    assert result.exit_code == 1
    assert "PASS goes to b" in result.output
    assert "FAIL stays in a" in result.output
    assert "expected state 'a', got 'b'" in result.output
    assert "1 passed, 1 failed" in result.output


def test_chat_runs_until_session_ends(fixtures_dir: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["--log-level", "ERROR", "chat", str(fixtures_dir / "billing_dispute.agent")],
        input="2\n",
    )
    assert result.exit_code == 0, result.output
    assert "Reply 1 to dispute a charge" in result.output
    assert "A billing specialist will follow up." in result.output
    assert "[session ended in escalated]" in result.output


def test_migrate_applies_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_DB", str(tmp_path / "fresh.db"))
    get_settings.cache_clear()
    runner = CliRunner()
    first = runner.invoke(cli, ["--log-level", "ERROR", "migrate"])
    assert first.exit_code == 0
    assert "applied: 001_init.sql" in first.output
    second = runner.invoke(cli, ["--log-level", "ERROR", "migrate"])
    assert "applied: nothing" in second.output
