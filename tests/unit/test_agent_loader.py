import os
from pathlib import Path

import pytest

from agentrt.agents.loader import discover, load, load_cached, load_file
from agentrt.errors import ParseError, ValidationError


def _agent(body: str, *, resources: str = "", memory: str = "", extra: str = "") -> str:
    return f"""
version 1
agent sample {{
  resources {{ {resources} }}
  memory {{ {memory} }}
  {extra}
  states {{
{body}
  }}
}}
"""


SIMPLE_STATES = """
    initial state start {
      transitions [done]
      on input { transition_to done }
    }
    final state done { }
"""


def test_load_fixture_agent(billing_source: str) -> None:
    definition = load(billing_source)
    assert definition.name == "billing_dispute"
    assert definition.initial_state == "menu"
    assert definition.states["filed"].final
    assert definition.states["collect_customer"].max_retries == 3
    assert definition.states["collect_customer"].timeout == 600.0
    assert definition.modules["billing"] == "bundle:billing_common"
    assert definition.reachable_states() == set(definition.states)
    assert definition.defaults()["customer_id"] is None


def test_handlers_for_lists_scoped_before_global(billing_source: str) -> None:
    definition = load(billing_source)
    confirm = definition.handlers_for("confirm", "input")
    assert [h.state for h in confirm] == ["confirm", "confirm", "confirm"]
    timeout = definition.handlers_for("confirm", "timeout")
    assert [h.is_global for h in timeout] == [True]


def test_definition_is_read_only(billing_source: str) -> None:
    definition = load(billing_source)
    with pytest.raises(TypeError):
        definition.states["x"] = definition.states["menu"]  # type: ignore[index]


def test_module_source_is_not_an_agent(fixtures_dir: Path) -> None:
    source = (fixtures_dir / "billing_common.module").read_text(encoding="utf-8")
    with pytest.raises(ValidationError, match="expected an agent"):
        load(source)


def test_parse_error_surfaces_unchanged() -> None:
    with pytest.raises(ParseError):
        load("version 1\nagent broken {")


def test_exactly_one_initial_state() -> None:
    source = _agent("state a { }\nstate b { }")
    with pytest.raises(ValidationError, match="exactly one initial state"):
        load(source)


def test_unknown_transition_target() -> None:
    source = _agent("initial state a { transitions [nowhere] }")
    with pytest.raises(ValidationError, match="'nowhere' does not exist"):
        load(source)


def test_transition_must_be_declared_by_state() -> None:
    source = _agent(
        """
        initial state a {
          transitions [b]
          on input { transition_to c }
        }
        state b { }
        state c { }
        """
    )
    with pytest.raises(ValidationError, match="not an allowed transition"):
        load(source)


def test_final_state_cannot_transition() -> None:
    source = _agent("initial state a { transitions [b] }\nfinal state b { transitions [a] }")
    with pytest.raises(ValidationError, match="final states cannot declare transitions"):
        load(source)


def test_auto_transition_cycle_rejected() -> None:
    source = _agent(
        """
        initial state a { transitions [b] }
        state b auto { transitions [c] }
        state c auto { transitions [b] }
        """
    )
    with pytest.raises(ValidationError, match="auto-transition cycle"):
        load(source)


def test_cleanup_needs_resource_binding() -> None:
    source = _agent("initial state a { transitions [b] }\nfinal state b { cleanup [close] }")
    with pytest.raises(ValidationError, match="cleanup capability 'close'"):
        load(source)


def test_call_needs_resource_binding() -> None:
    source = _agent("initial state a { on input { call lookup() } }")
    with pytest.raises(ValidationError, match="'lookup' has no resource binding"):
        load(source)


def test_set_needs_declared_field() -> None:
    source = _agent("initial state a { on input { set ghost = 1 } }")
    with pytest.raises(ValidationError, match="'ghost' is not declared"):
        load(source)


def test_set_literal_checked_against_domain() -> None:
    source = _agent(
        'initial state a { on input { set tier = "bronze" } }',
        memory='tier: enum("gold", "silver")',
    )
    with pytest.raises(ValidationError, match="not one of"):
        load(source)


def test_decision_domain_must_fit_field() -> None:
    source = _agent(
        """
        initial state a {
          on input {
            decide pick: enum("gold", "platinum") { fallback "gold" }
            set tier = pick
          }
        }
        """,
        memory='tier: enum("gold", "silver")',
    )
    with pytest.raises(ValidationError, match="not assignable"):
        load(source)


def test_decision_fallback_checked_against_domain() -> None:
    source = _agent('initial state a { on input { decide n: range(1, 3) { fallback 9 } } }')
    with pytest.raises(ValidationError, match="outside"):
        load(source)


def test_decision_redeclared_with_other_domain() -> None:
    source = _agent(
        """
        initial state a { on input { decide d: bool } }
        state b { on input { decide d: text } }
        """
    )
    with pytest.raises(ValidationError, match="redeclared"):
        load(source)


def test_template_placeholder_must_name_something() -> None:
    source = _agent(SIMPLE_STATES, extra='templates { hi = "Hello {nobody}" }')
    with pytest.raises(ValidationError, match="placeholder"):
        load(source)


def test_say_unknown_template() -> None:
    source = _agent("initial state a { on input { say nothing_here } }")
    with pytest.raises(ValidationError, match="unknown template"):
        load(source)


def test_let_cannot_shadow_reserved_names() -> None:
    source = _agent("initial state a { on input { let input = 1 } }")
    with pytest.raises(ValidationError, match="reserved"):
        load(source)


def test_invoke_needs_declared_module() -> None:
    source = _agent("initial state a { on input { invoke shared.greet } }")
    with pytest.raises(ValidationError, match="module 'shared' is not declared"):
        load(source)


def test_unknown_function_in_guard() -> None:
    source = _agent("initial state a { on input when mystery(input) { } }")
    with pytest.raises(ValidationError, match="unknown function 'mystery'"):
        load(source)


def test_builtin_arity_checked_at_load() -> None:
    source = _agent("initial state a { on input when len(input, input) > 0 { } }")
    with pytest.raises(ValidationError, match=r"len\(\) takes 1 argument\(s\), got 2"):
        load(source)


def test_retries_takes_one_field() -> None:
    source = _agent(
        "initial state a { on input when retries() > 1 { } }", memory="name: text"
    )
    with pytest.raises(ValidationError, match=r"retries\(\) takes 1"):
        load(source)


def test_invalid_match_pattern_rejected_at_load() -> None:
    source = _agent('initial state a { on input when matches(input, "[") { } }')
    with pytest.raises(ValidationError, match=r"invalid pattern '\['"):
        load(source)


def test_scenario_expectations_name_real_states() -> None:
    source = _agent(SIMPLE_STATES, extra='test "t" { inputs ["x"] expect state nowhere }')
    with pytest.raises(ValidationError, match="unknown state 'nowhere'"):
        load(source)


def test_load_cached_reloads_on_mtime_change(tmp_path: Path, billing_source: str) -> None:
    path = tmp_path / "billing.agent"
    path.write_text(billing_source, encoding="utf-8")
    first = load_cached(path)
    assert load_cached(path) is first

    path.write_text(billing_source.replace('"Billing dispute assistant"', '"Updated"'), encoding="utf-8")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))
    second = load_cached(path)
    assert second is not first
    assert second.role == "Updated"


def test_discover_maps_names_to_files(tmp_path: Path, billing_source: str) -> None:
    (tmp_path / "billing.agent").write_text(billing_source, encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    found = discover(tmp_path)
    assert found == {"billing_dispute": tmp_path / "billing.agent"}
    assert load_file(found["billing_dispute"]).name == "billing_dispute"
