"""Tests for the notation lexer and parser."""

import pytest

from agentrt.dsl import ast
from agentrt.dsl.domains import EnumDomain, RangeDomain, StructDomain, TextDomain
from agentrt.dsl.lexer import tokenize
from agentrt.dsl.parser import parse
from agentrt.errors import ParseError

MINIMAL = """
version 1
agent greeter {
  states {
    initial state start {
      transitions [done]
      on input { transition_to done }
    }
    final state done { }
  }
}
"""


def test_tokenize_durations_numbers_and_strings() -> None:
    tokens = tokenize('timeout 250ms 1.5 "a \\"b\\"" -> # trailing comment')
    kinds = [(tok.kind, tok.value) for tok in tokens]
    assert kinds == [
        ("NAME", "timeout"),
        ("DURATION", 0.25),
        ("NUMBER", 1.5),
        ("STRING", 'a "b"'),
        ("OP", "->"),
        ("EOF", None),
    ]


def test_tokenize_tracks_lines() -> None:
    tokens = tokenize("version 1\n\nagent x")
    assert tokens[2].line == 3
    assert tokens[2].column == 1


def test_unexpected_character_reports_position() -> None:
    with pytest.raises(ParseError) as exc_info:
        tokenize("version 1\nagent @")
    assert exc_info.value.line == 2
    assert exc_info.value.column == 7


def test_missing_version_marker_rejected() -> None:
    with pytest.raises(ParseError, match="version marker"):
        parse("agent a { }")


def test_unsupported_version_rejected() -> None:
    with pytest.raises(ParseError, match="unsupported notation version 2"):
        parse("version 2\nagent a { }")


def test_parse_minimal_agent() -> None:
    doc = parse(MINIMAL)
    assert isinstance(doc, ast.AgentDocument)
    assert doc.name == "greeter"
    assert [s.name for s in doc.states] == ["start", "done"]
    assert doc.states[0].initial and doc.states[1].final
    handler = doc.handlers[0]
    assert (handler.state, handler.event) == ("start", "input")
    assert handler.block.statements == (ast.TransitionTo("done", line=7),)


def test_parse_memory_domains_and_defaults() -> None:
    doc = parse(
        """
        version 1
        agent a {
          memory {
            name: text
            tier: enum("gold", "silver") = "silver"
            score: range(0, 10)
            address: struct { street: text, zip?: text }
          }
          states { initial state s { } }
        }
        """
    )
    fields = {f.name: f for f in doc.fields}
    assert fields["name"].domain == TextDomain()
    assert fields["tier"].domain == EnumDomain(("gold", "silver"))
    assert fields["tier"].default == ast.Literal("silver")
    assert fields["score"].domain == RangeDomain(0, 10)
    address = fields["address"].domain
    assert isinstance(address, StructDomain)
    assert [(m.name, m.required) for m in address.fields] == [("street", True), ("zip", False)]


def test_empty_range_rejected() -> None:
    with pytest.raises(ParseError, match="empty range"):
        parse("version 1\nagent a { memory { x: range(5, 1) } }")


def test_parse_decision_options() -> None:
    doc = parse(
        """
        version 1
        agent a {
          states {
            initial state s {
              on input {
                decide intent: enum("yes", "no") {
                  given [input]
                  threshold 0.7
                  timeout 2s
                  on_timeout "no"
                }
              }
            }
          }
        }
        """
    )
    spec = doc.handlers[0].block.statements[0]
    assert isinstance(spec, ast.DecisionSpec)
    assert spec.given == ("input",)
    assert spec.threshold == 0.7
    assert spec.timeout == 2.0
    assert spec.on_timeout == ast.Literal("no")
    assert spec.fallback is None


def test_threshold_outside_unit_interval_is_a_parse_error() -> None:
    with pytest.raises(ParseError, match="threshold"):
        parse(
            """
            version 1
            agent a { states { initial state s { on input { decide d: bool { threshold 2 } } } } }
            """
        )


def test_call_policy_and_following_retry_statement() -> None:
    doc = parse(
        """
        version 1
        agent a {
          states {
            initial state s {
              on input {
                call lookup(1, key = input) -> found retry 2 delay 2s fallback cached
                retry key
              }
            }
          }
        }
        """
    )
    call, retry = doc.handlers[0].block.statements
    assert isinstance(call, ast.ExecutionCall)
    assert call.args == (ast.Literal(1),)
    assert call.kwargs == (("key", ast.Name("input")),)
    assert call.target == "found"
    assert call.retry == ast.RetryPolicy(retries=2, delay=2.0, fallback="cached")
    assert isinstance(retry, ast.Retry)
    assert retry.field == "key"


def test_positional_after_named_argument_rejected() -> None:
    with pytest.raises(ParseError, match="positional argument"):
        parse(
            """
            version 1
            agent a { states { initial state s { on input { call c(a = 1, 2) } } } }
            """
        )


def test_expression_precedence() -> None:
    doc = parse(
        """
        version 1
        agent a {
          states {
            initial state s {
              on input when not a or b and c == 1 { transition_to s }
            }
          }
        }
        """
    )
    guard = doc.handlers[0].guard
    assert guard == ast.BoolOp(
        "or",
        (
            ast.Not(ast.Name("a")),
            ast.BoolOp("and", (ast.Name("b"), ast.Compare("==", ast.Name("c"), ast.Literal(1)))),
        ),
    )


def test_lifecycle_hooks_are_stored_per_state() -> None:
    doc = parse(
        """
        version 1
        agent a {
          states {
            initial state s {
              on enter { say hi }
              on exit { say bye }
            }
          }
        }
        """
    )
    assert set(doc.hooks) == {("s", "enter"), ("s", "exit")}
    assert doc.handlers == []


def test_global_lifecycle_hook_rejected() -> None:
    with pytest.raises(ParseError, match="lifecycle hook 'enter'"):
        parse("version 1\nagent a { on enter { say hi } }")


def test_guarded_lifecycle_hook_rejected() -> None:
    with pytest.raises(ParseError, match="cannot have guards"):
        parse("version 1\nagent a { states { initial state s { on enter when x { } } } }")


def test_parse_constraints() -> None:
    doc = parse(
        """
        version 1
        agent a {
          constraints {
            never refund where args.amount > 100
            require verify before refund
            when tier == "gold" require notify
          }
        }
        """
    )
    prohibition, requirement, rule = doc.constraints
    assert isinstance(prohibition, ast.Prohibition)
    assert prohibition.where == ast.Compare(
        ">", ast.Attribute(ast.Name("args"), "amount"), ast.Literal(100)
    )
    assert requirement == ast.Requirement("verify", "refund", line=6)
    assert isinstance(rule, ast.ConditionalRule)
    assert rule.action == "notify"


def test_parse_match_for_and_if() -> None:
    doc = parse(
        """
        version 1
        agent a {
          states {
            initial state s {
              on input {
                match input {
                  "a", "b" => { say ab }
                  _ => { say other }
                }
                for item in items max 3 { say row }
                if x { say one } elif y { say two } else { say three }
              }
            }
          }
        }
        """
    )
    match, loop, branch = doc.handlers[0].block.statements
    assert isinstance(match, ast.Match)
    assert match.arms[0].patterns == ("a", "b")
    assert match.arms[1].patterns is None
    assert isinstance(loop, ast.ForEach)
    assert (loop.var, loop.limit) == ("item", 3)
    assert isinstance(branch, ast.If)
    assert len(branch.branches) == 2
    assert branch.orelse is not None


def test_parse_module_document() -> None:
    doc = parse(
        """
        version 1
        module shared {
          templates { hello = "Hello {name}" }
          function double(x) = x
          behavior greet { say hello }
        }
        """
    )
    assert isinstance(doc, ast.ModuleDocument)
    assert doc.name == "shared"
    assert doc.functions[0].params == ("x",)
    assert "greet" in doc.behaviors


def test_parse_test_scenario() -> None:
    doc = parse(
        """
        version 1
        agent a {
          test "routes" {
            inputs ["hi", "bye"]
            answers { intent = ["greet" confidence 0.4, timeout] }
            expect state done
            expect decisions { intent = "greet" }
            expect violations 0
          }
        }
        """
    )
    scenario = doc.scenarios[0]
    assert scenario.inputs == ("hi", "bye")
    assert scenario.answers == (("intent", (ast.Answer("greet", 0.4), ast.TIMEOUT_ANSWER)),)
    assert scenario.expect_state == "done"
    assert scenario.expect_decisions == (("intent", "greet"),)
    assert scenario.expect_violations == 0


def test_scenario_with_single_input() -> None:
    doc = parse('version 1\nagent a {\n  test "one" {\n    input "hi"\n    expect state a\n  }\n}')
    assert doc.scenarios[0].inputs == ("hi",)

    with pytest.raises(ParseError, match="inputs twice"):
        parse('version 1\nagent a { test "both" { input "hi" inputs ["bye"] } }')


def test_unknown_statement_reports_line() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse("version 1\nagent a {\n states { initial state s {\n on input { jump s } } }\n}")
    assert exc_info.value.line == 4
    assert "unknown statement 'jump'" in str(exc_info.value)


def test_fixture_agent_parses(billing_source: str) -> None:
    doc = parse(billing_source)
    assert isinstance(doc, ast.AgentDocument)
    assert len(doc.scenarios) == 3
    assert doc.modules == {"billing": "bundle:billing_common"}
