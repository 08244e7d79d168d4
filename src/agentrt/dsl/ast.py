"""Syntax tree for agent and module sources.

Nodes are frozen so a loaded definition can be shared between sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentrt.dsl.domains import Domain

# Expressions


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Name:
    name: str


@dataclass(frozen=True, slots=True)
class Attribute:
    target: Expr
    attr: str


@dataclass(frozen=True, slots=True)
class ListExpr:
    items: tuple[Expr, ...]


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True, slots=True)
class BoolOp:
    op: str
    operands: tuple[Expr, ...]


@dataclass(frozen=True, slots=True)
class Not:
    operand: Expr


@dataclass(frozen=True, slots=True)
class Call:
    func: str
    args: tuple[Expr, ...]


Expr = Literal | Name | Attribute | ListExpr | Compare | BoolOp | Not | Call


def referenced_names(expr: Expr | None) -> set[str]:
    """Root names an expression reads, used to build minimal context snapshots."""
    if expr is None:
        return set()
    if isinstance(expr, Name):
        return {expr.name}
    if isinstance(expr, Attribute):
        return referenced_names(expr.target)
    if isinstance(expr, ListExpr):
        return set().union(*(referenced_names(item) for item in expr.items))
    if isinstance(expr, Compare):
        return referenced_names(expr.left) | referenced_names(expr.right)
    if isinstance(expr, BoolOp):
        return set().union(*(referenced_names(item) for item in expr.operands))
    if isinstance(expr, Not):
        return referenced_names(expr.operand)
    if isinstance(expr, Call):
        names = set().union(*(referenced_names(item) for item in expr.args))
        if expr.func == "retries":
            names.add("retries")
        return names
    return set()


# Statements


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    retries: int = 0
    delay: float = 0.0
    fallback: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionSpec:
    id: str
    domain: Domain
    given: tuple[str, ...] = ()
    constraint: Expr | None = None
    threshold: float | None = None
    timeout: float | None = None
    fallback: Literal | None = None
    on_low_confidence: Literal | None = None
    on_timeout: Literal | None = None
    line: int = 0


@dataclass(frozen=True, slots=True)
class ExecutionCall:
    capability: str
    args: tuple[Expr, ...] = ()
    kwargs: tuple[tuple[str, Expr], ...] = ()
    target: str | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    line: int = 0


@dataclass(frozen=True, slots=True)
class SetField:
    field: str
    value: Expr
    line: int = 0


@dataclass(frozen=True, slots=True)
class Let:
    name: str
    value: Expr
    line: int = 0


@dataclass(frozen=True, slots=True)
class TransitionTo:
    target: str
    line: int = 0


@dataclass(frozen=True, slots=True)
class Say:
    template: str
    line: int = 0


@dataclass(frozen=True, slots=True)
class Invoke:
    module: str
    behavior: str
    line: int = 0


@dataclass(frozen=True, slots=True)
class Retry:
    field: str
    exhausted: BehaviorBlock | None = None
    line: int = 0


@dataclass(frozen=True, slots=True)
class If:
    branches: tuple[tuple[Expr, BehaviorBlock], ...]
    orelse: BehaviorBlock | None = None
    line: int = 0


@dataclass(frozen=True, slots=True)
class MatchArm:
    patterns: tuple[Any, ...] | None
    body: BehaviorBlock


@dataclass(frozen=True, slots=True)
class Match:
    subject: Expr
    arms: tuple[MatchArm, ...]
    line: int = 0


@dataclass(frozen=True, slots=True)
class ForEach:
    var: str
    iterable: Expr
    limit: int | None
    body: BehaviorBlock
    line: int = 0


Statement = (
    DecisionSpec
    | ExecutionCall
    | SetField
    | Let
    | TransitionTo
    | Say
    | Invoke
    | Retry
    | If
    | Match
    | ForEach
)


@dataclass(frozen=True, slots=True)
class BehaviorBlock:
    statements: tuple[Statement, ...] = ()

    def walk(self):
        """Yield every statement, descending into nested blocks."""
        for stmt in self.statements:
            yield stmt
            for child in _child_blocks(stmt):
                yield from child.walk()


def _child_blocks(stmt: Statement) -> list[BehaviorBlock]:
    if isinstance(stmt, If):
        blocks = [body for _, body in stmt.branches]
        if stmt.orelse is not None:
            blocks.append(stmt.orelse)
        return blocks
    if isinstance(stmt, Match):
        return [arm.body for arm in stmt.arms]
    if isinstance(stmt, ForEach):
        return [stmt.body]
    if isinstance(stmt, Retry) and stmt.exhausted is not None:
        return [stmt.exhausted]
    return []


# Declarations


@dataclass(frozen=True, slots=True)
class FieldSpec:
    name: str
    domain: Domain
    default: Literal | None = None
    line: int = 0


@dataclass(frozen=True, slots=True)
class Template:
    name: str
    text: str
    line: int = 0


@dataclass(frozen=True, slots=True)
class StateDefinition:
    name: str
    description: str = ""
    transitions: tuple[str, ...] = ()
    timeout: float | None = None
    max_retries: int | None = None
    initial: bool = False
    final: bool = False
    auto: bool = False
    cleanup: tuple[str, ...] = ()
    line: int = 0


@dataclass(frozen=True, slots=True)
class EventHandler:
    event: str
    state: str
    block: BehaviorBlock
    guard: Expr | None = None
    line: int = 0

    @property
    def is_global(self) -> bool:
        return self.state == GLOBAL_STATE


GLOBAL_STATE = "*"
LIFECYCLE_HOOKS = frozenset({"enter", "exit"})


@dataclass(frozen=True, slots=True)
class Prohibition:
    action: str
    where: Expr | None = None
    line: int = 0

    @property
    def label(self) -> str:
        return f"never {self.action}"


@dataclass(frozen=True, slots=True)
class Requirement:
    action: str
    before: str
    line: int = 0

    @property
    def label(self) -> str:
        return f"require {self.action} before {self.before}"


@dataclass(frozen=True, slots=True)
class ConditionalRule:
    predicate: Expr
    action: str
    line: int = 0

    @property
    def label(self) -> str:
        return f"when ... require {self.action}"


Constraint = Prohibition | Requirement | ConditionalRule


@dataclass(frozen=True, slots=True)
class Answer:
    """One scripted reasoner answer."""

    value: Any
    confidence: float = 1.0


class _TimeoutAnswer:
    def __repr__(self) -> str:
        return "TIMEOUT_ANSWER"


# Scripted answer that never arrives; the decision must resolve via its timeout path.
TIMEOUT_ANSWER = _TimeoutAnswer()


@dataclass(frozen=True, slots=True)
class TestScenario:
    name: str
    inputs: tuple[str, ...] = ()
    answers: tuple[tuple[str, tuple[Any, ...]], ...] = ()
    expect_state: str | None = None
    expect_path: tuple[str, ...] | None = None
    expect_decisions: tuple[tuple[str, Any], ...] = ()
    expect_actions: tuple[str, ...] | None = None
    expect_values: tuple[tuple[str, Any], ...] = ()
    expect_violations: int | None = None
    line: int = 0

    __test__ = False


@dataclass(frozen=True, slots=True)
class FunctionDef:
    name: str
    params: tuple[str, ...]
    body: Expr
    line: int = 0


@dataclass(slots=True)
class AgentDocument:
    """Raw parse result of an agent source, before static validation."""

    name: str
    version: int
    role: str = ""
    objective: str = ""
    resources: dict[str, str] = field(default_factory=dict)
    modules: dict[str, str] = field(default_factory=dict)
    fields: list[FieldSpec] = field(default_factory=list)
    templates: list[Template] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)
    states: list[StateDefinition] = field(default_factory=list)
    hooks: dict[tuple[str, str], BehaviorBlock] = field(default_factory=dict)
    handlers: list[EventHandler] = field(default_factory=list)
    scenarios: list[TestScenario] = field(default_factory=list)
    line: int = 0


@dataclass(slots=True)
class ModuleDocument:
    """Raw parse result of a module source."""

    name: str
    version: int
    templates: list[Template] = field(default_factory=list)
    behaviors: dict[str, BehaviorBlock] = field(default_factory=dict)
    functions: list[FunctionDef] = field(default_factory=list)
    line: int = 0
