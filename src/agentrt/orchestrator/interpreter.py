"""Executes behavior blocks statement by statement for one turn."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from agentrt.agents.types import AgentDefinition
from agentrt.config import get_settings
from agentrt.decisions.boundary import DecisionBoundary, DecisionOutcome
from agentrt.dsl import ast
from agentrt.dsl.expressions import (
    BUILTIN_NAMES,
    FunctionResolver,
    evaluate,
    render_template,
    scoped_resolver,
    truthy,
)
from agentrt.errors import ExecutionError, ModuleLoadError
from agentrt.events.models import (
    EVENT_DECISION,
    EVENT_DIAGNOSTIC,
    EVENT_EXECUTION,
    EVENT_EXECUTION_FAILED,
    EVENT_OUTPUT,
    AuditRecord,
)
from agentrt.memory.conversation import ConversationState
from agentrt.modules.types import Module
from agentrt.policy.engine import ConstraintEnforcer
from agentrt.tools.runtime import ExecutionDispatcher, ExecutionFailed, evaluate_arguments

logger = logging.getLogger(__name__)

INPUT_EVENT = "input"
TIMEOUT_EVENT = "timeout"
ERROR_EVENT = "error"
VIOLATION_EVENT = "constraint_violation"
RETRIES_EXHAUSTED_EVENT = "retries_exhausted"


@dataclass(slots=True)
class Event:
    name: str
    text: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def input(cls, text: str) -> Event:
        return cls(INPUT_EVENT, text=text)


@dataclass(slots=True)
class TurnContext:
    """Mutable working set of one turn; `state` is a private copy until saved."""

    definition: AgentDefinition
    state: ConversationState
    event: Event
    path: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    decisions: list[DecisionOutcome] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)
    violations: list[dict[str, Any]] = field(default_factory=list)
    audit: list[AuditRecord] = field(default_factory=list)
    scratch: dict[str, Any] = field(default_factory=dict)
    pending: list[Event] = field(default_factory=list)
    transitions: int = 0
    recovering: bool = False
    terminated: bool = False
    # Aliases whose load and merge this turn performed.
    loaded_modules: list[str] = field(default_factory=list)

    def scope(self) -> dict[str, Any]:
        # Later entries shadow earlier ones: input, event, state, scratch, fields.
        scope: dict[str, Any] = dict(self.state.fields)
        scope.update(self.scratch)
        scope["retries"] = dict(self.state.retries)
        scope["state"] = self.state.current_state
        scope["event"] = dict(self.event.payload)
        scope["input"] = self.event.text
        return scope

    def record(self, event_type: str, component: str, payload: dict[str, Any]) -> None:
        self.audit.append(
            AuditRecord(
                session_id=self.state.session_id,
                turn=self.state.turn,
                event_type=event_type,
                component=component,
                payload=payload,
            )
        )

    def diagnose(self, kind: str, **details: Any) -> None:
        entry = {"kind": kind, "state": self.state.current_state, **details}
        self.diagnostics.append(entry)
        self.record(EVENT_DIAGNOSTIC, "orchestrator", entry)
        logger.info("Diagnostic %s in %s: %s", kind, self.state.current_state, details)


@dataclass(slots=True)
class Flow:
    """How a block ended: normally, with a transition request, or halted."""

    transition: str | None = None
    halted: bool = False

    @property
    def stopped(self) -> bool:
        return self.transition is not None or self.halted


@dataclass(slots=True)
class Frame:
    ledger: list[str] = field(default_factory=list)
    alias: str | None = None
    module: Module | None = None


ModuleEnsurer = Callable[[str, list[str]], Awaitable[Module]]


def _aliases_in_expr(expr: ast.Expr | None) -> set[str]:
    found: set[str] = set()
    if expr is None:
        return found
    pending: list[ast.Expr] = [expr]
    while pending:
        node = pending.pop()
        if isinstance(node, ast.Call):
            if "." in node.func and node.func not in BUILTIN_NAMES:
                found.add(node.func.split(".", 1)[0])
            pending.extend(node.args)
        elif isinstance(node, ast.Attribute):
            pending.append(node.target)
        elif isinstance(node, ast.ListExpr):
            pending.extend(node.items)
        elif isinstance(node, ast.Compare):
            pending.extend((node.left, node.right))
        elif isinstance(node, ast.BoolOp):
            pending.extend(node.operands)
        elif isinstance(node, ast.Not):
            pending.append(node.operand)
    return found


def aliases_in_exprs(exprs: Iterable[ast.Expr | None]) -> set[str]:
    found: set[str] = set()
    for expr in exprs:
        found |= _aliases_in_expr(expr)
    return found


def aliases_in_block(block: ast.BehaviorBlock) -> set[str]:
    """Module aliases a block needs loaded before it can run."""
    found: set[str] = set()
    for stmt in block.walk():
        if isinstance(stmt, ast.Invoke):
            found.add(stmt.module)
        elif isinstance(stmt, ast.Say) and "." in stmt.template:
            found.add(stmt.template.split(".", 1)[0])
        elif isinstance(stmt, ast.DecisionSpec):
            found |= _aliases_in_expr(stmt.constraint)
        elif isinstance(stmt, ast.ExecutionCall):
            found |= aliases_in_exprs(stmt.args)
            found |= aliases_in_exprs(value for _, value in stmt.kwargs)
        elif isinstance(stmt, (ast.SetField, ast.Let)):
            found |= _aliases_in_expr(stmt.value)
        elif isinstance(stmt, ast.If):
            found |= aliases_in_exprs(cond for cond, _ in stmt.branches)
        elif isinstance(stmt, ast.Match):
            found |= _aliases_in_expr(stmt.subject)
        elif isinstance(stmt, ast.ForEach):
            found |= _aliases_in_expr(stmt.iterable)
    return found


class BehaviorInterpreter:
    def __init__(
        self,
        definition: AgentDefinition,
        *,
        boundary: DecisionBoundary,
        dispatcher: ExecutionDispatcher,
        enforcer: ConstraintEnforcer,
        ensure_module: ModuleEnsurer,
        lookup_module: Callable[[str], Module | None],
        functions: FunctionResolver,
        max_iterations: int | None = None,
    ) -> None:
        self.definition = definition
        self.boundary = boundary
        self.dispatcher = dispatcher
        self.enforcer = enforcer
        self.ensure_module = ensure_module
        self.lookup_module = lookup_module
        self.functions = functions
        self.max_iterations = (
            max_iterations if max_iterations is not None else get_settings().max_iterations
        )

    async def run(self, block: ast.BehaviorBlock, turn: TurnContext) -> Flow:
        """Run a hook or handler block with a fresh action ledger."""
        for alias in sorted(aliases_in_block(block)):
            if alias in self.definition.modules:
                await self.ensure_module(alias, turn.loaded_modules)
        return await self._block(block, turn, Frame())

    def _resolver(self, frame: Frame) -> FunctionResolver:
        if frame.alias is None:
            return self.functions
        return scoped_resolver(self.functions, frame.alias)

    def _eval(self, expr: ast.Expr, turn: TurnContext, frame: Frame) -> Any:
        return evaluate(expr, turn.scope(), self._resolver(frame))

    async def _block(self, block: ast.BehaviorBlock, turn: TurnContext, frame: Frame) -> Flow:
        for stmt in block.statements:
            flow = await self._statement(stmt, turn, frame)
            if flow.stopped:
                return flow
        return Flow()

    async def _statement(self, stmt: ast.Statement, turn: TurnContext, frame: Frame) -> Flow:
        if isinstance(stmt, ast.DecisionSpec):
            await self._decide(stmt, turn, frame)
        elif isinstance(stmt, ast.ExecutionCall):
            await self._call(stmt, turn, frame)
        elif isinstance(stmt, ast.SetField):
            value = self._eval(stmt.value, turn, frame)
            turn.state.write(self.definition.schema, stmt.field, value)
        elif isinstance(stmt, ast.Let):
            turn.scratch[stmt.name] = self._eval(stmt.value, turn, frame)
        elif isinstance(stmt, ast.TransitionTo):
            return Flow(transition=stmt.target)
        elif isinstance(stmt, ast.Say):
            self._say(stmt, turn, frame)
        elif isinstance(stmt, ast.Invoke):
            return await self._invoke(stmt, turn, frame)
        elif isinstance(stmt, ast.Retry):
            return await self._retry(stmt, turn, frame)
        elif isinstance(stmt, ast.If):
            for condition, body in stmt.branches:
                if truthy(self._eval(condition, turn, frame)):
                    return await self._block(body, turn, frame)
            if stmt.orelse is not None:
                return await self._block(stmt.orelse, turn, frame)
        elif isinstance(stmt, ast.Match):
            subject = self._eval(stmt.subject, turn, frame)
            for arm in stmt.arms:
                if arm.patterns is None or any(
                    type(p) is type(subject) and p == subject for p in arm.patterns
                ):
                    return await self._block(arm.body, turn, frame)
        elif isinstance(stmt, ast.ForEach):
            return await self._for_each(stmt, turn, frame)
        return Flow()

    def _activate(self, turn: TurnContext, obligations: list[str]) -> None:
        for action in obligations:
            if action not in turn.state.obligations:
                turn.state.obligations.append(action)
                turn.record(
                    "constraint.obligation",
                    "policy",
                    {"action": action, "state": turn.state.current_state},
                )

    def _performed(self, action: str, turn: TurnContext, frame: Frame) -> None:
        frame.ledger.append(action)
        if self.enforcer.discharge(action, turn.state.obligations):
            turn.state.satisfied.append(action)

    async def _decide(self, spec: ast.DecisionSpec, turn: TurnContext, frame: Frame) -> None:
        scope = turn.scope()
        self._activate(
            turn,
            self.enforcer.check(spec.id, scope, frame.ledger, satisfied=turn.state.satisfied),
        )
        outcome = await self.boundary.decide(spec, scope, self._resolver(frame))
        turn.scratch[spec.id] = outcome.value
        turn.decisions.append(outcome)
        turn.record(EVENT_DECISION, "decisions.boundary", outcome.to_dict())
        self._performed(spec.id, turn, frame)

    async def _call(self, call: ast.ExecutionCall, turn: TurnContext, frame: Frame) -> None:
        scope = turn.scope()
        _, kwargs = evaluate_arguments(call, scope, self._resolver(frame))
        self._activate(
            turn,
            self.enforcer.check(
                call.capability,
                scope,
                frame.ledger,
                args=kwargs,
                satisfied=turn.state.satisfied,
            ),
        )
        try:
            outcome = await self.dispatcher.execute(
                call,
                scope,
                resources=self.definition.resources,
                functions=self._resolver(frame),
            )
        except ExecutionFailed as exc:
            turn.record(
                EVENT_EXECUTION_FAILED,
                "tools.runtime",
                {
                    "capability": call.capability,
                    "kind": exc.kind,
                    "exhausted": True,
                    "attempts": [attempt.to_dict() for attempt in exc.history],
                },
            )
            raise
        except ExecutionError as exc:
            turn.record(
                EVENT_EXECUTION_FAILED,
                "tools.runtime",
                {"capability": call.capability, "kind": exc.kind, "exhausted": False},
            )
            raise
        if call.target:
            turn.scratch[call.target] = outcome.result
        turn.actions.append(call.capability)
        turn.record(
            EVENT_EXECUTION,
            "tools.runtime",
            {
                "capability": call.capability,
                "adapter": outcome.adapter,
                "used_fallback": outcome.used_fallback,
                "attempts": [attempt.to_dict() for attempt in outcome.attempts],
                "kwargs": outcome.kwargs,
            },
        )
        self._performed(call.capability, turn, frame)

    def _say(self, stmt: ast.Say, turn: TurnContext, frame: Frame) -> None:
        template = self._template(stmt.template, frame)
        if template is None:
            raise ModuleLoadError(f"template {stmt.template!r} is not loaded")
        text = render_template(template.text, turn.scope())
        turn.outputs.append(text)
        turn.record(EVENT_OUTPUT, "orchestrator", {"template": stmt.template, "text": text})

    def _template(self, name: str, frame: Frame) -> ast.Template | None:
        alias, dot, export = name.partition(".")
        if not dot:
            if frame.module is not None:
                return frame.module.templates.get(name)
            return self.definition.templates.get(name)
        module = self._loaded(alias, frame)
        return module.templates.get(export) if module is not None else None

    def _loaded(self, alias: str, frame: Frame) -> Module | None:
        if frame.module is not None and alias in {frame.alias, frame.module.name}:
            return frame.module
        return self.lookup_module(alias)

    async def _invoke(self, stmt: ast.Invoke, turn: TurnContext, frame: Frame) -> Flow:
        module = await self.ensure_module(stmt.module, turn.loaded_modules)
        block = module.behaviors.get(stmt.behavior)
        if block is None:
            raise ModuleLoadError(f"module {module.name!r} exports no behavior {stmt.behavior!r}")
        for alias in sorted(aliases_in_block(block)):
            if alias in self.definition.modules:
                await self.ensure_module(alias, turn.loaded_modules)
        # Module behaviors share the caller's ledger; requirements span the invoke.
        inner = Frame(ledger=frame.ledger, alias=stmt.module, module=module)
        return await self._block(block, turn, inner)

    async def _retry(self, stmt: ast.Retry, turn: TurnContext, frame: Frame) -> Flow:
        count = turn.state.retries.get(stmt.field, 0) + 1
        turn.state.retries[stmt.field] = count
        current = turn.state.current_state
        limit = self.definition.states[current].max_retries if current else None
        if limit is None or count < limit:
            return Flow()
        turn.record(
            "retry.exhausted",
            "orchestrator",
            {"field": stmt.field, "attempts": count, "state": current},
        )
        if stmt.exhausted is not None:
            flow = await self._block(stmt.exhausted, turn, frame)
            return flow if flow.stopped else Flow(halted=True)
        turn.pending.append(
            Event(RETRIES_EXHAUSTED_EVENT, payload={"field": stmt.field, "attempts": count})
        )
        return Flow(halted=True)

    async def _for_each(self, stmt: ast.ForEach, turn: TurnContext, frame: Frame) -> Flow:
        items = self._eval(stmt.iterable, turn, frame)
        if isinstance(items, dict):
            items = list(items)
        if not isinstance(items, (list, tuple)):
            items = [] if items is None else [items]
        limit = stmt.limit if stmt.limit is not None else self.max_iterations
        if len(items) > limit:
            turn.diagnose("iteration_limit", var=stmt.var, items=len(items), limit=limit)
        for item in list(items)[:limit]:
            turn.scratch[stmt.var] = item
            flow = await self._block(stmt.body, turn, frame)
            if flow.stopped:
                return flow
        return Flow()
