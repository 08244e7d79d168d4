"""Per-session state machine driver.

One engine serves every session of an agent definition. A turn loads the
session's conversation state, works on a private copy, applies at most
`MAX_TRANSITIONS_PER_TURN` transitions and saves the copy back at every
transition and at the end of the turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentrt.agents.types import AgentDefinition
from agentrt.config import get_settings
from agentrt.decisions.boundary import DecisionBoundary, DecisionOutcome
from agentrt.dsl import ast
from agentrt.dsl.expressions import evaluate, truthy
from agentrt.errors import (
    ConstraintViolation,
    DecisionError,
    ExecutionError,
    ModuleLoadError,
    StateTimeoutError,
    StateWriteError,
    TransitionError,
)
from agentrt.events.models import (
    EVENT_MODULE_LOADED,
    EVENT_TRANSITION,
    EVENT_VIOLATION,
    AuditRecord,
)
from agentrt.events.writer import AuditSink, MemoryAuditSink
from agentrt.logging import turn_context
from agentrt.memory.conversation import STATUS_TERMINATED, ConversationState
from agentrt.memory.state_store import InMemoryStateStore, StateStore
from agentrt.modules.catalog import Catalog
from agentrt.modules.loader import load_module
from agentrt.modules.namespace import Namespace
from agentrt.modules.types import Module
from agentrt.orchestrator.interpreter import (
    ERROR_EVENT,
    TIMEOUT_EVENT,
    VIOLATION_EVENT,
    BehaviorInterpreter,
    Event,
    Flow,
    TurnContext,
    aliases_in_exprs,
)
from agentrt.policy.engine import ConstraintEnforcer
from agentrt.providers.base import Reasoner
from agentrt.tools.registry import CapabilityRegistry
from agentrt.tools.runtime import ExecutionDispatcher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnResult:
    session_id: str
    state: str | None
    version: int
    path: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    decisions: list[DecisionOutcome] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    diagnostics: list[dict[str, Any]] = field(default_factory=list)
    violations: list[dict[str, Any]] = field(default_factory=list)
    audit: list[AuditRecord] = field(default_factory=list)
    fields: dict[str, Any] = field(default_factory=dict)
    terminated: bool = False
    # Dwell limit of the state the session now waits in, if it declares one.
    timeout: float | None = None


class StateMachineEngine:
    def __init__(
        self,
        definition: AgentDefinition,
        *,
        reasoner: Reasoner,
        registry: CapabilityRegistry,
        store: StateStore | None = None,
        audit_sink: AuditSink | None = None,
        catalog: Catalog | None = None,
        bundle_dir: Path | None = None,
        max_transitions: int | None = None,
    ) -> None:
        settings = get_settings()
        self.definition = definition
        self.store: StateStore = store if store is not None else InMemoryStateStore()
        self.audit_sink: AuditSink = audit_sink if audit_sink is not None else MemoryAuditSink()
        self.catalog = catalog
        self.bundle_dir = bundle_dir
        self.max_transitions = (
            max_transitions if max_transitions is not None else settings.max_transitions_per_turn
        )
        self.namespace = Namespace(definition)
        self._alias_modules: dict[str, Module] = {}
        self._alias_locks: dict[str, asyncio.Lock] = {}
        self.boundary = DecisionBoundary(reasoner)
        self.dispatcher = ExecutionDispatcher(registry)
        self.enforcer = ConstraintEnforcer(definition.constraints, self.resolve_function)
        self.interpreter = BehaviorInterpreter(
            definition,
            boundary=self.boundary,
            dispatcher=self.dispatcher,
            enforcer=self.enforcer,
            ensure_module=self.ensure_module,
            lookup_module=self.loaded_module,
            functions=self.resolve_function,
        )
        constraint_exprs: list[ast.Expr | None] = []
        for constraint in definition.constraints:
            if isinstance(constraint, ast.Prohibition):
                constraint_exprs.append(constraint.where)
            elif isinstance(constraint, ast.ConditionalRule):
                constraint_exprs.append(constraint.predicate)
        self._ambient_aliases = sorted(
            alias
            for alias in aliases_in_exprs(
                [*constraint_exprs, *(h.guard for h in definition.handlers)]
            )
            if alias in definition.modules
        )

    # Modules

    def loaded_module(self, alias: str) -> Module | None:
        module = self._alias_modules.get(alias)
        if module is not None:
            return module
        return self.namespace.module(alias)

    def resolve_function(self, name: str) -> ast.FunctionDef | None:
        prefix, dot, export = name.rpartition(".")
        if not dot:
            return None
        module = self.loaded_module(prefix)
        return module.functions.get(export) if module is not None else None

    async def ensure_module(self, alias: str, loaded: list[str] | None = None) -> Module:
        """Load and merge the module behind an alias on first use.

        Only the call that performs the merge appends `alias` to `loaded`;
        concurrent callers wait on the alias lock and get the merged module.
        """
        module = self._alias_modules.get(alias)
        if module is not None:
            return module
        lock = self._alias_locks.setdefault(alias, asyncio.Lock())
        async with lock:
            module = self._alias_modules.get(alias)
            if module is not None:
                return module
            locator = self.definition.modules[alias]
            module = await load_module(locator, bundle_dir=self.bundle_dir, catalog=self.catalog)
            self.namespace.merge(module)
            self._alias_modules[alias] = module
        if loaded is not None:
            loaded.append(alias)
        return module

    # Turns

    async def process(self, session_id: str, event: Event) -> TurnResult:
        """Apply one external event to a session and persist the outcome."""
        with turn_context(session_id, agent=self.definition.name):
            return await self._process(session_id, event)

    async def _process(self, session_id: str, event: Event) -> TurnResult:
        loaded: list[str] = []
        for alias in self._ambient_aliases:
            await self.ensure_module(alias, loaded)
        stored = self.store.load(session_id)
        fresh = stored is None or stored.status == STATUS_TERMINATED
        if stored is not None and fresh:
            self.store.reset(session_id)
        if fresh:
            state = ConversationState(
                session_id=session_id,
                agent=self.definition.name,
                fields=self.definition.defaults(),
            )
        else:
            state = stored.copy()
        state.turn += 1
        turn = TurnContext(
            definition=self.definition, state=state, event=event, loaded_modules=loaded
        )
        try:
            if fresh:
                await self._enter(turn, self.definition.initial_state)
            if not turn.terminated:
                await self._handle(turn, event)
            synthesized = 0
            while turn.pending and not turn.terminated:
                if synthesized >= self.max_transitions:
                    turn.diagnose("pending_events_dropped", count=len(turn.pending))
                    break
                synthesized += 1
                pending = turn.pending.pop(0)
                turn.event = pending
                await self._handle(turn, pending)
            if not turn.terminated:
                turn.state = self.store.save(session_id, turn.state)
        finally:
            for alias in turn.loaded_modules:
                module = self._alias_modules[alias]
                turn.record(
                    EVENT_MODULE_LOADED,
                    "modules.loader",
                    {"alias": alias, "module": module.name, "locator": module.locator},
                )
            self.audit_sink.write(turn.audit)
        return self._result(turn)

    async def send(self, session_id: str, text: str) -> TurnResult:
        return await self.process(session_id, Event.input(text))

    def _result(self, turn: TurnContext) -> TurnResult:
        current = turn.state.current_state
        timeout = None
        if not turn.terminated and current is not None:
            timeout = self.definition.states[current].timeout
        return TurnResult(
            session_id=turn.state.session_id,
            state=current,
            version=turn.state.version,
            path=list(turn.path),
            outputs=list(turn.outputs),
            decisions=list(turn.decisions),
            actions=list(turn.actions),
            diagnostics=list(turn.diagnostics),
            violations=list(turn.violations),
            audit=list(turn.audit),
            fields=dict(turn.state.fields),
            terminated=turn.terminated,
            timeout=timeout,
        )

    async def _handle(self, turn: TurnContext, event: Event) -> None:
        current = turn.state.current_state
        if event.name == TIMEOUT_EVENT and event.payload.get("state") not in (None, current):
            turn.diagnose("stale_timeout", timed_out=event.payload.get("state"))
            return
        handler = self._match(turn, event)
        if handler is None:
            details: dict[str, Any] = {"event": event.name}
            if event.name == TIMEOUT_EVENT and current is not None:
                details["error"] = str(
                    StateTimeoutError(
                        f"state {current!r} timed out",
                        state=current,
                        timeout=self.definition.states[current].timeout or 0.0,
                    )
                )
            turn.diagnose("unhandled_event", **details)
            return
        flow = await self._run(turn, handler.block)
        await self._follow(turn, flow)

    def _match(self, turn: TurnContext, event: Event) -> ast.EventHandler | None:
        """First handler whose guard holds: state-scoped, then global, in declaration order."""
        current = turn.state.current_state
        if current is None:
            return None
        for handler in self.definition.handlers_for(current, event.name):
            if handler.guard is not None:
                if not truthy(evaluate(handler.guard, turn.scope(), self.resolve_function)):
                    continue
            return handler
        return None

    async def _run(self, turn: TurnContext, block: ast.BehaviorBlock) -> Flow:
        """Run a block, turning unrecovered runtime errors into `error` events."""
        try:
            return await self.interpreter.run(block, turn)
        except ConstraintViolation as exc:
            self._violation(turn, exc)
            payload: dict[str, Any] = {"rule": exc.rule, "action": exc.action}
            return await self._recover(turn, VIOLATION_EVENT, exc, payload)
        except DecisionError as exc:
            payload = {"kind": "decision", "failure": exc.failure, "decision": exc.decision_id}
            return await self._recover(turn, ERROR_EVENT, exc, payload)
        except ExecutionError as exc:
            payload = {"kind": exc.kind, "capability": exc.capability, "attempts": exc.attempts}
            return await self._recover(turn, ERROR_EVENT, exc, payload)
        except StateWriteError as exc:
            return await self._recover(turn, ERROR_EVENT, exc, {"kind": "state_write"})
        except ModuleLoadError as exc:
            return await self._recover(turn, ERROR_EVENT, exc, {"kind": "module_load"})

    async def _recover(
        self,
        turn: TurnContext,
        name: str,
        exc: Exception,
        payload: dict[str, Any],
    ) -> Flow:
        if turn.recovering:
            raise exc
        event = Event(name, text=turn.event.text, payload={**payload, "message": str(exc)})
        original, turn.event = turn.event, event
        try:
            handler = self._match(turn, event)
            if handler is None:
                logger.warning("Unrecovered %s in %s: %s", name, turn.state.current_state, exc)
                raise exc
            turn.recovering = True
            try:
                return await self.interpreter.run(handler.block, turn)
            finally:
                turn.recovering = False
        finally:
            turn.event = original

    @staticmethod
    def _violation(turn: TurnContext, exc: ConstraintViolation) -> None:
        entry = {"rule": exc.rule, "action": exc.action, "message": str(exc)}
        turn.violations.append(entry)
        turn.record(EVENT_VIOLATION, "policy", entry)

    async def _follow(self, turn: TurnContext, flow: Flow) -> None:
        if flow.transition is not None:
            await self._transition(turn, flow.transition)

    async def _transition(self, turn: TurnContext, target: str) -> None:
        source = turn.state.current_state
        if source is None:
            raise TransitionError("session has no current state", construct="transition_to")
        allowed = self.definition.states[source].transitions
        if target not in allowed:
            raise TransitionError(
                f"{source!r} does not allow a transition to {target!r}",
                construct=f"state {source}",
            )
        if turn.transitions >= self.max_transitions:
            raise TransitionError(
                f"more than {self.max_transitions} transitions in one turn",
                construct=f"state {source}",
            )
        turn.transitions += 1

        exit_hook = self.definition.hook(source, "exit")
        if exit_hook is not None:
            flow = await self._run(turn, exit_hook)
            if flow.transition is not None:
                turn.diagnose("exit_transition_ignored", requested=flow.transition)
        try:
            self.enforcer.verify_exit(
                source, turn.scope(), turn.state.obligations, turn.state.satisfied
            )
        except ConstraintViolation as exc:
            self._violation(turn, exc)
            raise
        turn.state.retries = {}
        turn.state.current_state = target
        turn.path.append(target)
        turn.record(EVENT_TRANSITION, "orchestrator", {"from": source, "to": target})
        logger.info("Session %s: %s -> %s", turn.state.session_id, source, target)
        turn.state = self.store.save(turn.state.session_id, turn.state)
        await self._enter(turn, target)

    async def _enter(self, turn: TurnContext, name: str) -> None:
        definition = self.definition.states[name]
        if turn.state.current_state != name:
            turn.state.current_state = name
            turn.path.append(name)
            turn.record(EVENT_TRANSITION, "orchestrator", {"from": None, "to": name})
        hook = self.definition.hook(name, "enter")
        flow = await self._run(turn, hook) if hook is not None else Flow()
        if definition.final:
            await self._terminate(turn, definition)
            return
        if flow.transition is not None:
            await self._transition(turn, flow.transition)
        elif definition.auto:
            await self._transition(turn, definition.transitions[0])

    async def _terminate(self, turn: TurnContext, definition: ast.StateDefinition) -> None:
        for capability in definition.cleanup:
            call = ast.ExecutionCall(capability=capability)
            try:
                outcome = await self.dispatcher.execute(
                    call, turn.scope(), resources=self.definition.resources
                )
            except ExecutionError as exc:
                turn.diagnose("cleanup_failed", capability=capability, error=str(exc))
                continue
            turn.actions.append(capability)
            turn.record(
                "execution",
                "tools.runtime",
                {"capability": capability, "adapter": outcome.adapter, "cleanup": True},
            )
        turn.state.status = STATUS_TERMINATED
        session_id = turn.state.session_id
        turn.state = self.store.save(session_id, turn.state)
        self.store.archive(session_id)
        turn.terminated = True
        turn.record("session.terminated", "orchestrator", {"state": definition.name})
        logger.info("Session %s terminated in %s", session_id, definition.name)
