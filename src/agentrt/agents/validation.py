"""Static checks applied to parsed agent and module documents."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from agentrt.agents.types import AgentDefinition
from agentrt.dsl import ast
from agentrt.dsl.domains import Domain
from agentrt.dsl.expressions import BUILTIN_ARITY, TEMPLATE_PLACEHOLDER, compile_pattern
from agentrt.errors import ValidationError

RESERVED_NAMES = frozenset({"input", "event", "state", "retries", "args", "value"})


@dataclass(slots=True)
class CheckContext:
    """What a behavior block may legally reference."""

    schema: Mapping[str, ast.FieldSpec]
    resources: Mapping[str, str]
    states: Mapping[str, ast.StateDefinition]
    templates: set[str]
    module_aliases: set[str]
    # Callable name to parameter count.
    functions: Mapping[str, int] = field(default_factory=dict)
    decisions: dict[str, Domain] = field(default_factory=dict)
    allowed_transitions: tuple[str, ...] | None = None
    allow_invoke: bool = True
    # False while checking a module with no host agent; host bindings are unknown.
    host_known: bool = True
    owner: str = ""


def _fail(message: str, construct: str, line: int = 0) -> ValidationError:
    return ValidationError(message, construct=construct, line=line)


def _check_literal(domain: Domain, value: Any, construct: str, line: int) -> None:
    checked = domain.check(value)
    if not checked.ok:
        raise _fail(checked.reason, construct, line)


def _iter_exprs(stmt: ast.Statement) -> Iterable[ast.Expr]:
    if isinstance(stmt, ast.DecisionSpec) and stmt.constraint is not None:
        yield stmt.constraint
    elif isinstance(stmt, ast.ExecutionCall):
        yield from stmt.args
        yield from (value for _, value in stmt.kwargs)
    elif isinstance(stmt, (ast.SetField, ast.Let)):
        yield stmt.value
    elif isinstance(stmt, ast.If):
        yield from (cond for cond, _ in stmt.branches)
    elif isinstance(stmt, ast.Match):
        yield stmt.subject
    elif isinstance(stmt, ast.ForEach):
        yield stmt.iterable


def _iter_calls(expr: ast.Expr) -> Iterable[ast.Call]:
    if isinstance(expr, ast.Call):
        yield expr
        for arg in expr.args:
            yield from _iter_calls(arg)
    elif isinstance(expr, ast.Attribute):
        yield from _iter_calls(expr.target)
    elif isinstance(expr, ast.ListExpr):
        for item in expr.items:
            yield from _iter_calls(item)
    elif isinstance(expr, ast.Compare):
        yield from _iter_calls(expr.left)
        yield from _iter_calls(expr.right)
    elif isinstance(expr, ast.BoolOp):
        for item in expr.operands:
            yield from _iter_calls(item)
    elif isinstance(expr, ast.Not):
        yield from _iter_calls(expr.operand)


def _check_arity(call: ast.Call, expected: int, construct: str, line: int) -> None:
    if len(call.args) != expected:
        raise _fail(
            f"{call.func}() takes {expected} argument(s), got {len(call.args)}", construct, line
        )


def check_expression(expr: ast.Expr | None, ctx: CheckContext, construct: str, line: int) -> None:
    if expr is None:
        return
    for call in _iter_calls(expr):
        if call.func in BUILTIN_ARITY:
            _check_arity(call, BUILTIN_ARITY[call.func], construct, line)
            pattern = call.args[1] if call.func == "matches" else None
            if isinstance(pattern, ast.Literal) and isinstance(pattern.value, str):
                try:
                    compile_pattern(pattern.value)
                except ValidationError as exc:
                    raise _fail(str(exc), construct, line) from exc
            continue
        if call.func in ctx.functions:
            _check_arity(call, ctx.functions[call.func], construct, line)
            continue
        prefix, _, _ = call.func.partition(".")
        if "." in call.func and prefix in ctx.module_aliases:
            continue
        raise _fail(f"unknown function {call.func!r}", construct, line)


def _check_template_ref(name: str, ctx: CheckContext, line: int) -> None:
    if name in ctx.templates:
        return
    prefix, dot, _ = name.partition(".")
    if dot and (prefix in ctx.module_aliases or not ctx.host_known):
        return
    raise _fail(f"unknown template {name!r}", "say", line)


def _check_capability(name: str, ctx: CheckContext, construct: str, line: int) -> None:
    if name not in ctx.resources:
        raise _fail(f"capability {name!r} has no resource binding", construct, line)


def check_block(block: ast.BehaviorBlock, ctx: CheckContext) -> None:
    """Check every statement of a block, descending into nested blocks."""
    for stmt in block.walk():
        construct = f"{ctx.owner}:{type(stmt).__name__}" if ctx.owner else type(stmt).__name__
        line = getattr(stmt, "line", 0)
        for expr in _iter_exprs(stmt):
            check_expression(expr, ctx, construct, line)
        if isinstance(stmt, ast.DecisionSpec):
            for option in (stmt.fallback, stmt.on_low_confidence, stmt.on_timeout):
                if option is not None:
                    _check_literal(stmt.domain, option.value, f"decide {stmt.id}", line)
        elif isinstance(stmt, ast.ExecutionCall):
            if ctx.host_known:
                _check_capability(stmt.capability, ctx, f"call {stmt.capability}", line)
                if stmt.retry.fallback is not None:
                    _check_capability(stmt.retry.fallback, ctx, f"call {stmt.capability}", line)
        elif isinstance(stmt, ast.SetField):
            if not ctx.host_known:
                continue
            spec = ctx.schema.get(stmt.field)
            if spec is None:
                raise _fail(f"field {stmt.field!r} is not declared in memory", "set", line)
            if isinstance(stmt.value, ast.Literal) and stmt.value.value is not None:
                _check_literal(spec.domain, stmt.value.value, f"set {stmt.field}", line)
            elif isinstance(stmt.value, ast.Name) and stmt.value.name in ctx.decisions:
                source = ctx.decisions[stmt.value.name]
                if not spec.domain.accepts(source):
                    raise _fail(
                        f"decision domain {source} is not assignable to {spec.domain}",
                        f"set {stmt.field}",
                        line,
                    )
        elif isinstance(stmt, ast.Let):
            if stmt.name in RESERVED_NAMES:
                raise _fail(f"{stmt.name!r} is reserved", "let", line)
        elif isinstance(stmt, ast.TransitionTo):
            if not ctx.host_known:
                continue
            if stmt.target not in ctx.states:
                raise _fail(f"unknown state {stmt.target!r}", "transition_to", line)
            if ctx.allowed_transitions is not None and stmt.target not in ctx.allowed_transitions:
                raise _fail(
                    f"{stmt.target!r} is not an allowed transition",
                    f"{ctx.owner}:transition_to",
                    line,
                )
        elif isinstance(stmt, ast.Say):
            _check_template_ref(stmt.template, ctx, line)
        elif isinstance(stmt, ast.Invoke):
            if not ctx.allow_invoke:
                raise _fail("module behaviors cannot invoke other behaviors", "invoke", line)
            if stmt.module not in ctx.module_aliases:
                raise _fail(f"module {stmt.module!r} is not declared", "invoke", line)
        elif isinstance(stmt, ast.Retry):
            if ctx.host_known and stmt.field not in ctx.schema:
                raise _fail(f"field {stmt.field!r} is not declared in memory", "retry", line)


def _collect_decisions(blocks: Iterable[ast.BehaviorBlock]) -> dict[str, Domain]:
    decisions: dict[str, Domain] = {}
    for block in blocks:
        for stmt in block.walk():
            if isinstance(stmt, ast.DecisionSpec):
                existing = decisions.get(stmt.id)
                if existing is not None and existing != stmt.domain:
                    raise _fail(
                        f"decision {stmt.id!r} redeclared with a different domain",
                        f"decide {stmt.id}",
                        stmt.line,
                    )
                decisions[stmt.id] = stmt.domain
    return decisions


def _scratch_names(blocks: Iterable[ast.BehaviorBlock]) -> set[str]:
    names: set[str] = set()
    for block in blocks:
        for stmt in block.walk():
            if isinstance(stmt, ast.DecisionSpec):
                names.add(stmt.id)
            elif isinstance(stmt, ast.Let):
                names.add(stmt.name)
            elif isinstance(stmt, ast.ExecutionCall) and stmt.target:
                names.add(stmt.target)
            elif isinstance(stmt, ast.ForEach):
                names.add(stmt.var)
    return names


def _check_states(doc: ast.AgentDocument) -> dict[str, ast.StateDefinition]:
    states: dict[str, ast.StateDefinition] = {}
    for state in doc.states:
        if state.name in states:
            raise _fail(f"duplicate state {state.name!r}", "state", state.line)
        if state.name == ast.GLOBAL_STATE:
            raise _fail("'*' is not a valid state name", "state", state.line)
        states[state.name] = state
    if not states:
        raise _fail("agent declares no states", f"agent {doc.name}", doc.line)
    initial = [s for s in states.values() if s.initial]
    if len(initial) != 1:
        raise _fail(
            f"exactly one initial state required, found {len(initial)}",
            f"agent {doc.name}",
            doc.line,
        )
    for state in states.values():
        construct = f"state {state.name}"
        for target in state.transitions:
            if target not in states:
                raise _fail(f"transition target {target!r} does not exist", construct, state.line)
        if state.final and state.transitions:
            raise _fail("final states cannot declare transitions", construct, state.line)
        if state.final and state.auto:
            raise _fail("final states cannot auto-transition", construct, state.line)
        if state.auto and not state.transitions:
            raise _fail("auto-transition states need a transition target", construct, state.line)
        for capability in state.cleanup:
            if capability not in doc.resources:
                raise _fail(
                    f"cleanup capability {capability!r} has no resource binding",
                    construct,
                    state.line,
                )
        if state.cleanup and not state.final:
            raise _fail("only final states declare cleanup actions", construct, state.line)
    for state in states.values():
        if not state.auto:
            continue
        seen = [state.name]
        target = state.transitions[0]
        while states[target].auto:
            if target in seen:
                chain = " -> ".join([*seen, target])
                raise _fail(f"auto-transition cycle: {chain}", f"state {state.name}", state.line)
            seen.append(target)
            target = states[target].transitions[0]
    return states


def _check_schema(doc: ast.AgentDocument) -> dict[str, ast.FieldSpec]:
    schema: dict[str, ast.FieldSpec] = {}
    for spec in doc.fields:
        if spec.name in schema:
            raise _fail(f"duplicate field {spec.name!r}", "memory", spec.line)
        if spec.name in RESERVED_NAMES:
            raise _fail(f"{spec.name!r} is reserved", "memory", spec.line)
        if spec.default is not None and spec.default.value is not None:
            _check_literal(spec.domain, spec.default.value, f"memory {spec.name}", spec.line)
        schema[spec.name] = spec
    return schema


def _check_templates(
    templates: Iterable[ast.Template],
    allowed_names: set[str],
    module_aliases: set[str],
) -> dict[str, ast.Template]:
    out: dict[str, ast.Template] = {}
    for template in templates:
        if template.name in out:
            raise _fail(f"duplicate template {template.name!r}", "templates", template.line)
        for match in TEMPLATE_PLACEHOLDER.finditer(template.text):
            root = match.group(1).split(".")[0]
            if root not in allowed_names and root not in module_aliases:
                raise _fail(
                    f"placeholder {{{match.group(1)}}} names nothing declared",
                    f"template {template.name}",
                    template.line,
                )
        out[template.name] = template
    return out


def _check_scenarios(
    scenarios: Iterable[ast.TestScenario],
    states: Mapping[str, ast.StateDefinition],
    schema: Mapping[str, ast.FieldSpec],
) -> None:
    for scenario in scenarios:
        construct = f"test {scenario.name!r}"
        named = list(scenario.expect_path or ())
        if scenario.expect_state is not None:
            named.append(scenario.expect_state)
        for state in named:
            if state not in states:
                raise _fail(f"unknown state {state!r}", construct, scenario.line)
        for key, _ in scenario.expect_values:
            if key not in schema:
                raise _fail(f"unknown field {key!r}", construct, scenario.line)


def validate_agent(doc: ast.AgentDocument) -> AgentDefinition:
    """Run every static check; the first violation aborts with ValidationError."""
    states = _check_states(doc)
    schema = _check_schema(doc)
    module_aliases = set(doc.modules)

    blocks = list(doc.hooks.values()) + [h.block for h in doc.handlers]
    decisions = _collect_decisions(blocks)
    scratch = _scratch_names(blocks)
    templates = _check_templates(
        doc.templates,
        set(schema) | scratch | RESERVED_NAMES,
        module_aliases,
    )

    def context(owner: str, allowed: tuple[str, ...] | None) -> CheckContext:
        return CheckContext(
            schema=schema,
            resources=doc.resources,
            states=states,
            templates=set(templates),
            module_aliases=module_aliases,
            decisions=decisions,
            allowed_transitions=allowed,
            owner=owner,
        )

    for (state_name, hook), block in doc.hooks.items():
        if state_name not in states:
            raise _fail(f"hook for unknown state {state_name!r}", f"on {hook}")
        check_block(block, context(f"{state_name}.{hook}", states[state_name].transitions))
    for handler in doc.handlers:
        if handler.is_global:
            ctx = context(f"on {handler.event}", None)
        else:
            if handler.state not in states:
                raise _fail(f"handler for unknown state {handler.state!r}", f"on {handler.event}")
            ctx = context(f"{handler.state}.{handler.event}", states[handler.state].transitions)
        check_expression(handler.guard, ctx, ctx.owner, handler.line)
        check_block(handler.block, ctx)

    base_ctx = context("constraints", None)
    for constraint in doc.constraints:
        if isinstance(constraint, ast.Prohibition):
            check_expression(constraint.where, base_ctx, constraint.label, constraint.line)
        elif isinstance(constraint, ast.ConditionalRule):
            check_expression(constraint.predicate, base_ctx, constraint.label, constraint.line)

    _check_scenarios(doc.scenarios, states, schema)

    initial = next(s.name for s in states.values() if s.initial)
    return AgentDefinition(
        name=doc.name,
        version=doc.version,
        role=doc.role,
        objective=doc.objective,
        resources=MappingProxyType(dict(doc.resources)),
        modules=MappingProxyType(dict(doc.modules)),
        schema=MappingProxyType(schema),
        states=MappingProxyType(states),
        initial_state=initial,
        hooks=MappingProxyType(dict(doc.hooks)),
        handlers=tuple(doc.handlers),
        templates=MappingProxyType(templates),
        constraints=tuple(doc.constraints),
        scenarios=tuple(doc.scenarios),
    )


def _definition_calls(definition: AgentDefinition) -> Iterable[tuple[ast.Call, str, int]]:
    """Every call an agent makes, with the construct and line it appears in."""
    blocks = [(f"{state}.{hook}", block) for (state, hook), block in definition.hooks.items()]
    blocks += [(f"on {handler.event}", handler.block) for handler in definition.handlers]
    for owner, block in blocks:
        for stmt in block.walk():
            for expr in _iter_exprs(stmt):
                for call in _iter_calls(expr):
                    yield call, owner, getattr(stmt, "line", 0)
    for handler in definition.handlers:
        if handler.guard is not None:
            for call in _iter_calls(handler.guard):
                yield call, f"on {handler.event}", handler.line
    for constraint in definition.constraints:
        expr: ast.Expr | None = None
        if isinstance(constraint, ast.Prohibition):
            expr = constraint.where
        elif isinstance(constraint, ast.ConditionalRule):
            expr = constraint.predicate
        if expr is not None:
            for call in _iter_calls(expr):
                yield call, constraint.label, constraint.line


def validate_module_document(
    doc: ast.ModuleDocument,
    host: AgentDefinition | None = None,
    aliases: Iterable[str] = (),
) -> None:
    """Check a module's exports, against the host agent when one is given.

    `aliases` are the host's names for this module; host calls through them
    must name an exported function with a matching parameter count.
    """
    function_names: dict[str, int] = {}
    for function in doc.functions:
        if function.name in function_names:
            raise _fail(f"duplicate function {function.name!r}", f"module {doc.name}", function.line)
        function_names[function.name] = len(function.params)
    templates = {t.name for t in doc.templates}
    if len(templates) != len(doc.templates):
        raise _fail("duplicate template", f"module {doc.name}", doc.line)
    exported = set(function_names)
    overlapping = (templates & set(doc.behaviors)) | (templates & exported) | (
        set(doc.behaviors) & exported
    )
    if overlapping:
        raise _fail(
            f"export names used twice: {', '.join(sorted(overlapping))}",
            f"module {doc.name}",
            doc.line,
        )

    ctx = CheckContext(
        schema=host.schema if host is not None else {},
        resources=host.resources if host is not None else {},
        states=host.states if host is not None else {},
        templates=templates,
        module_aliases=set(host.modules) if host is not None else set(),
        functions={f"{doc.name}.{name}": n for name, n in function_names.items()} | function_names,
        decisions=_collect_decisions(doc.behaviors.values()),
        allow_invoke=False,
        host_known=host is not None,
        owner=f"module {doc.name}",
    )
    for function in doc.functions:
        check_expression(function.body, ctx, f"function {function.name}", function.line)
    for block in doc.behaviors.values():
        check_block(block, ctx)

    if host is None:
        return
    host_aliases = set(aliases)
    for call, construct, line in _definition_calls(host):
        alias, dot, name = call.func.partition(".")
        if not dot or alias not in host_aliases:
            continue
        if name not in function_names:
            raise _fail(f"module {doc.name!r} exports no function {name!r}", construct, line)
        _check_arity(call, function_names[name], construct, line)
