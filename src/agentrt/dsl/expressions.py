"""Side-effect free evaluation of notation expressions over a context snapshot."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

from agentrt.dsl import ast
from agentrt.dsl.domains import NumberDomain
from agentrt.errors import ValidationError

MAX_CALL_DEPTH = 16

FunctionResolver = Callable[[str], "ast.FunctionDef | None"]

_NUMBER = NumberDomain()


def _len(value: Any) -> int:
    if value is None:
        return 0
    try:
        return len(value)
    except TypeError:
        return 0


def _str_op(op: Callable[[str], str]) -> Callable[[Any], Any]:
    def apply(value: Any) -> Any:
        return op(value) if isinstance(value, str) else value

    return apply


def _number(value: Any) -> Any:
    checked = _NUMBER.check(value)
    return checked.value if checked.ok else None


def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValidationError(f"invalid pattern {pattern!r}: {exc}", construct="matches") from exc


def _matches(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    return compile_pattern(pattern).fullmatch(value.strip()) is not None


def _has(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item.lower() in container.lower()
    if isinstance(container, (list, tuple, dict)):
        return item in container
    return False


BUILTINS: dict[str, tuple[int, Callable[..., Any]]] = {
    "len": (1, _len),
    "lower": (1, _str_op(str.lower)),
    "upper": (1, _str_op(str.upper)),
    "trim": (1, _str_op(str.strip)),
    "number": (1, _number),
    "is_number": (1, lambda value: _number(value) is not None),
    "matches": (2, _matches),
    "has": (1, _has),
    "contains": (2, _contains),
}
# `retries(field)` reads the attempt counters and is resolved by the evaluator.
BUILTIN_NAMES = frozenset(BUILTINS) | {"retries"}
BUILTIN_ARITY = {name: arity for name, (arity, _) in BUILTINS.items()} | {"retries": 1}


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return bool(left == right)
    if op == "!=":
        return bool(left != right)
    if op in {"in", "not in"}:
        try:
            found = left in right if right is not None else False
        except TypeError:
            found = False
        return found if op == "in" else not found
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return bool(left < right)
        if op == "<=":
            return bool(left <= right)
        if op == ">":
            return bool(left > right)
        if op == ">=":
            return bool(left >= right)
    except TypeError:
        return False
    raise ValidationError(f"unknown operator {op!r}", construct="expression")


def evaluate(
    expr: ast.Expr,
    scope: Mapping[str, Any],
    functions: FunctionResolver | None = None,
    _depth: int = 0,
) -> Any:
    """Evaluate an expression; unknown names read as null."""
    if isinstance(expr, ast.Literal):
        return expr.value
    if isinstance(expr, ast.Name):
        return scope.get(expr.name)
    if isinstance(expr, ast.Attribute):
        target = evaluate(expr.target, scope, functions, _depth)
        if isinstance(target, Mapping):
            return target.get(expr.attr)
        return None
    if isinstance(expr, ast.ListExpr):
        return [evaluate(item, scope, functions, _depth) for item in expr.items]
    if isinstance(expr, ast.Compare):
        return _compare(
            expr.op,
            evaluate(expr.left, scope, functions, _depth),
            evaluate(expr.right, scope, functions, _depth),
        )
    if isinstance(expr, ast.BoolOp):
        if expr.op == "and":
            return all(truthy(evaluate(item, scope, functions, _depth)) for item in expr.operands)
        return any(truthy(evaluate(item, scope, functions, _depth)) for item in expr.operands)
    if isinstance(expr, ast.Not):
        return not truthy(evaluate(expr.operand, scope, functions, _depth))
    if isinstance(expr, ast.Call):
        args = [evaluate(item, scope, functions, _depth) for item in expr.args]
        return _call(expr.func, args, scope, functions, _depth)
    raise ValidationError(f"cannot evaluate {type(expr).__name__}", construct="expression")


def _call(
    func: str,
    args: list[Any],
    scope: Mapping[str, Any],
    functions: FunctionResolver | None,
    depth: int,
) -> Any:
    if func == "retries":
        counters = scope.get("retries")
        if not isinstance(counters, Mapping) or len(args) != 1:
            return 0
        return int(counters.get(str(args[0]), 0))
    builtin = BUILTINS.get(func)
    if builtin is not None:
        arity, impl = builtin
        if len(args) != arity:
            raise ValidationError(
                f"{func}() takes {arity} argument(s), got {len(args)}",
                construct="expression",
            )
        return impl(*args)
    definition = functions(func) if functions is not None else None
    if definition is None:
        raise ValidationError(f"unknown function {func!r}", construct="expression")
    if len(args) != len(definition.params):
        raise ValidationError(
            f"{func}() takes {len(definition.params)} argument(s), got {len(args)}",
            construct="expression",
        )
    if depth >= MAX_CALL_DEPTH:
        raise ValidationError(f"call depth exceeded in {func}()", construct="expression")
    local = dict(zip(definition.params, args, strict=True))
    prefix = func.rpartition(".")[0]
    inner = scoped_resolver(functions, prefix) if prefix else functions
    return evaluate(definition.body, local, inner, depth + 1)


def scoped_resolver(functions: FunctionResolver | None, prefix: str) -> FunctionResolver:
    """Resolve bare names as `<prefix>.<name>` first, so module code sees its own functions."""

    def resolve(name: str) -> ast.FunctionDef | None:
        if functions is None:
            return None
        if "." not in name:
            found = functions(f"{prefix}.{name}")
            if found is not None:
                return found
        return functions(name)

    return resolve


def truthy(value: Any) -> bool:
    return _has(value) and value is not False and value != 0


def render_template(text: str, scope: Mapping[str, Any]) -> str:
    """Fill `{name}` and `{name.attr}` placeholders; missing values render empty."""

    def replace(match: re.Match[str]) -> str:
        parts = match.group(1).split(".")
        value: Any = scope.get(parts[0])
        for attr in parts[1:]:
            value = value.get(attr) if isinstance(value, Mapping) else None
        return "" if value is None else str(value)

    return TEMPLATE_PLACEHOLDER.sub(replace, text)


TEMPLATE_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}")
