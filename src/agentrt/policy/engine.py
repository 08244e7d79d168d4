"""Constraint enforcer for decisions and executions."""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from agentrt.dsl import ast
from agentrt.dsl.expressions import FunctionResolver, evaluate, truthy
from agentrt.errors import ConstraintViolation

logger = logging.getLogger(__name__)


class ConstraintEnforcer:
    """Evaluates an agent's constraints around each pending action.

    Prohibitions abort the action. Requirements look for their prerequisite
    in the ledger of actions already taken by the running behavior block.
    Conditional rules whose predicate holds add obligations that must be
    discharged before the current state is left.
    """

    def __init__(
        self,
        constraints: Iterable[ast.Constraint],
        functions: FunctionResolver | None = None,
    ) -> None:
        self.constraints = tuple(constraints)
        self.functions = functions
        self.prohibitions = [c for c in self.constraints if isinstance(c, ast.Prohibition)]
        self.requirements = [c for c in self.constraints if isinstance(c, ast.Requirement)]
        self.rules = [c for c in self.constraints if isinstance(c, ast.ConditionalRule)]

    def _holds(self, expr: ast.Expr, scope: Mapping[str, Any]) -> bool:
        return truthy(evaluate(expr, scope, self.functions))

    def check(
        self,
        action: str,
        context: Mapping[str, Any],
        ledger: Sequence[str],
        *,
        args: Mapping[str, Any] | None = None,
        satisfied: Iterable[str] = (),
    ) -> list[str]:
        """Allow or reject `action`; returns obligations newly activated by it."""
        scope = {**context, "args": dict(args or {})}
        for prohibition in self.prohibitions:
            if prohibition.action != action:
                continue
            if prohibition.where is None or self._holds(prohibition.where, scope):
                logger.warning("Action %s blocked by %s", action, prohibition.label)
                raise ConstraintViolation(
                    f"{action!r} is prohibited", rule=prohibition.label, action=action
                )
        for requirement in self.requirements:
            if requirement.before == action and requirement.action not in ledger:
                raise ConstraintViolation(
                    f"{action!r} requires {requirement.action!r} earlier in the same block",
                    rule=requirement.label,
                    action=action,
                )
        return self.activate(context, satisfied)

    def activate(self, context: Mapping[str, Any], satisfied: Iterable[str] = ()) -> list[str]:
        """Obligations whose rule predicate currently holds and is not yet met."""
        done = set(satisfied)
        return [
            rule.action
            for rule in self.rules
            if rule.action not in done and self._holds(rule.predicate, context)
        ]

    @staticmethod
    def discharge(action: str, obligations: list[str]) -> bool:
        if action in obligations:
            obligations[:] = [item for item in obligations if item != action]
            return True
        return False

    def verify_exit(
        self,
        state: str,
        context: Mapping[str, Any],
        obligations: Sequence[str],
        satisfied: Iterable[str] = (),
    ) -> None:
        pending = list(dict.fromkeys([*obligations, *self.activate(context, satisfied)]))
        if pending:
            raise ConstraintViolation(
                f"leaving {state!r} with undischarged obligations: {', '.join(pending)}",
                rule=f"when ... require {pending[0]}",
                action=pending[0],
            )
