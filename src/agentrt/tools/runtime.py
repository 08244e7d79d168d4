"""Execution dispatcher: resolves capabilities and runs call-site retry policies."""

import asyncio
import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from agentrt.config import get_settings
from agentrt.dsl import ast
from agentrt.dsl.expressions import FunctionResolver, evaluate
from agentrt.errors import ExecutionError
from agentrt.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

# Kinds that another identical attempt cannot fix.
NON_TRANSIENT_KINDS = frozenset({"validation", "permission", "not_found"})


def classify_failure(exc: BaseException) -> str:
    """Map an adapter exception onto an execution error kind."""
    if isinstance(exc, ExecutionError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in {401, 403}:
            return "permission"
        if status == 404:
            return "not_found"
        if status in {400, 409, 422}:
            return "validation"
        return "network" if status >= 500 or status == 429 else "generic"
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return "network"
    if isinstance(exc, PermissionError):
        return "permission"
    if isinstance(exc, (LookupError, FileNotFoundError)):
        return "not_found"
    if isinstance(exc, (ValueError, TypeError)):
        return "validation"
    return "generic"


@dataclass(slots=True)
class Attempt:
    adapter: str
    number: int
    error_kind: str | None = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "adapter": self.adapter,
            "attempt": self.number,
            "error_kind": self.error_kind,
            "error": self.error,
        }


@dataclass(slots=True)
class ExecutionOutcome:
    capability: str
    result: Any
    adapter: str
    attempts: list[Attempt] = field(default_factory=list)
    used_fallback: bool = False
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)


class ExecutionFailed(ExecutionError):
    """Carries the attempt history of a call whose policy was exhausted."""

    def __init__(self, message: str, *, kind: str, capability: str, attempts: list[Attempt]) -> None:
        super().__init__(message, kind=kind, capability=capability, attempts=len(attempts))
        self.history = attempts


def evaluate_arguments(
    call: ast.ExecutionCall,
    context: Mapping[str, Any],
    functions: FunctionResolver | None = None,
) -> tuple[list[Any], dict[str, Any]]:
    args = [evaluate(expr, context, functions) for expr in call.args]
    kwargs = {key: evaluate(expr, context, functions) for key, expr in call.kwargs}
    return args, kwargs


class ExecutionDispatcher:
    def __init__(self, registry: CapabilityRegistry, *, timeout: float | None = None) -> None:
        self.registry = registry
        self.timeout = timeout if timeout is not None else get_settings().execution_timeout_seconds

    async def _invoke(
        self,
        resources: Mapping[str, str],
        capability: str,
        args: list[Any],
        kwargs: dict[str, Any],
    ) -> tuple[str, Any]:
        handle = resources.get(capability)
        if handle is None:
            raise ExecutionError(
                f"capability {capability!r} has no resource binding",
                kind="not_found",
                capability=capability,
            )
        adapter = self.registry.get(handle)
        if adapter is None:
            raise ExecutionError(
                f"no adapter registered for {handle!r}", kind="not_found", capability=capability
            )
        # Adapters get copies so they cannot alias session values.
        result = await asyncio.wait_for(
            adapter.handler(copy.deepcopy(args), copy.deepcopy(kwargs)), timeout=self.timeout
        )
        return handle, result

    async def _run_policy(
        self,
        resources: Mapping[str, str],
        capability: str,
        args: list[Any],
        kwargs: dict[str, Any],
        tries: int,
        delay: float,
        history: list[Attempt],
    ) -> tuple[str, Any] | None:
        for number in range(1, tries + 1):
            try:
                return await self._invoke(resources, capability, args, kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                kind = classify_failure(exc)
                history.append(
                    Attempt(resources.get(capability, capability), number, kind, str(exc))
                )
                logger.warning(
                    "Capability %s attempt %d/%d failed (%s): %s",
                    capability,
                    number,
                    tries,
                    kind,
                    exc,
                )
                if kind in NON_TRANSIENT_KINDS:
                    return None
                if number < tries and delay > 0:
                    await asyncio.sleep(delay)
        return None

    async def execute(
        self,
        call: ast.ExecutionCall,
        context: Mapping[str, Any],
        *,
        resources: Mapping[str, str],
        functions: FunctionResolver | None = None,
    ) -> ExecutionOutcome:
        """Run a call with exactly the retry policy its call site declares.

        Never touches conversation state; the caller applies any result.
        """
        args, kwargs = evaluate_arguments(call, context, functions)
        history: list[Attempt] = []
        policy = call.retry
        invoked = await self._run_policy(
            resources, call.capability, args, kwargs, 1 + policy.retries, policy.delay, history
        )
        used_fallback = False
        if invoked is None and policy.fallback is not None:
            used_fallback = True
            invoked = await self._run_policy(
                resources, policy.fallback, args, kwargs, 1, 0.0, history
            )
        if invoked is None:
            last = history[-1]
            raise ExecutionFailed(
                f"call {call.capability!r} failed after {len(history)} attempt(s): {last.error}",
                kind=last.error_kind or "generic",
                capability=call.capability,
                attempts=history,
            )
        handle, result = invoked
        history.append(Attempt(handle, len(history) + 1))
        return ExecutionOutcome(
            capability=call.capability,
            result=result,
            adapter=handle,
            attempts=history,
            used_fallback=used_fallback,
            args=args,
            kwargs=kwargs,
        )
