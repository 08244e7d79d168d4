import asyncio
from typing import Any

import httpx
import pytest

from agentrt.dsl import ast
from agentrt.errors import ExecutionError
from agentrt.tools.registry import CapabilityRegistry
from agentrt.tools.runtime import ExecutionDispatcher, ExecutionFailed, classify_failure

RESOURCES = {"lookup": "crm.lookup", "backup": "crm.cache"}


def _call(**policy: Any) -> ast.ExecutionCall:
    return ast.ExecutionCall(
        capability="lookup",
        kwargs=(("customer_id", ast.Name("customer_id")),),
        retry=ast.RetryPolicy(**policy),
    )


def _flaky(failures: list[BaseException], result: Any = "ok"):
    calls: list[dict[str, Any]] = []

    async def handler(args: list[Any], kwargs: dict[str, Any]) -> Any:
        calls.append(kwargs)
        if failures:
            raise failures.pop(0)
        return result

    return handler, calls


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://crm.test/customers/1")
    return httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(status, request=request)
    )


def test_classify_failure() -> None:
    assert classify_failure(_status_error(401)) == "permission"
    assert classify_failure(_status_error(404)) == "not_found"
    assert classify_failure(_status_error(422)) == "validation"
    assert classify_failure(_status_error(503)) == "network"
    assert classify_failure(_status_error(429)) == "network"
    assert classify_failure(_status_error(418)) == "generic"
    assert classify_failure(httpx.ConnectError("refused")) == "network"
    assert classify_failure(asyncio.TimeoutError()) == "network"
    assert classify_failure(PermissionError()) == "permission"
    assert classify_failure(KeyError("x")) == "not_found"
    assert classify_failure(ValueError("x")) == "validation"
    assert classify_failure(RuntimeError("x")) == "generic"
    assert classify_failure(ExecutionError("x", kind="permission")) == "permission"


@pytest.mark.asyncio
async def test_success_passes_evaluated_arguments() -> None:
    registry = CapabilityRegistry()
    handler, calls = _flaky([], result={"name": "Ada"})
    registry.register("crm.lookup", handler)
    dispatcher = ExecutionDispatcher(registry, timeout=1)

    outcome = await dispatcher.execute(_call(), {"customer_id": "12345678"}, resources=RESOURCES)

    assert outcome.result == {"name": "Ada"}
    assert outcome.adapter == "crm.lookup"
    assert outcome.used_fallback is False
    assert calls == [{"customer_id": "12345678"}]
    assert [a.error_kind for a in outcome.attempts] == [None]


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    registry = CapabilityRegistry()
    handler, calls = _flaky([httpx.ConnectError("down"), httpx.ConnectError("down")])
    registry.register("crm.lookup", handler)
    dispatcher = ExecutionDispatcher(registry, timeout=1)

    outcome = await dispatcher.execute(_call(retries=2, delay=0.001), {}, resources=RESOURCES)

    assert outcome.result == "ok"
    assert len(calls) == 3
    assert [a.error_kind for a in outcome.attempts] == ["network", "network", None]


@pytest.mark.asyncio
async def test_no_retries_beyond_declared_policy() -> None:
    registry = CapabilityRegistry()
    handler, calls = _flaky([httpx.ConnectError("down")] * 5)
    registry.register("crm.lookup", handler)
    dispatcher = ExecutionDispatcher(registry, timeout=1)

    with pytest.raises(ExecutionFailed) as exc_info:
        await dispatcher.execute(_call(retries=1), {}, resources=RESOURCES)

    assert len(calls) == 2
    assert exc_info.value.kind == "network"
    assert exc_info.value.attempts == 2
    assert len(exc_info.value.history) == 2


@pytest.mark.asyncio
async def test_non_transient_failure_skips_retries_and_uses_fallback() -> None:
    registry = CapabilityRegistry()
    primary, primary_calls = _flaky([ValueError("bad id")] * 3)
    backup, backup_calls = _flaky([], result="cached")
    registry.register("crm.lookup", primary)
    registry.register("crm.cache", backup)
    dispatcher = ExecutionDispatcher(registry, timeout=1)

    outcome = await dispatcher.execute(
        _call(retries=2, fallback="backup"), {}, resources=RESOURCES
    )

    assert len(primary_calls) == 1
    assert len(backup_calls) == 1
    assert outcome.used_fallback is True
    assert outcome.adapter == "crm.cache"
    assert outcome.result == "cached"


@pytest.mark.asyncio
async def test_fallback_failure_reports_full_history() -> None:
    registry = CapabilityRegistry()
    primary, _ = _flaky([httpx.ConnectError("down")] * 2)
    backup, _ = _flaky([PermissionError("denied")])
    registry.register("crm.lookup", primary)
    registry.register("crm.cache", backup)
    dispatcher = ExecutionDispatcher(registry, timeout=1)

    with pytest.raises(ExecutionFailed) as exc_info:
        await dispatcher.execute(_call(retries=1, fallback="backup"), {}, resources=RESOURCES)

    history = exc_info.value.history
    assert [(a.adapter, a.error_kind) for a in history] == [
        ("crm.lookup", "network"),
        ("crm.lookup", "network"),
        ("crm.cache", "permission"),
    ]
    assert exc_info.value.kind == "permission"


@pytest.mark.asyncio
async def test_unbound_capability_is_not_found() -> None:
    dispatcher = ExecutionDispatcher(CapabilityRegistry(), timeout=1)
    with pytest.raises(ExecutionFailed) as exc_info:
        await dispatcher.execute(_call(retries=3), {}, resources=RESOURCES)
    assert exc_info.value.kind == "not_found"
    assert len(exc_info.value.history) == 1


@pytest.mark.asyncio
async def test_adapter_timeout_counts_as_network_failure() -> None:
    registry = CapabilityRegistry()

    async def slow(args: list[Any], kwargs: dict[str, Any]) -> Any:
        await asyncio.sleep(1)

    registry.register("crm.lookup", slow)
    dispatcher = ExecutionDispatcher(registry, timeout=0.01)
    with pytest.raises(ExecutionFailed) as exc_info:
        await dispatcher.execute(_call(), {}, resources=RESOURCES)
    assert exc_info.value.kind == "network"


@pytest.mark.asyncio
async def test_adapters_receive_copies() -> None:
    registry = CapabilityRegistry()

    async def mutate(args: list[Any], kwargs: dict[str, Any]) -> Any:
        kwargs["customer_id"].append("tampered")
        return None

    registry.register("crm.lookup", mutate)
    dispatcher = ExecutionDispatcher(registry, timeout=1)
    context = {"customer_id": ["original"]}
    await dispatcher.execute(_call(), context, resources=RESOURCES)
    assert context == {"customer_id": ["original"]}
    assert "crm.lookup" in registry
    assert registry.handles() == ["crm.lookup"]
