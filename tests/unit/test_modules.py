import asyncio
from pathlib import Path

import httpx
import pytest

from agentrt.agents.loader import load
from agentrt.errors import ModuleLoadError
from agentrt.modules import Namespace, load_module, register_bundle
from agentrt.modules.catalog import HttpCatalog, KeywordCatalog, similarity
from agentrt.modules.loader import cached_module, compile_module, unload_module

GREETINGS = """
version 1
module greetings {
  templates { hello = "Hello {name}" }
  function shout(x) = upper(x)
  behavior welcome { say hello }
}
"""

HOST = """
version 1
agent host {
  resources { lookup = "crm.lookup" }
  modules { greetings = "bundle:greetings" }
  memory { name: text }
  states { initial state s { } }
}
"""


@pytest.mark.asyncio
async def test_bundle_from_registered_source() -> None:
    register_bundle("greetings", GREETINGS)
    module = await load_module("bundle:greetings")
    assert module.name == "greetings"
    assert module.exports() == ["greetings.hello", "greetings.shout", "greetings.welcome"]
    assert await load_module("bundle:greetings") is module
    assert cached_module("bundle:greetings") is module


@pytest.mark.asyncio
async def test_bundle_from_directory(fixtures_dir: Path) -> None:
    module = await load_module("bundle:billing_common", bundle_dir=fixtures_dir)
    assert module.name == "billing"
    assert "escalate_case" in module.capabilities
    assert set(module.functions) == {"valid_customer_id", "valid_transaction_id", "valid_amount"}


@pytest.mark.asyncio
async def test_missing_bundle(tmp_path: Path) -> None:
    with pytest.raises(ModuleLoadError, match="no bundled module"):
        await load_module("bundle:nothing", bundle_dir=tmp_path)
    with pytest.raises(ModuleLoadError, match="unsupported module locator"):
        await load_module("git:whatever")


@pytest.mark.asyncio
async def test_concurrent_loads_resolve_once() -> None:
    calls: list[str] = []

    class SlowCatalog:
        async def search(self, query: str):
            calls.append(query)
            await asyncio.sleep(0.01)
            return await catalog.search(query)

    catalog = KeywordCatalog(min_score=0.5)
    catalog.register("greetings", GREETINGS, description="friendly greeting templates")
    slow = SlowCatalog()
    first, second = await asyncio.gather(
        load_module("catalog:greeting templates", catalog=slow),
        load_module("catalog:greeting templates", catalog=slow),
    )
    assert first is second
    assert calls == ["greeting templates"]


@pytest.mark.asyncio
async def test_catalog_below_threshold_fails() -> None:
    catalog = KeywordCatalog(min_score=0.9)
    catalog.register("greetings", GREETINGS, description="friendly greeting templates")
    with pytest.raises(ModuleLoadError, match="no catalog entry"):
        await load_module("catalog:weather forecast", catalog=catalog)


def test_similarity() -> None:
    assert similarity("billing dispute", "billing_dispute helpers") == 1.0
    assert similarity("billing refund", "billing helpers") == 0.5
    assert similarity("", "anything") == 0.0


@pytest.mark.asyncio
async def test_http_catalog_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "greetings"
        if request.url.host == "empty.test":
            return httpx.Response(404)
        return httpx.Response(200, json={"key": "greetings", "source": GREETINGS, "score": 0.8})

    transport = httpx.MockTransport(handler)
    entry = await HttpCatalog("http://catalog.test", transport=transport).search("greetings")
    assert entry is not None
    assert entry.key == "greetings"
    assert entry.score == 0.8
    assert await HttpCatalog("http://empty.test", transport=transport).search("greetings") is None


@pytest.mark.asyncio
async def test_http_catalog_non_json_body_is_a_load_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="not json"))
    with pytest.raises(ModuleLoadError, match="not JSON"):
        await HttpCatalog("http://catalog.test", transport=transport).search("greetings")


def test_compile_rejects_invalid_module() -> None:
    with pytest.raises(ModuleLoadError, match="export names used twice"):
        compile_module(
            'version 1\nmodule m { templates { x = "a" } behavior x { say x } }', "bundle:m"
        )
    with pytest.raises(ModuleLoadError, match="cannot invoke"):
        compile_module("version 1\nmodule m { behavior b { invoke other.x } }", "bundle:m")
    with pytest.raises(ModuleLoadError, match="expected a module"):
        compile_module(HOST, "bundle:host")


def test_namespace_merge_and_collision() -> None:
    host = load(HOST)
    namespace = Namespace(host)
    module = compile_module(GREETINGS, "bundle:greetings")
    namespace.merge(module)
    namespace.merge(module)
    assert namespace.template("greetings.hello") is not None
    assert namespace.function("greetings.shout") is not None
    assert namespace.behavior("greetings.welcome") is not None
    assert "greetings.hello" in namespace

    other = compile_module(GREETINGS, "catalog:greetings")
    before = namespace.names()
    with pytest.raises(ModuleLoadError, match="collides"):
        namespace.merge(other)
    assert namespace.names() == before
    assert namespace.module("greetings") is module

    assert namespace.unload("greetings") is True
    assert namespace.names() == []


def test_namespace_validates_against_host() -> None:
    host = load(HOST)
    module = compile_module(
        "version 1\nmodule bad { behavior b { set missing = 1 } }", "bundle:bad"
    )
    namespace = Namespace(host)
    with pytest.raises(ModuleLoadError, match="'missing' is not declared"):
        namespace.merge(module)
    assert namespace.names() == []


@pytest.mark.parametrize(
    ("guard", "message"),
    [
        ("greetings.shout(name, name) == name", r"shout\(\) takes 1 argument\(s\), got 2"),
        ("greetings.whisper(name) == name", "exports no function 'whisper'"),
    ],
)
def test_namespace_checks_host_calls_into_module(guard: str, message: str) -> None:
    handler = f"initial state s {{ on input when {guard} {{ }} }}"
    host = load(HOST.replace("initial state s { }", handler))
    namespace = Namespace(host)
    with pytest.raises(ModuleLoadError, match=message):
        namespace.merge(compile_module(GREETINGS, "bundle:greetings"))
    assert namespace.names() == []


def test_module_function_arity_checked() -> None:
    source = """
version 1
module m {
  function f(x) = upper(x)
  function g(y) = f(y, y)
}
"""
    with pytest.raises(ModuleLoadError, match=r"f\(\) takes 1 argument"):
        compile_module(source, "bundle:m")


@pytest.mark.asyncio
async def test_unload_forgets_cached_module() -> None:
    register_bundle("greetings", GREETINGS)
    first = await load_module("bundle:greetings")
    assert unload_module("bundle:greetings") is True
    second = await load_module("bundle:greetings")
    assert first is not second
    assert second.exports() == first.exports()
