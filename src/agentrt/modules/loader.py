"""Module resolution, validation and process-wide caching."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from types import MappingProxyType

from agentrt.agents.validation import validate_module_document
from agentrt.config import get_settings
from agentrt.dsl import ast
from agentrt.dsl.parser import parse
from agentrt.errors import ModuleLoadError, ParseError, ValidationError
from agentrt.modules.catalog import Catalog, KeywordCatalog
from agentrt.modules.types import Module

logger = logging.getLogger(__name__)

BUNDLE_PREFIX = "bundle:"
CATALOG_PREFIX = "catalog:"
MODULE_SUFFIX = ".module"

_module_cache: dict[str, Module] = {}
_locator_locks: dict[str, asyncio.Lock] = {}
_bundle_sources: dict[str, str] = {}
_catalog: Catalog | None = None


def register_bundle(name: str, source: str) -> None:
    """Make a bundled module available to `bundle:<name>` without a file."""
    _bundle_sources[name] = source


def set_catalog(catalog: Catalog | None) -> None:
    global _catalog
    _catalog = catalog


def get_catalog() -> Catalog:
    global _catalog
    if _catalog is None:
        _catalog = KeywordCatalog()
    return _catalog


def reset_module_cache() -> None:
    """Forget cached modules, registered bundles and the active catalog."""
    global _catalog
    _module_cache.clear()
    _locator_locks.clear()
    _bundle_sources.clear()
    _catalog = None


def cached_module(locator: str) -> Module | None:
    return _module_cache.get(locator)


def unload_module(locator: str) -> bool:
    return _module_cache.pop(locator, None) is not None


def _capabilities(doc: ast.ModuleDocument) -> frozenset[str]:
    names: set[str] = set()
    for block in doc.behaviors.values():
        for stmt in block.walk():
            if isinstance(stmt, ast.ExecutionCall):
                names.add(stmt.capability)
                if stmt.retry.fallback is not None:
                    names.add(stmt.retry.fallback)
    return frozenset(names)


def compile_module(source: str, locator: str) -> Module:
    try:
        document = parse(source)
        if not isinstance(document, ast.ModuleDocument):
            raise ModuleLoadError(f"{locator}: expected a module, found agent {document.name!r}")
        validate_module_document(document)
    except (ParseError, ValidationError) as exc:
        raise ModuleLoadError(f"{locator}: {exc}") from exc
    return Module(
        name=document.name,
        locator=locator,
        version=document.version,
        templates=MappingProxyType({t.name: t for t in document.templates}),
        behaviors=MappingProxyType(dict(document.behaviors)),
        functions=MappingProxyType({f.name: f for f in document.functions}),
        capabilities=_capabilities(document),
    )


async def _resolve_source(
    locator: str,
    bundle_dir: Path | None,
    catalog: Catalog | None,
) -> str:
    if locator.startswith(BUNDLE_PREFIX):
        name = locator[len(BUNDLE_PREFIX) :].strip()
        if name in _bundle_sources:
            return _bundle_sources[name]
        root = bundle_dir or Path(get_settings().module_bundle_dir)
        path = root / f"{name}{MODULE_SUFFIX}"
        if not path.is_file():
            raise ModuleLoadError(f"{locator}: no bundled module at {path}")
        return path.read_text(encoding="utf-8")
    if locator.startswith(CATALOG_PREFIX):
        query = locator[len(CATALOG_PREFIX) :].strip()
        entry = await (catalog or get_catalog()).search(query)
        if entry is None:
            raise ModuleLoadError(f"{locator}: no catalog entry matches {query!r}")
        logger.info("Resolved %s to catalog entry %s", locator, entry.key)
        return entry.source
    raise ModuleLoadError(f"unsupported module locator {locator!r}")


async def load_module(
    locator: str,
    *,
    bundle_dir: Path | None = None,
    catalog: Catalog | None = None,
) -> Module:
    """Resolve, validate and cache a module; concurrent loads of one locator run once."""
    cached = _module_cache.get(locator)
    if cached is not None:
        return cached
    lock = _locator_locks.setdefault(locator, asyncio.Lock())
    async with lock:
        cached = _module_cache.get(locator)
        if cached is not None:
            return cached
        source = await _resolve_source(locator, bundle_dir, catalog)
        module = compile_module(source, locator)
        _module_cache[locator] = module
        logger.info("Loaded module %s from %s: %s", module.name, locator, ", ".join(module.exports()))
        return module
