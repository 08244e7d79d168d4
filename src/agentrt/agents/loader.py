"""Agent definition loader from source text or disk, with mtime-based reload."""

import logging
from pathlib import Path

from agentrt.agents.types import AgentDefinition
from agentrt.agents.validation import validate_agent
from agentrt.dsl import ast
from agentrt.dsl.parser import parse
from agentrt.errors import ValidationError

logger = logging.getLogger(__name__)

AGENT_SUFFIX = ".agent"

# Cache: resolved path -> (definition, mtime)
_definition_cache: dict[str, tuple[AgentDefinition, float]] = {}


def reset_loader_caches() -> None:
    """Clear in-process caches so definitions are re-read from disk."""
    _definition_cache.clear()


def load(source: str) -> AgentDefinition:
    """Parse and statically validate an agent source.

    Raises ParseError for malformed text and ValidationError for the first
    static rule the document breaks. No partial definition is ever returned.
    """
    document = parse(source)
    if not isinstance(document, ast.AgentDocument):
        raise ValidationError(
            f"expected an agent, found module {document.name!r}",
            construct="document",
            line=document.line,
        )
    definition = validate_agent(document)
    logger.info(
        "Loaded agent %s: %d states, %d handlers, %d constraints",
        definition.name,
        len(definition.states),
        len(definition.handlers),
        len(definition.constraints),
    )
    return definition


def load_file(path: Path) -> AgentDefinition:
    return load(path.read_text(encoding="utf-8"))


def load_cached(path: Path) -> AgentDefinition:
    """Load an agent file, reusing the compiled definition until the file changes."""
    key = str(path.resolve())
    mtime = path.stat().st_mtime
    cached = _definition_cache.get(key)
    if cached is not None and mtime <= cached[1]:
        return cached[0]
    if cached is not None:
        logger.info("Hot-reloading agent definition: %s (mtime changed)", path)
    definition = load_file(path)
    _definition_cache[key] = (definition, mtime)
    return definition


def discover(root: Path) -> dict[str, Path]:
    """Map agent names to files for every `*.agent` under root."""
    found: dict[str, Path] = {}
    if not root.exists():
        return found
    for candidate in sorted(root.glob(f"*{AGENT_SUFFIX}")):
        definition = load_cached(candidate)
        if definition.name in found:
            logger.warning(
                "Duplicate agent name %s in %s; keeping %s",
                definition.name,
                candidate,
                found[definition.name],
            )
            continue
        found[definition.name] = candidate
    return found
