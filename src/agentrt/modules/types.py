"""Loaded module record."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from agentrt.dsl import ast


@dataclass(frozen=True, slots=True)
class Module:
    """Immutable, statically validated module keyed by its locator."""

    name: str
    locator: str
    version: int
    templates: Mapping[str, ast.Template]
    behaviors: Mapping[str, ast.BehaviorBlock]
    functions: Mapping[str, ast.FunctionDef]
    capabilities: frozenset[str] = frozenset()

    def exports(self) -> list[str]:
        names = [*self.templates, *self.behaviors, *self.functions]
        return sorted(f"{self.name}.{name}" for name in names)

    def to_document(self) -> ast.ModuleDocument:
        return ast.ModuleDocument(
            name=self.name,
            version=self.version,
            templates=list(self.templates.values()),
            behaviors=dict(self.behaviors),
            functions=list(self.functions.values()),
        )
