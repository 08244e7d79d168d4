"""Qualified-name namespace that loaded modules are merged into."""

from __future__ import annotations

from agentrt.agents.types import AgentDefinition
from agentrt.agents.validation import validate_module_document
from agentrt.dsl import ast
from agentrt.errors import ModuleLoadError, ValidationError
from agentrt.modules.types import Module


class Namespace:
    """Exports are addressed as `<module>.<export>` and never overridden."""

    def __init__(self, host: AgentDefinition | None = None) -> None:
        self.host = host
        self._modules: dict[str, Module] = {}
        self._exports: dict[str, object] = {}

    def merge(self, module: Module) -> None:
        """Add a module's exports; any collision leaves the namespace unchanged."""
        existing = self._modules.get(module.name)
        if existing is not None:
            if existing.locator == module.locator:
                return
            raise ModuleLoadError(
                f"module {module.name!r} from {module.locator} collides with "
                f"the one already loaded from {existing.locator}"
            )
        if self.host is not None:
            aliases = [a for a, locator in self.host.modules.items() if locator == module.locator]
            try:
                validate_module_document(module.to_document(), self.host, aliases)
            except ValidationError as exc:
                raise ModuleLoadError(f"{module.locator}: {exc}") from exc
        incoming: dict[str, object] = {}
        for kind in (module.templates, module.behaviors, module.functions):
            for name, export in kind.items():
                incoming[f"{module.name}.{name}"] = export
        clashes = sorted(set(incoming) & set(self._exports))
        if clashes:
            raise ModuleLoadError(f"export name collision: {', '.join(clashes)}")
        self._modules[module.name] = module
        self._exports.update(incoming)

    def unload(self, name: str) -> bool:
        module = self._modules.pop(name, None)
        if module is None:
            return False
        prefix = f"{name}."
        for key in [k for k in self._exports if k.startswith(prefix)]:
            del self._exports[key]
        return True

    def module(self, name: str) -> Module | None:
        return self._modules.get(name)

    def template(self, qualified: str) -> ast.Template | None:
        export = self._exports.get(qualified)
        return export if isinstance(export, ast.Template) else None

    def behavior(self, qualified: str) -> ast.BehaviorBlock | None:
        export = self._exports.get(qualified)
        return export if isinstance(export, ast.BehaviorBlock) else None

    def function(self, qualified: str) -> ast.FunctionDef | None:
        export = self._exports.get(qualified)
        return export if isinstance(export, ast.FunctionDef) else None

    def names(self) -> list[str]:
        return sorted(self._exports)

    def __contains__(self, qualified: object) -> bool:
        return qualified in self._exports
