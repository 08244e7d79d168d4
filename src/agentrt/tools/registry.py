"""Capability adapter registration."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

Adapter = Callable[[list[Any], dict[str, Any]], Awaitable[Any]]


@dataclass(slots=True)
class AdapterDef:
    handle: str
    handler: Adapter
    description: str = ""


class CapabilityRegistry:
    """Maps adapter handles (the right-hand side of `resources`) to callables."""

    def __init__(self) -> None:
        self._adapters: dict[str, AdapterDef] = {}

    def register(self, handle: str, handler: Adapter, description: str = "") -> None:
        self._adapters[handle] = AdapterDef(handle=handle, handler=handler, description=description)

    def get(self, handle: str) -> AdapterDef | None:
        return self._adapters.get(handle)

    def handles(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, handle: object) -> bool:
        return handle in self._adapters
