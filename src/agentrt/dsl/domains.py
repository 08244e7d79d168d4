"""Output and field domains.

A domain both validates values at run time and is compared against other
domains during static checks.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class Checked:
    ok: bool
    value: Any = None
    reason: str = ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_number(value: Any) -> int | float | None:
    if _is_number(value):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if math.isnan(parsed) or math.isinf(parsed):
            return None
        return int(parsed) if parsed.is_integer() and "." not in value else parsed
    return None


class Domain:
    kind = "any"

    def check(self, value: Any) -> Checked:
        return Checked(True, value)

    def describe(self) -> dict[str, Any]:
        return {"kind": self.kind}

    def accepts(self, other: Domain) -> bool:
        """True when every value valid in `other` is also valid here."""
        return isinstance(self, AnyDomain) or type(other) is type(self)

    def __str__(self) -> str:
        return self.kind


@dataclass(frozen=True, slots=True, eq=True)
class AnyDomain(Domain):
    kind = "any"


@dataclass(frozen=True, slots=True, eq=True)
class TextDomain(Domain):
    kind = "text"

    def check(self, value: Any) -> Checked:
        if isinstance(value, str):
            return Checked(True, value)
        return Checked(False, reason=f"expected text, got {type(value).__name__}")

    def accepts(self, other: Domain) -> bool:
        return isinstance(other, (TextDomain, EnumDomain)) and (
            not isinstance(other, EnumDomain) or all(isinstance(o, str) for o in other.options)
        )


@dataclass(frozen=True, slots=True, eq=True)
class NumberDomain(Domain):
    kind = "number"

    def check(self, value: Any) -> Checked:
        number = _coerce_number(value)
        if number is None:
            return Checked(False, reason=f"expected number, got {value!r}")
        return Checked(True, number)

    def accepts(self, other: Domain) -> bool:
        return isinstance(other, (NumberDomain, RangeDomain))


@dataclass(frozen=True, slots=True, eq=True)
class BoolDomain(Domain):
    kind = "bool"

    def check(self, value: Any) -> Checked:
        if isinstance(value, bool):
            return Checked(True, value)
        return Checked(False, reason=f"expected bool, got {value!r}")


@dataclass(frozen=True, slots=True, eq=True)
class ListDomain(Domain):
    kind = "list"

    def check(self, value: Any) -> Checked:
        if isinstance(value, (list, tuple)):
            return Checked(True, list(value))
        return Checked(False, reason=f"expected list, got {type(value).__name__}")


@dataclass(frozen=True, slots=True, eq=True)
class EnumDomain(Domain):
    options: tuple[Any, ...]
    kind = "enum"

    def check(self, value: Any) -> Checked:
        for option in self.options:
            if type(option) is type(value) and option == value:
                return Checked(True, value)
        return Checked(False, reason=f"{value!r} is not one of {list(self.options)!r}")

    def describe(self) -> dict[str, Any]:
        return {"kind": self.kind, "options": list(self.options)}

    def accepts(self, other: Domain) -> bool:
        return isinstance(other, EnumDomain) and set(other.options) <= set(self.options)

    def __str__(self) -> str:
        return "enum(" + ", ".join(repr(o) for o in self.options) + ")"


@dataclass(frozen=True, slots=True, eq=True)
class RangeDomain(Domain):
    low: int | float
    high: int | float
    kind = "range"

    def check(self, value: Any) -> Checked:
        number = _coerce_number(value)
        if number is None:
            return Checked(False, reason=f"expected number in [{self.low}, {self.high}], got {value!r}")
        if number < self.low or number > self.high:
            return Checked(False, reason=f"{number} outside [{self.low}, {self.high}]")
        return Checked(True, number)

    def describe(self) -> dict[str, Any]:
        return {"kind": self.kind, "min": self.low, "max": self.high}

    def accepts(self, other: Domain) -> bool:
        return isinstance(other, RangeDomain) and self.low <= other.low and other.high <= self.high

    def __str__(self) -> str:
        return f"range({self.low}, {self.high})"


@dataclass(frozen=True, slots=True, eq=True)
class StructField:
    name: str
    domain: Domain
    required: bool = True


@dataclass(frozen=True, slots=True, eq=True)
class StructDomain(Domain):
    fields: tuple[StructField, ...]
    kind = "struct"

    def check(self, value: Any) -> Checked:
        if not isinstance(value, dict):
            return Checked(False, reason=f"expected struct, got {type(value).__name__}")
        out: dict[str, Any] = {}
        for spec in self.fields:
            if spec.name not in value or value[spec.name] is None:
                if spec.required:
                    return Checked(False, reason=f"missing required field {spec.name!r}")
                continue
            checked = spec.domain.check(value[spec.name])
            if not checked.ok:
                return Checked(False, reason=f"{spec.name}: {checked.reason}")
            out[spec.name] = checked.value
        return Checked(True, out)

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "fields": {
                spec.name: {**spec.domain.describe(), "required": spec.required}
                for spec in self.fields
            },
        }

    def accepts(self, other: Domain) -> bool:
        if not isinstance(other, StructDomain):
            return False
        theirs = {spec.name: spec for spec in other.fields}
        for spec in self.fields:
            candidate = theirs.get(spec.name)
            if candidate is None:
                if spec.required:
                    return False
                continue
            if spec.required and not candidate.required:
                return False
            if not spec.domain.accepts(candidate.domain):
                return False
        return True

    def __str__(self) -> str:
        parts = [f"{s.name}{'' if s.required else '?'}: {s.domain}" for s in self.fields]
        return "struct { " + ", ".join(parts) + " }"


SIMPLE_DOMAINS: dict[str, Domain] = {
    "any": AnyDomain(),
    "text": TextDomain(),
    "number": NumberDomain(),
    "bool": BoolDomain(),
    "list": ListDomain(),
}
