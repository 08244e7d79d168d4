"""Decision boundary between the deterministic engine and the reasoner.

Every decision goes through `DecisionBoundary.decide`: the boundary builds a
snapshot holding only the names the decision reads, forwards a typed request,
validates the answer against the declared domain and resolves failures via
the fallback policy. The outcome always records which path produced it.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from agentrt.config import get_settings
from agentrt.dsl import ast
from agentrt.dsl.expressions import FunctionResolver, evaluate
from agentrt.errors import DecisionError
from agentrt.providers.base import DecisionRequest, Reasoner

logger = logging.getLogger(__name__)

PATH_REASONER = "reasoner"
PATH_FALLBACK = "fallback"
PATH_LOW_CONFIDENCE = "low_confidence"
PATH_TIMEOUT = "timeout"

# Failures the low-confidence strategy also covers.
_LOW_CONFIDENCE_FAILURES = frozenset({"low_confidence", "invalid", "malformed"})


@dataclass(frozen=True, slots=True)
class DecisionOutcome:
    decision_id: str
    value: Any
    confidence: float
    path: str
    reason: str = ""
    failure: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "value": self.value,
            "confidence": self.confidence,
            "path": self.path,
            "reason": self.reason,
            "failure": self.failure,
        }


def build_snapshot(spec: ast.DecisionSpec, context: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only copy of just the names the decision's `given` and constraint use."""
    names = set(spec.given) | ast.referenced_names(spec.constraint)
    return MappingProxyType({name: context.get(name) for name in sorted(names)})


def fallback_policy(spec: ast.DecisionSpec) -> dict[str, Any]:
    policy: dict[str, Any] = {}
    if spec.fallback is not None:
        policy["fallback"] = spec.fallback.value
    if spec.on_low_confidence is not None:
        policy["on_low_confidence"] = spec.on_low_confidence.value
    if spec.on_timeout is not None:
        policy["on_timeout"] = spec.on_timeout.value
    return policy


class DecisionBoundary:
    def __init__(
        self,
        reasoner: Reasoner,
        *,
        timeout: float | None = None,
        threshold: float | None = None,
    ) -> None:
        settings = get_settings()
        self.reasoner = reasoner
        self.timeout = timeout if timeout is not None else settings.decision_timeout_seconds
        self.threshold = (
            threshold if threshold is not None else settings.decision_confidence_threshold
        )

    async def decide(
        self,
        spec: ast.DecisionSpec,
        context: Mapping[str, Any],
        functions: FunctionResolver | None = None,
    ) -> DecisionOutcome:
        snapshot = build_snapshot(spec, context)
        threshold = spec.threshold if spec.threshold is not None else self.threshold
        timeout = spec.timeout if spec.timeout is not None else self.timeout
        constraint = (
            evaluate(spec.constraint, snapshot, functions) if spec.constraint is not None else None
        )
        request = DecisionRequest(
            decision_id=spec.id,
            domain=spec.domain.describe(),
            context=snapshot,
            constraint=constraint,
            fallback_policy=fallback_policy(spec),
            threshold=threshold,
        )

        confidence = 0.0
        try:
            response = await asyncio.wait_for(self.reasoner.decide(request), timeout=timeout)
        except asyncio.TimeoutError:
            failure, reason = "timeout", f"no answer within {timeout}s"
        except DecisionError as exc:
            failure, reason = exc.failure, str(exc)
        except Exception as exc:
            failure, reason = "malformed", f"{type(exc).__name__}: {exc}"
        else:
            failure, reason, value, confidence = self._validate(spec, response, threshold)
            if failure is None:
                return DecisionOutcome(spec.id, value, confidence, PATH_REASONER)
        return self._resolve(spec, failure, reason, confidence)

    @staticmethod
    def _validate(
        spec: ast.DecisionSpec, response: Any, threshold: float
    ) -> tuple[str | None, str, Any, float]:
        confidence = getattr(response, "confidence", None)
        if (
            isinstance(confidence, bool)
            or not isinstance(confidence, (int, float))
            or not 0.0 <= confidence <= 1.0
        ):
            return "malformed", f"confidence {confidence!r} outside [0, 1]", None, 0.0
        checked = spec.domain.check(response.value)
        if not checked.ok:
            return "invalid", checked.reason, None, float(confidence)
        if confidence < threshold:
            return (
                "low_confidence",
                f"confidence {confidence} below threshold {threshold}",
                checked.value,
                float(confidence),
            )
        return None, "", checked.value, float(confidence)

    @staticmethod
    def _resolve(
        spec: ast.DecisionSpec, failure: str, reason: str, confidence: float
    ) -> DecisionOutcome:
        if spec.fallback is not None:
            path, value = PATH_FALLBACK, spec.fallback.value
        elif spec.on_low_confidence is not None and failure in _LOW_CONFIDENCE_FAILURES:
            path, value = PATH_LOW_CONFIDENCE, spec.on_low_confidence.value
        elif spec.on_timeout is not None and failure == "timeout":
            path, value = PATH_TIMEOUT, spec.on_timeout.value
        else:
            logger.warning("Decision %s failed without fallback: %s (%s)", spec.id, failure, reason)
            raise DecisionError(
                f"decision {spec.id!r} failed: {reason}", decision_id=spec.id, failure=failure
            )
        logger.info("Decision %s resolved via %s after %s: %s", spec.id, path, failure, reason)
        return DecisionOutcome(spec.id, value, confidence, path, reason, failure)
