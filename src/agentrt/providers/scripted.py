"""Deterministic reasoner that replays scripted answers per decision id."""

import asyncio
from collections.abc import Iterable, Mapping
from typing import Any

from agentrt.dsl.ast import TIMEOUT_ANSWER, Answer
from agentrt.errors import DecisionError
from agentrt.providers.base import DecisionRequest, DecisionResponse


class ScriptedReasoner:
    """Answers decisions from a script.

    Each decision id owns a queue of answers consumed in order; once a queue
    runs dry its last answer keeps repeating. `TIMEOUT_ANSWER` never returns,
    so the caller's timeout path decides the outcome.
    """

    def __init__(self, answers: Mapping[str, Iterable[Any]] | None = None) -> None:
        self._script: dict[str, list[Any]] = {}
        self._cursor: dict[str, int] = {}
        self.requests: list[DecisionRequest] = []
        for decision_id, values in (answers or {}).items():
            self.script(decision_id, *values)

    def script(self, decision_id: str, *values: Any) -> None:
        self._script.setdefault(decision_id, []).extend(values)

    async def decide(self, request: DecisionRequest) -> DecisionResponse:
        self.requests.append(request)
        queue = self._script.get(request.decision_id)
        if not queue:
            raise DecisionError(
                f"no scripted answer for {request.decision_id!r}",
                decision_id=request.decision_id,
                failure="malformed",
            )
        index = self._cursor.get(request.decision_id, 0)
        self._cursor[request.decision_id] = index + 1
        answer = queue[min(index, len(queue) - 1)]
        if answer is TIMEOUT_ANSWER:
            await asyncio.Event().wait()
        if isinstance(answer, Answer):
            return DecisionResponse(value=answer.value, confidence=answer.confidence)
        return DecisionResponse(value=answer)

    async def health_check(self) -> bool:
        return True
