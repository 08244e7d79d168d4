"""Reasoner adapter for OpenAI-compatible chat completion services."""

import json
from typing import Any

import httpx

from agentrt.config import get_settings
from agentrt.errors import DecisionError
from agentrt.providers.base import DecisionRequest, DecisionResponse

SYSTEM_PROMPT = (
    "You answer one typed decision for a conversational agent. "
    'Reply with a single JSON object {"value": <answer>, "confidence": <0..1>} '
    "whose value conforms to the given domain. Do not add any other text."
)


class HttpReasoner:
    def __init__(
        self,
        model: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model or get_settings().reasoner_model
        self._transport = transport

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        return base_url.rstrip("/")

    @staticmethod
    def _messages(request: DecisionRequest) -> list[dict[str, str]]:
        body = {
            "decision": request.decision_id,
            "domain": request.domain,
            "context": dict(request.context),
            "constraint": request.constraint,
            "fallback_policy": request.fallback_policy,
        }
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(body, sort_keys=True, default=str)},
        ]

    @staticmethod
    def _strip_fences(content: str) -> str:
        text = content.strip()
        if text.startswith("```"):
            text = text.split("\n", 1)[1] if "\n" in text else ""
            if text.rstrip().endswith("```"):
                text = text.rstrip()[:-3]
        return text.strip()

    @staticmethod
    def _parse_response(decision_id: str, payload: dict[str, Any]) -> DecisionResponse:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise DecisionError(
                "reasoner response missing choices", decision_id=decision_id, failure="malformed"
            )
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise DecisionError(
                "reasoner response message missing", decision_id=decision_id, failure="malformed"
            )
        try:
            decoded = json.loads(HttpReasoner._strip_fences(content))
        except json.JSONDecodeError as exc:
            raise DecisionError(
                f"reasoner answer is not JSON: {exc}", decision_id=decision_id, failure="malformed"
            ) from exc
        if not isinstance(decoded, dict) or "value" not in decoded:
            raise DecisionError(
                "reasoner answer lacks a value", decision_id=decision_id, failure="malformed"
            )
        confidence = decoded.get("confidence", 1.0)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise DecisionError(
                "reasoner confidence is not a number", decision_id=decision_id, failure="malformed"
            )
        return DecisionResponse(value=decoded["value"], confidence=float(confidence))

    async def decide(self, request: DecisionRequest) -> DecisionResponse:
        settings = get_settings()
        endpoint = f"{self._normalize_base_url(settings.reasoner_base_url)}/chat/completions"
        body: dict[str, object] = {
            "model": self.model,
            "messages": self._messages(request),
            "temperature": 0.0,
            "response_format": {"type": "json_object"},
        }
        headers: dict[str, str] = {}
        if settings.reasoner_api_key:
            headers["Authorization"] = f"Bearer {settings.reasoner_api_key}"
        try:
            async with httpx.AsyncClient(
                timeout=settings.reasoner_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(endpoint, json=body, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise DecisionError(
                f"reasoner timed out: {exc}", decision_id=request.decision_id, failure="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise DecisionError(
                f"reasoner request failed: {type(exc).__name__}: {exc}",
                decision_id=request.decision_id,
                failure="malformed",
            ) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise DecisionError(
                f"reasoner response is not JSON: {exc}",
                decision_id=request.decision_id,
                failure="malformed",
            ) from exc
        if not isinstance(payload, dict):
            raise DecisionError(
                "reasoner response is not an object",
                decision_id=request.decision_id,
                failure="malformed",
            )
        return self._parse_response(request.decision_id, payload)

    async def health_check(self) -> bool:
        settings = get_settings()
        endpoint = f"{self._normalize_base_url(settings.reasoner_base_url)}/models"
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(endpoint)
            return response.status_code < 400
        except httpx.HTTPError:
            return False
