"""Lookup services that resolve dynamic `catalog:` module locators."""

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from agentrt.config import get_settings
from agentrt.errors import ModuleLoadError

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    key: str
    source: str
    description: str = ""
    score: float = 0.0


class Catalog(Protocol):
    async def search(self, query: str) -> CatalogEntry | None: ...


def tokens(text: str) -> set[str]:
    return set(_TOKEN.findall(text.lower().replace("_", " ")))


def similarity(query: str, document: str) -> float:
    """Share of query tokens present in the document, in [0, 1]."""
    wanted = tokens(query)
    if not wanted:
        return 0.0
    return len(wanted & tokens(document)) / len(wanted)


class KeywordCatalog:
    """In-process catalog ranked by token overlap with each entry's description."""

    def __init__(self, min_score: float | None = None) -> None:
        self.min_score = min_score if min_score is not None else get_settings().catalog_min_score
        self._entries: dict[str, CatalogEntry] = {}

    def register(self, key: str, source: str, description: str = "") -> None:
        self._entries[key] = CatalogEntry(key=key, source=source, description=description)

    async def search(self, query: str) -> CatalogEntry | None:
        best: CatalogEntry | None = None
        for key in sorted(self._entries):
            entry = self._entries[key]
            score = similarity(query, f"{entry.key} {entry.description}")
            if score < self.min_score:
                continue
            if best is None or score > best.score:
                best = CatalogEntry(entry.key, entry.source, entry.description, score)
        if best is not None:
            logger.info("Catalog query %r matched %s (score %.2f)", query, best.key, best.score)
        return best


class HttpCatalog:
    """Remote catalog: `GET {base}/search?q=...` returning `{key, source, score}`."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or get_settings().catalog_url).rstrip("/")
        self._transport = transport

    async def search(self, query: str) -> CatalogEntry | None:
        if not self.base_url:
            raise ModuleLoadError("CATALOG_URL is not configured")
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/search", params={"q": query})
                if response.status_code == 404:
                    return None
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModuleLoadError(f"catalog lookup failed: {type(exc).__name__}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise ModuleLoadError(f"catalog response is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ModuleLoadError("catalog response is not an object")
        source = payload.get("source")
        key = payload.get("key")
        if not isinstance(source, str) or not isinstance(key, str):
            raise ModuleLoadError("catalog response lacks key or source")
        raw_score = payload.get("score", 1.0)
        score = float(raw_score) if isinstance(raw_score, (int, float)) else 0.0
        if score < get_settings().catalog_min_score:
            logger.info("Catalog match %s for %r scored %.2f, below threshold", key, query, score)
            return None
        return CatalogEntry(
            key=key,
            source=source,
            description=str(payload.get("description", "")),
            score=score,
        )
