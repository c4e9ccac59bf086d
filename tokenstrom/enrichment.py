"""Context enrichment against an external retrieval collaborator."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from .config import EnrichmentConfig
from .errors import EnrichmentTimeout

LOG = logging.getLogger(__name__)

CONTEXT_PREAMBLE = (
    "Use the following retrieved context to answer the user's question. "
    "Prefer it over prior knowledge when they disagree and mention which source you relied on."
)


@dataclass(frozen=True)
class RetrievedSnippet:
    """One ranked retrieval hit."""

    title: str
    content: str
    category: str | None = None
    score: float | None = None


@dataclass(frozen=True)
class EnrichmentResult:
    """Synthesized system message plus source count, or nothing."""

    message: dict[str, str] | None = None
    source_count: int = 0

    @classmethod
    def none(cls) -> "EnrichmentResult":
        return cls()

    @property
    def found(self) -> bool:
        return self.message is not None

    def apply(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return messages with the context message prepended when present."""
        if self.message is None:
            return list(messages)
        return [dict(self.message), *messages]


class RetrievalClient(ABC):
    """Query contract for the retrieval collaborator."""

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def search(self, query: str, limit: int) -> list[RetrievedSnippet]:
        """Return ranked snippets for `query`, best first."""


class NullRetrievalClient(RetrievalClient):
    """Stand-in used when no retrieval service is configured."""

    @property
    def configured(self) -> bool:
        return False

    async def search(self, query: str, limit: int) -> list[RetrievedSnippet]:
        return []


class HttpRetrievalClient(RetrievalClient):
    """POST `{"query", "limit"}` to a retrieval endpoint and read `results`."""

    def __init__(self, url: str, *, timeout_seconds: float = 10.0) -> None:
        self._url = url
        self._timeout = httpx.Timeout(timeout_seconds)

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client for one lookup."""
        return httpx.AsyncClient(timeout=self._timeout)

    async def search(self, query: str, limit: int) -> list[RetrievedSnippet]:
        async with self._build_client() as client:
            response = await client.post(self._url, json={"query": query, "limit": limit})
        response.raise_for_status()
        data = response.json()
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ValueError("retrieval response has no results array")

        snippets: list[RetrievedSnippet] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            content = item.get("content")
            if not isinstance(content, str) or not content.strip():
                continue
            score = item.get("score")
            snippets.append(
                RetrievedSnippet(
                    title=str(item.get("title") or "Untitled"),
                    content=content,
                    category=str(item["category"]) if item.get("category") else None,
                    score=float(score) if isinstance(score, (int, float)) else None,
                )
            )
        return snippets


def build_retrieval_client(cfg: EnrichmentConfig) -> RetrievalClient:
    """Create the retrieval client selected by configuration."""
    if cfg.retrieval_url:
        return HttpRetrievalClient(cfg.retrieval_url)
    return NullRetrievalClient()


def _format_snippet(index: int, snippet: RetrievedSnippet, max_chars: int) -> str:
    text = " ".join(snippet.content.split())
    if len(text) > max_chars:
        text = text[:max_chars].rstrip() + "..."
    label = f"[{snippet.category}] " if snippet.category else ""
    return f"[{index}] {label}{snippet.title}: {text}"


class ContextEnricher:
    """Run one bounded retrieval query and synthesize a system message."""

    def __init__(self, retriever: RetrievalClient, cfg: EnrichmentConfig) -> None:
        self.retriever = retriever
        self.cfg = cfg

    async def _search(self, query: str, budget: float) -> list[RetrievedSnippet]:
        try:
            return await asyncio.wait_for(self.retriever.search(query, self.cfg.search_limit), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise EnrichmentTimeout(f"retrieval exceeded {budget:.3f}s budget") from exc

    async def enrich(self, last_user_message: str, budget: float | None = None) -> EnrichmentResult:
        """Return a context message for `last_user_message`, or none.

        Timeouts, transport failures and empty results are ordinary outcomes
        and are only logged.
        """
        query = last_user_message.strip()
        if not query or not self.retriever.configured:
            return EnrichmentResult.none()

        budget_seconds = budget if budget is not None else self.cfg.budget_seconds
        try:
            snippets = await self._search(query, budget_seconds)
        except EnrichmentTimeout as exc:
            LOG.info("enrichment skipped: %s", exc)
            return EnrichmentResult.none()
        except Exception as exc:
            LOG.warning("enrichment skipped: retrieval failed error=%s", exc)
            return EnrichmentResult.none()

        if not snippets:
            LOG.info("enrichment found no results query_len=%s", len(query))
            return EnrichmentResult.none()

        selected = snippets[: self.cfg.max_snippets]
        body = "\n\n".join(
            _format_snippet(index, snippet, self.cfg.snippet_chars) for index, snippet in enumerate(selected, start=1)
        )
        LOG.info("enrichment added sources=%s of found=%s", len(selected), len(snippets))
        return EnrichmentResult(
            message={"role": "system", "content": f"{CONTEXT_PREAMBLE}\n\n{body}"},
            source_count=len(selected),
        )
