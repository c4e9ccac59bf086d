"""Relay service runtime: config-bound collaborators and session factory."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncGenerator

from .config import RelayConfig
from .enrichment import ContextEnricher, build_retrieval_client
from .errors import ConfigurationError
from .fallback import FallbackOrchestrator
from .models import Usage
from .session import RelaySession
from .stream_chunks import extract_message_texts
from .upstream import UpstreamClient
from .utils import last_user_message_text

if TYPE_CHECKING:
    from .chat_handlers import RelayRequest

LOG = logging.getLogger(__name__)


class RelayService:
    """Runtime container for the upstream client and context enricher.

    Sessions capture the collaborators current at their start. Those hold no
    shared connections (every call opens its own client), so a reload only
    swaps references and sessions already running keep their old pipeline.
    """

    def __init__(self, cfg: RelayConfig) -> None:
        """Initialize service with config-bound clients."""
        self.cfg = cfg
        self.upstream = UpstreamClient(cfg)
        self.enricher = ContextEnricher(build_retrieval_client(cfg.enrichment), cfg.enrichment)
        self._reload_lock = asyncio.Lock()

    async def reload(self, new_cfg: RelayConfig) -> None:
        """Hot-reload configuration by swapping integrations atomically."""
        async with self._reload_lock:
            self.cfg = new_cfg
            self.upstream = UpstreamClient(new_cfg)
            self.enricher = ContextEnricher(build_retrieval_client(new_cfg.enrichment), new_cfg.enrichment)
            LOG.info(
                "relay service reloaded model=%s retrieval=%s",
                new_cfg.upstream_default_model,
                self.enricher.retriever.configured,
            )

    def create_session(self, request: "RelayRequest", *, force_demo: bool = False) -> RelaySession:
        """Build one session from a validated `RelayRequest`."""
        cfg = self.cfg
        orchestrator = FallbackOrchestrator(
            self.upstream,
            cfg.pacing,
            interrupted_stream_policy=cfg.interrupted_stream_policy,
        )
        return RelaySession(
            messages=request.message_dicts(),
            upstream=self.upstream,
            enricher=self.enricher,
            orchestrator=orchestrator,
            model=request.model or cfg.upstream_default_model,
            rag_context=request.rag_context,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            missing_credential_policy=cfg.missing_credential_policy,
            force_demo=force_demo,
        )

    async def stream(self, request: "RelayRequest", *, force_demo: bool = False) -> AsyncGenerator[bytes, None]:
        """Run one relay session and yield its frames."""
        session = self.create_session(request, force_demo=force_demo)
        async for frame in session.stream():
            yield frame

    async def query(self, request: "RelayRequest") -> dict[str, Any]:
        """Run one non-streaming completion, enriched like the stream path.

        Upstream failures propagate to the caller; there is no degrade chain
        for the JSON endpoint.
        """
        started = time.monotonic()
        messages = request.message_dicts()
        if request.rag_context:
            result = await self.enricher.enrich(last_user_message_text(messages))
            messages = result.apply(messages)
        if not self.upstream.has_credential:
            raise ConfigurationError("Upstream API key not configured")

        response = await self.upstream.complete(
            messages,
            request.model or self.cfg.upstream_default_model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        reasoning, content = extract_message_texts(response)
        usage = Usage.from_payload(response.get("usage")) or Usage()
        return {
            "reasoning": reasoning,
            "response": content,
            "usage": usage.as_dict(),
            "processing_time_ms": int((time.monotonic() - started) * 1000),
        }

    def health(self) -> dict[str, Any]:
        """Return static readiness information."""
        return {
            "service": "tokenstrom",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "upstream_configured": self.upstream.has_credential,
            "retrieval_configured": self.enricher.retriever.configured,
        }
