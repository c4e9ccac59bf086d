"""Relay session state machine.

One `RelaySession` exists per inbound request and is driven by the single
task that iterates `RelaySession.stream()`. The generator yields encoded
event-stream frames; each one is handed to the transport as soon as it is
produced.

State edges::

    init -> enriching -> connecting -> streaming -> complete
                                   \\-> degrading <-/  -> complete
    init -> failed        (missing credential under the fatal policy)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, AsyncGenerator, Literal, Sequence

from .enrichment import ContextEnricher
from .errors import ConfigurationError, InvalidTransition, RelayError, StreamInterrupted, UpstreamError
from .fallback import FallbackOrchestrator
from .frames import DONE_FRAME, encode_event, iter_frames
from .models import CompletionOutcome, Delta, DeltaKind, Usage
from .stream_chunks import complete_event, connection_event, delta_event, error_event, status_event
from .stream_pump import StreamPump
from .upstream import UpstreamClient, UpstreamStream
from .utils import last_user_message_text

LOG = logging.getLogger(__name__)

MISSING_CREDENTIAL_MESSAGE = "Upstream API key not configured"


class SessionState(str, Enum):
    """Lifecycle states of one relay session."""

    INIT = "init"
    ENRICHING = "enriching"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DEGRADING = "degrading"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INIT: frozenset({SessionState.ENRICHING, SessionState.FAILED}),
    SessionState.ENRICHING: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.STREAMING, SessionState.DEGRADING}),
    SessionState.STREAMING: frozenset({SessionState.COMPLETE, SessionState.DEGRADING}),
    SessionState.DEGRADING: frozenset({SessionState.COMPLETE}),
    SessionState.COMPLETE: frozenset(),
    SessionState.FAILED: frozenset(),
}

class RelaySession:
    """Per-request relay state plus the orchestration that drives it."""

    def __init__(
        self,
        *,
        messages: Sequence[dict[str, Any]],
        upstream: UpstreamClient,
        enricher: ContextEnricher,
        orchestrator: FallbackOrchestrator,
        model: str | None = None,
        rag_context: bool = False,
        temperature: float | None = None,
        max_tokens: int | None = None,
        missing_credential_policy: Literal["demo", "fatal"] = "demo",
        force_demo: bool = False,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or f"relay-{uuid.uuid4().hex}"
        self.state = SessionState.INIT
        self.history: list[SessionState] = [SessionState.INIT]
        self.token_count = 0
        self.started_at = time.monotonic()
        self.outcome: CompletionOutcome | None = None

        self.model = model
        self.rag_context = rag_context
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.missing_credential_policy = missing_credential_policy
        self.force_demo = force_demo

        self.upstream = upstream
        self.enricher = enricher
        self.orchestrator = orchestrator

        self._messages: tuple[dict[str, Any], ...] = tuple(dict(message) for message in messages)
        self._messages_frozen = False
        self._generation_announced = False

    @property
    def messages(self) -> tuple[dict[str, Any], ...]:
        return self._messages

    @property
    def last_user_message(self) -> str:
        return last_user_message_text(self._messages)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def log_extra(self, source: str | None = None) -> dict[str, Any]:
        """Structured fields attached to this session's log records."""
        extra: dict[str, Any] = {"session_id": self.id, "state": self.state.value}
        if source is not None:
            extra["source"] = source
        return extra

    def replace_messages(self, messages: Sequence[dict[str, Any]]) -> None:
        """Swap the outgoing message set; only allowed before the upstream call."""
        if self._messages_frozen:
            raise RuntimeError("messages are immutable once the upstream call has begun")
        self._messages = tuple(dict(message) for message in messages)

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        LOG.debug("session %s %s -> %s", self.id, self.state.value, target.value, extra=self.log_extra())
        self.state = target
        self.history.append(target)

    def next_delta(self, kind: DeltaKind, text: str) -> Delta:
        """Count one emitted token and wrap it as a Delta."""
        self.token_count += 1
        return Delta(kind=kind, text=text, sequence=self.token_count)

    def finish(self, outcome: CompletionOutcome) -> None:
        """Record the terminal outcome; a session has exactly one."""
        if self.outcome is not None:
            raise RuntimeError(f"session {self.id} already has an outcome")
        self.outcome = outcome

    def _completion_usage(self) -> Usage:
        if self.outcome is not None and self.outcome.usage is not None:
            return self.outcome.usage
        return Usage.of(len(self.last_user_message), self.token_count)

    def _announce_generation(self) -> bytes | None:
        if self._generation_announced:
            return None
        self._generation_announced = True
        return encode_event(status_event("generating", "Streaming response"))

    async def _enrich(self) -> AsyncGenerator[bytes, None]:
        if not self.rag_context:
            return
        yield encode_event(status_event("enrichment", "Searching knowledge base for relevant context"))
        result = await self.enricher.enrich(self.last_user_message)
        if result.found:
            self.replace_messages(result.apply(list(self._messages)))
            yield encode_event(status_event("enrichment", f"Added context from {result.source_count} source(s)"))
        else:
            yield encode_event(status_event("enrichment", "Continuing without additional context"))

    async def _connect(self) -> tuple[UpstreamStream | None, RelayError | None]:
        """Open the live stream, or explain why the session must degrade."""
        if self.force_demo:
            return None, None
        if not self.upstream.has_credential:
            LOG.warning("upstream credential missing, degrading session=%s", self.id, extra=self.log_extra())
            return None, ConfigurationError(MISSING_CREDENTIAL_MESSAGE)
        try:
            stream = await self.upstream.open_stream(
                list(self._messages),
                self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                trace_id=self.id,
            )
        except UpstreamError as exc:
            LOG.warning(
                "upstream stream refused session=%s kind=%s status=%s error=%s body=%.500s",
                self.id,
                exc.kind,
                exc.status_code,
                exc,
                exc.body,
                extra=self.log_extra(),
            )
            return None, exc
        return stream, None

    def _finish_frames(self) -> list[bytes]:
        self.transition(SessionState.COMPLETE)
        assert self.outcome is not None
        truncated = self.outcome.error_kind == StreamInterrupted.kind
        LOG.log(
            logging.WARNING if truncated else logging.INFO,
            "relay session complete session=%s source=%s tokens=%s ok=%s truncated=%s elapsed=%.3fs",
            self.id,
            self.outcome.source,
            self.token_count,
            self.outcome.ok,
            truncated,
            self.elapsed,
            extra=self.log_extra(self.outcome.source),
        )
        return [encode_event(complete_event(self._completion_usage())), DONE_FRAME]

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Run the session and yield every client frame up to `[DONE]`."""
        LOG.info(
            "relay session start session=%s messages=%s rag=%s demo=%s",
            self.id,
            len(self._messages),
            self.rag_context,
            self.force_demo,
            extra=self.log_extra(),
        )
        try:
            yield encode_event(connection_event())

            if (
                not self.force_demo
                and not self.upstream.has_credential
                and self.missing_credential_policy == "fatal"
            ):
                self.transition(SessionState.FAILED)
                self.finish(
                    CompletionOutcome.failure(
                        "none", error_kind=ConfigurationError.kind, message=MISSING_CREDENTIAL_MESSAGE
                    )
                )
                LOG.error("upstream credential missing, failing session=%s", self.id, extra=self.log_extra("none"))
                yield encode_event(error_event(MISSING_CREDENTIAL_MESSAGE))
                yield DONE_FRAME
                return

            self.transition(SessionState.ENRICHING)
            async for frame in self._enrich():
                yield frame

            self.transition(SessionState.CONNECTING)
            self._messages_frozen = True
            yield encode_event(status_event("connecting", "Connecting to completion service"))
            upstream_stream, failure = await self._connect()

            if upstream_stream is not None:
                self.transition(SessionState.STREAMING)
                pump = StreamPump(self)
                try:
                    async for delta in pump.run(iter_frames(upstream_stream.aiter_bytes())):
                        announce = self._announce_generation()
                        if announce is not None:
                            yield announce
                        yield encode_event(delta_event(delta))
                finally:
                    await upstream_stream.aclose()

                assert pump.outcome is not None
                if pump.skipped_frames:
                    LOG.warning(
                        "skipped %s malformed upstream frames session=%s",
                        pump.skipped_frames,
                        self.id,
                        extra=self.log_extra("live"),
                    )
                if pump.outcome.ok:
                    self.finish(pump.outcome)
                    for frame in self._finish_frames():
                        yield frame
                    return
                LOG.warning(
                    "upstream stream interrupted session=%s tokens=%s error=%s",
                    self.id,
                    self.token_count,
                    pump.outcome.message,
                    extra=self.log_extra("live"),
                )
                failure = StreamInterrupted(pump.outcome.message or "stream interrupted")

            self.transition(SessionState.DEGRADING)
            async for delta in self.orchestrator.run(self, failure):
                announce = self._announce_generation()
                if announce is not None:
                    yield announce
                yield encode_event(delta_event(delta))
            for frame in self._finish_frames():
                yield frame
        except (asyncio.CancelledError, GeneratorExit):
            LOG.info(
                "relay session cancelled session=%s state=%s tokens=%s elapsed=%.3fs",
                self.id,
                self.state.value,
                self.token_count,
                self.elapsed,
                extra=self.log_extra(),
            )
            raise
