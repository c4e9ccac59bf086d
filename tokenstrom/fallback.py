"""Degrade chain: non-streaming replay, then the local demo generator."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncGenerator, Literal

from .config import PacingConfig
from .errors import CapacityError, RelayError, StreamInterrupted
from .models import CompletionOutcome, Delta, DeltaKind, Usage
from .stream_chunks import extract_message_texts, pick_primary_choice
from .upstream import UpstreamClient

if TYPE_CHECKING:
    from .session import RelaySession

LOG = logging.getLogger(__name__)

_DEMO_QUERY_MAX_CHARS = 200


async def _pace(interval_ms: int) -> None:
    if interval_ms > 0:
        await asyncio.sleep(interval_ms / 1000.0)


async def paced_deltas(
    session: "RelaySession",
    kind: DeltaKind,
    text: str,
    interval_ms: int,
) -> AsyncGenerator[Delta, None]:
    """Emit `text` one character per Delta, sleeping `interval_ms` after each."""
    for char in text:
        yield session.next_delta(kind, char)
        await _pace(interval_ms)


def _demo_subject(query: str) -> str:
    subject = " ".join(query.split())
    if not subject:
        return "your request"
    if len(subject) > _DEMO_QUERY_MAX_CHARS:
        subject = subject[:_DEMO_QUERY_MAX_CHARS].rstrip() + "..."
    return f'"{subject}"'


class DemoStreamGenerator:
    """Fully local, deterministic reasoning and content stream.

    Text depends only on the query; pacing comes from configuration (0 in tests).
    """

    def __init__(self, pacing: PacingConfig) -> None:
        self.pacing = pacing

    @staticmethod
    def reasoning_text(query: str) -> str:
        subject = _demo_subject(query)
        return (
            f"Let me think about {subject}...\n\n"
            "The completion service did not answer, so this reply is produced locally by the relay.\n\n"
            "What matters here:\n"
            "1. Acknowledge the question that was asked\n"
            "2. Explain that the live model is unavailable\n"
            "3. Tell the user how to get a real answer\n\n"
            "I will keep the reply short and label it clearly as a placeholder."
        )

    @staticmethod
    def content_text(query: str) -> str:
        subject = _demo_subject(query)
        return (
            f"This is a locally generated placeholder for {subject}.\n\n"
            "**What happened:** the upstream completion service could not be reached or refused the request, "
            "so the relay switched to demo mode instead of ending the stream early.\n\n"
            "**What to do next:** try again in a moment. Once the service recovers you will receive the "
            "model's real reasoning and answer through this same stream."
        )

    def usage(self, query: str) -> Usage:
        return Usage.of(len(query), len(self.content_text(query)))

    async def stream(self, session: "RelaySession", query: str) -> AsyncGenerator[Delta, None]:
        async for delta in paced_deltas(session, "reasoning", self.reasoning_text(query), self.pacing.demo_reasoning_ms):
            yield delta
        await _pace(self.pacing.demo_section_pause_ms)
        async for delta in paced_deltas(session, "content", self.content_text(query), self.pacing.demo_content_ms):
            yield delta


class FallbackOrchestrator:
    """Pick and run exactly one degrade branch for a session.

    Only `CapacityError` earns the one-shot non-streaming retry; every other
    failure goes straight to the demo generator. The resulting
    `CompletionOutcome` is recorded on the session.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        pacing: PacingConfig,
        *,
        interrupted_stream_policy: Literal["finish", "demo"] = "finish",
        demo: DemoStreamGenerator | None = None,
    ) -> None:
        self.upstream = upstream
        self.pacing = pacing
        self.interrupted_stream_policy = interrupted_stream_policy
        self.demo = demo or DemoStreamGenerator(pacing)

    async def _non_streaming_retry(self, session: "RelaySession") -> dict | None:
        try:
            return await self.upstream.complete(
                list(session.messages),
                session.model,
                temperature=session.temperature,
                max_tokens=session.max_tokens,
            )
        except RelayError as exc:
            LOG.warning(
                "non-streaming retry failed session=%s kind=%s status=%s error=%s",
                session.id,
                exc.kind,
                getattr(exc, "status_code", None),
                exc,
                extra=session.log_extra("replay"),
            )
        except Exception:
            LOG.exception("non-streaming retry crashed session=%s", session.id, extra=session.log_extra("replay"))
        return None

    async def run(self, session: "RelaySession", failure: RelayError | None) -> AsyncGenerator[Delta, None]:
        """Yield the degrade branch's Deltas; `failure=None` means demo was requested."""
        if (
            isinstance(failure, StreamInterrupted)
            and session.token_count > 0
            and self.interrupted_stream_policy == "finish"
        ):
            LOG.warning(
                "closing interrupted stream without synthesized content session=%s tokens=%s error=%s",
                session.id,
                session.token_count,
                failure,
                extra=session.log_extra("live"),
            )
            session.finish(
                CompletionOutcome.failure("live", error_kind=StreamInterrupted.kind, message=str(failure))
            )
            return

        if isinstance(failure, CapacityError):
            LOG.info(
                "capacity error, trying non-streaming completion session=%s",
                session.id,
                extra=session.log_extra("replay"),
            )
            response = await self._non_streaming_retry(session)
            if response is not None:
                reasoning, content = extract_message_texts(response)
                if reasoning or content:
                    async for delta in paced_deltas(session, "reasoning", reasoning, self.pacing.replay_reasoning_ms):
                        yield delta
                    async for delta in paced_deltas(session, "content", content, self.pacing.replay_content_ms):
                        yield delta
                    finish_reason = (pick_primary_choice(response) or {}).get("finish_reason")
                    session.finish(
                        CompletionOutcome.success(
                            "replay",
                            usage=Usage.from_payload(response.get("usage")),
                            finish_reason=finish_reason if isinstance(finish_reason, str) else "stop",
                        )
                    )
                    return
                LOG.warning(
                    "non-streaming retry returned no text session=%s",
                    session.id,
                    extra=session.log_extra("replay"),
                )

        if failure is None:
            LOG.info("demo stream requested session=%s", session.id, extra=session.log_extra("demo"))
        else:
            LOG.warning(
                "all upstream paths failed, using demo generator session=%s kind=%s error=%s",
                session.id,
                failure.kind,
                failure,
                extra=session.log_extra("demo"),
            )
        query = session.last_user_message
        async for delta in self.demo.stream(session, query):
            yield delta
        session.finish(CompletionOutcome.success("demo", usage=self.demo.usage(query), finish_reason="stop"))
