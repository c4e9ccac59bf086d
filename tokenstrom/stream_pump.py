"""Upstream frame consumption: turn decoded frames into ordered Deltas."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, AsyncGenerator, AsyncIterator

import httpx

from .errors import StreamInterrupted
from .frames import Frame, FrameError
from .models import CompletionOutcome, Delta, Usage
from .stream_chunks import extract_delta_texts, extract_finish, extract_upstream_error

if TYPE_CHECKING:
    from .session import RelaySession

LOG = logging.getLogger(__name__)


class StreamPump:
    """Forward upstream deltas one by one and record how the stream ended.

    `run()` yields each Delta the moment its frame is decoded. Once the
    generator is exhausted `outcome` is set: success on the `[DONE]` sentinel
    (or a finish signal followed by end of stream), `StreamInterrupted`
    otherwise. The pump never resumes or retries.
    """

    def __init__(self, session: "RelaySession") -> None:
        self.session = session
        self.outcome: CompletionOutcome | None = None
        self.skipped_frames = 0
        self._finish_reason: str | None = None
        self._usage: Usage | None = None

    def _interrupted(self, message: str) -> CompletionOutcome:
        return CompletionOutcome.failure("live", error_kind=StreamInterrupted.kind, message=message)

    def _completed(self) -> CompletionOutcome:
        return CompletionOutcome.success("live", usage=self._usage, finish_reason=self._finish_reason or "stop")

    async def run(self, frames: AsyncIterator[Frame | FrameError]) -> AsyncGenerator[Delta, None]:
        try:
            async for frame in frames:
                if isinstance(frame, FrameError):
                    self.skipped_frames += 1
                    LOG.warning(
                        "skipping malformed upstream frame session=%s reason=%s raw=%.200s",
                        self.session.id,
                        frame.reason,
                        frame.raw,
                    )
                    continue

                if frame.is_done:
                    # The sentinel is authoritative; anything still buffered is ignored.
                    self.outcome = self._completed()
                    return

                payload = frame.payload or {}
                error_text = extract_upstream_error(payload)
                if error_text is not None:
                    self.outcome = self._interrupted(f"upstream reported error mid-stream: {error_text}")
                    return

                for kind, text in extract_delta_texts(payload):
                    yield self.session.next_delta(kind, text)

                finish_reason, usage = extract_finish(payload)
                if finish_reason:
                    self._finish_reason = finish_reason
                if usage is not None:
                    self._usage = usage
        except (httpx.HTTPError, OSError) as exc:
            self.outcome = self._interrupted(f"upstream read failed: {exc}")
            return
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._finish_reason is not None:
            LOG.debug("upstream stream ended after finish signal without sentinel session=%s", self.session.id)
            self.outcome = self._completed()
        else:
            self.outcome = self._interrupted("upstream stream ended before the completion sentinel")
