"""Event-stream framing: encode client events, decode upstream byte streams."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterable

DONE_PAYLOAD = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"


@dataclass(frozen=True)
class Frame:
    """One decoded `data:` line from an upstream event stream."""

    data: str
    payload: dict[str, Any] | None = None

    @property
    def is_done(self) -> bool:
        return self.data == DONE_PAYLOAD


@dataclass(frozen=True)
class FrameError:
    """A `data:` line whose payload is not usable; callers log and skip it."""

    raw: str
    reason: str


class _Incomplete:
    """Marker returned while the buffer holds no complete line."""

    _instance: "_Incomplete | None" = None

    def __new__(cls) -> "_Incomplete":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "INCOMPLETE"


INCOMPLETE = _Incomplete()

DecodeResult = Frame | FrameError | _Incomplete


def encode_event(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _parse_line(raw_line: bytes) -> Frame | FrameError | None:
    """Parse one complete line; return None for lines that carry no data frame."""
    line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
    if not line or line.startswith(":"):
        return None
    field, _, value = line.partition(":")
    if field != "data":
        # `event:`, `id:` and `retry:` fields carry nothing the relay consumes.
        return None
    data = value.strip()
    if data == DONE_PAYLOAD:
        return Frame(data=data)
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        return FrameError(raw=line, reason=str(exc))
    if not isinstance(payload, dict):
        return FrameError(raw=line, reason="payload is not a JSON object")
    return Frame(data=data, payload=payload)


def decode_frame(buffer: bytes) -> tuple[DecodeResult, bytes]:
    """Decode the next frame from `buffer`.

    Returns the decoded frame (or a non-fatal `FrameError`) together with the
    unconsumed remainder. When no complete line is buffered the result is
    `INCOMPLETE` and the buffer is returned untouched, so a partial line or a
    split multi-byte character waits for the next network read.
    """
    while True:
        newline = buffer.find(b"\n")
        if newline < 0:
            return INCOMPLETE, buffer
        raw_line = buffer[:newline]
        buffer = buffer[newline + 1 :]
        result = _parse_line(raw_line)
        if result is not None:
            return result, buffer


class FrameDecoder:
    """Incremental decoder holding back partial lines between reads."""

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> list[Frame | FrameError]:
        """Append one network chunk and return every frame it completed."""
        self._buffer += chunk
        out: list[Frame | FrameError] = []
        while True:
            result, self._buffer = decode_frame(self._buffer)
            if result is INCOMPLETE:
                return out
            out.append(result)  # type: ignore[arg-type]

    def flush(self) -> list[Frame | FrameError]:
        """Decode an unterminated final line at end of stream."""
        if not self._buffer:
            return []
        tail = self._buffer + b"\n"
        self._buffer = b""
        return self.feed(tail)


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncGenerator[Frame | FrameError, None]:
    """Lazily decode an async byte stream into frames (finite, not restartable)."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        if not chunk:
            continue
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame
