import asyncio

import httpx

from tokenstrom.frames import Frame, FrameError, iter_frames
from tokenstrom.models import Delta, Usage
from tokenstrom.stream_pump import StreamPump


class _FakeSession:
    def __init__(self) -> None:
        self.id = "relay-test"
        self.token_count = 0

    def next_delta(self, kind, text) -> Delta:
        self.token_count += 1
        return Delta(kind=kind, text=text, sequence=self.token_count)


async def _chunks(*parts: bytes, error: Exception | None = None):
    for part in parts:
        yield part
    if error is not None:
        raise error


def _pump(*parts: bytes, error: Exception | None = None) -> tuple[StreamPump, list[Delta]]:
    pump = StreamPump(_FakeSession())

    async def run() -> list[Delta]:
        return [delta async for delta in pump.run(iter_frames(_chunks(*parts, error=error)))]

    return pump, asyncio.run(run())


def test_forwards_reasoning_then_content_in_order_and_stops_at_sentinel() -> None:
    pump, deltas = _pump(
        b'data: {"choices":[{"delta":{"reasoning_content":"think"}}]}\n\n',
        b'data: {"choices":[{"delta":{"content":"H"}}]}\n\n',
        b'data: {"choices":[{"delta":{"content":"i"},"finish_reason":"stop"}],'
        b'"usage":{"prompt_tokens":3,"completion_tokens":2,"total_tokens":5}}\n\n',
        b"data: [DONE]\n\n",
        b'data: {"choices":[{"delta":{"content":"late"}}]}\n\n',
    )

    assert [(d.kind, d.text, d.sequence) for d in deltas] == [
        ("reasoning", "think", 1),
        ("content", "H", 2),
        ("content", "i", 3),
    ]
    assert pump.outcome is not None
    assert pump.outcome.ok
    assert pump.outcome.source == "live"
    assert pump.outcome.finish_reason == "stop"
    assert pump.outcome.usage == Usage(3, 2, 5)


def test_chunk_with_both_fields_yields_reasoning_first() -> None:
    _, deltas = _pump(
        b'data: {"choices":[{"delta":{"content":"B","reasoning_content":"A"}}]}\n\ndata: [DONE]\n\n',
    )

    assert [(d.kind, d.text) for d in deltas] == [("reasoning", "A"), ("content", "B")]


def test_malformed_frame_is_skipped() -> None:
    pump, deltas = _pump(
        b"data: {broken\n\n",
        b'data: {"choices":[{"delta":{"content":"ok"}}]}\n\n',
        b"data: [DONE]\n\n",
    )

    assert [d.text for d in deltas] == ["ok"]
    assert pump.skipped_frames == 1
    assert pump.outcome is not None and pump.outcome.ok


def test_read_error_mid_stream_reports_interruption() -> None:
    pump, deltas = _pump(
        b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n',
        error=httpx.ReadError("connection reset"),
    )

    assert [d.text for d in deltas] == ["partial"]
    assert pump.outcome is not None
    assert not pump.outcome.ok
    assert pump.outcome.error_kind == "stream_interrupted"


def test_eof_without_sentinel_or_finish_reason_is_interruption() -> None:
    pump, _ = _pump(b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n')

    assert pump.outcome is not None
    assert pump.outcome.error_kind == "stream_interrupted"


def test_eof_after_finish_reason_counts_as_complete() -> None:
    pump, _ = _pump(b'data: {"choices":[{"delta":{"content":"x"},"finish_reason":"length"}]}\n\n')

    assert pump.outcome is not None
    assert pump.outcome.ok
    assert pump.outcome.finish_reason == "length"
    assert pump.outcome.usage is None


def test_in_band_error_object_is_interruption() -> None:
    pump, deltas = _pump(b'data: {"error":{"message":"model crashed"}}\n\n', b"data: [DONE]\n\n")

    assert deltas == []
    assert pump.outcome is not None
    assert "model crashed" in (pump.outcome.message or "")


def test_frames_from_a_list_are_accepted() -> None:
    async def frames():
        yield FrameError(raw="data: ?", reason="bad")
        yield Frame(data='{"choices":[{"delta":{"content":"z"}}]}', payload={"choices": [{"delta": {"content": "z"}}]})
        yield Frame(data="[DONE]")

    pump = StreamPump(_FakeSession())

    async def run() -> list[Delta]:
        return [delta async for delta in pump.run(frames())]

    assert [d.text for d in asyncio.run(run())] == ["z"]
    assert pump.skipped_frames == 1
