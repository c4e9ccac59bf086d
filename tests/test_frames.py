import asyncio
import json

from tokenstrom.frames import (
    DONE_FRAME,
    INCOMPLETE,
    Frame,
    FrameDecoder,
    FrameError,
    decode_frame,
    encode_event,
    iter_frames,
)

_STREAM = (
    b'data: {"choices":[{"delta":{"reasoning_content":"Th\xc3\xa9"}}]}\n\n'
    b": keepalive\n\n"
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\r\n\r\n'
    b"event: ping\n"
    b"data: [DONE]\n\n"
)


def _decode_in_chunks(data: bytes, size: int) -> list[Frame | FrameError]:
    decoder = FrameDecoder()
    frames: list[Frame | FrameError] = []
    for start in range(0, len(data), size):
        frames.extend(decoder.feed(data[start : start + size]))
    frames.extend(decoder.flush())
    return frames


def test_encode_event_is_single_data_line_with_blank_terminator() -> None:
    raw = encode_event({"type": "status", "message": "ü"})

    assert raw == 'data: {"type": "status", "message": "ü"}\n\n'.encode("utf-8")


def test_done_frame_literal() -> None:
    assert DONE_FRAME == b"data: [DONE]\n\n"


def test_decode_frame_returns_incomplete_without_newline() -> None:
    result, rest = decode_frame(b'data: {"a": 1')

    assert result is INCOMPLETE
    assert rest == b'data: {"a": 1'


def test_decode_frame_returns_remainder_after_one_frame() -> None:
    result, rest = decode_frame(b'data: {"a": 1}\n\ndata: [DONE]\n\n')

    assert isinstance(result, Frame)
    assert result.payload == {"a": 1}
    assert rest == b"\ndata: [DONE]\n\n"


def test_chunk_boundaries_do_not_change_decoded_frames() -> None:
    expected = _decode_in_chunks(_STREAM, len(_STREAM))

    for size in (1, 2, 3, 5, 7, 16):
        assert _decode_in_chunks(_STREAM, size) == expected

    assert [frame.data for frame in expected][-1] == "[DONE]"
    assert expected[0].payload == {"choices": [{"delta": {"reasoning_content": "Thé"}}]}
    assert expected[1].payload == {"choices": [{"delta": {"content": "Hi"}}]}
    assert len(expected) == 3


def test_split_multibyte_character_waits_for_next_read() -> None:
    decoder = FrameDecoder()
    encoded = 'data: {"content": "é"}\n'.encode("utf-8")
    split = encoded.index(b"\xc3") + 1

    assert decoder.feed(encoded[:split]) == []
    frames = decoder.feed(encoded[split:])

    assert frames == [Frame(data='{"content": "é"}', payload={"content": "é"})]


def test_malformed_payload_becomes_frame_error_and_decoding_continues() -> None:
    frames = _decode_in_chunks(b"data: {not json}\n\ndata: [1, 2]\n\ndata: [DONE]\n\n", 4)

    assert isinstance(frames[0], FrameError)
    assert frames[0].raw == "data: {not json}"
    assert isinstance(frames[1], FrameError)
    assert frames[1].reason == "payload is not a JSON object"
    assert isinstance(frames[2], Frame)
    assert frames[2].is_done


def test_flush_decodes_unterminated_final_line() -> None:
    decoder = FrameDecoder()

    assert decoder.feed(b"data: [DONE]") == []
    assert decoder.pending == b"data: [DONE]"
    assert [frame.data for frame in decoder.flush()] == ["[DONE]"]
    assert decoder.pending == b""


def test_iter_frames_decodes_async_chunks() -> None:
    async def chunks():
        payload = json.dumps({"choices": [{"delta": {"content": "ok"}}]}).encode()
        yield b"data: " + payload[:5]
        yield b""
        yield payload[5:] + b"\n\n"
        yield b"data: [DONE]\n\n"

    async def collect() -> list[Frame | FrameError]:
        return [frame async for frame in iter_frames(chunks())]

    frames = asyncio.run(collect())

    assert frames[0].payload == {"choices": [{"delta": {"content": "ok"}}]}
    assert frames[1].is_done
