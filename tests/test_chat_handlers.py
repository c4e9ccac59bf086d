import asyncio

import httpx

from tokenstrom.chat_handlers import sse_comment, stream_with_keepalive
from tokenstrom.config import EnrichmentConfig, PacingConfig, RelayConfig
from tokenstrom.enrichment import ContextEnricher, NullRetrievalClient
from tokenstrom.fallback import FallbackOrchestrator
from tokenstrom.session import RelaySession, SessionState
from tokenstrom.upstream import UpstreamClient


class _FakeRequest:
    def __init__(self) -> None:
        self.disconnected = False
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.disconnected


def _make_cfg() -> RelayConfig:
    return RelayConfig.model_validate(
        {
            "service_base_url": "http://127.0.0.1:10001",
            "upstream_base_url": "http://127.0.0.1:10000",
            "upstream_api_key": "sk-test",
        }
    )


def test_client_disconnect_cancels_upstream_read() -> None:
    upstream_closed = asyncio.Event()
    session_holder: list[RelaySession] = []

    async def run() -> list[bytes]:
        async def body():
            try:
                yield b'data: {"choices":[{"index":0,"delta":{"content":"first"}}]}\n\n'
                await asyncio.Event().wait()
                yield b"data: [DONE]\n\n"
            finally:
                upstream_closed.set()

        upstream = UpstreamClient(_make_cfg())
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
        upstream._build_client = lambda: httpx.AsyncClient(base_url=upstream._base_url, transport=transport)
        session = RelaySession(
            messages=[{"role": "user", "content": "Hi"}],
            upstream=upstream,
            enricher=ContextEnricher(NullRetrievalClient(), EnrichmentConfig()),
            orchestrator=FallbackOrchestrator(upstream, PacingConfig()),
        )
        session_holder.append(session)

        request = _FakeRequest()
        frames: list[bytes] = []
        async for frame in stream_with_keepalive(session.stream(), keepalive_seconds=0.05, request=request):
            frames.append(frame)
            if b'"token_count"' in frame:
                request.disconnected = True
        await asyncio.wait_for(upstream_closed.wait(), timeout=1.0)
        return frames

    frames = asyncio.run(run())

    data_frames = [frame for frame in frames if frame != sse_comment("keepalive")]
    assert len(data_frames) == 4
    assert b'"content": "first"' in data_frames[-1]
    assert all(b"[DONE]" not in frame for frame in frames)
    session = session_holder[0]
    assert session.state is SessionState.STREAMING
    assert session.outcome is None


def test_keepalive_wrapper_forwards_frames_unchanged_and_closes_source() -> None:
    closed: list[bool] = []

    async def source():
        try:
            yield b"data: a\n\n"
            await asyncio.sleep(0.12)
            yield b"data: b\n\n"
        finally:
            closed.append(True)

    async def run() -> list[bytes]:
        return [frame async for frame in stream_with_keepalive(source(), keepalive_seconds=0.05)]

    frames = asyncio.run(run())

    assert frames[0] == b"data: a\n\n"
    assert frames[-1] == b"data: b\n\n"
    assert sse_comment("keepalive") in frames[1:-1]
    assert closed == [True]
