"""Helpers for relay endpoint handling."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, Literal

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError, UpstreamError
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    """One role-tagged conversation message."""

    role: Literal["user", "system", "assistant"]
    content: str


class RelayRequest(BaseModel):
    """Inbound completion request body."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(min_length=1)
    rag_context: bool = Field(default=False, alias="ragContext")
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, alias="maxTokens", ge=1)

    def message_dicts(self) -> list[dict[str, str]]:
        return [message.model_dump() for message in self.messages]


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def read_relay_request(request: Request) -> RelayRequest:
    """Parse and validate the request body; reject bad input before any stream opens."""
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"request body is not valid JSON: {exc.msg}") from exc
    try:
        relay_request = RelayRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False)) from exc
    client_host = getattr(getattr(request, "client", None), "host", None)
    LOG.debug("incoming relay request client=%s payload=%s", client_host, to_bounded_json(payload))
    return relay_request


async def _cancel_pending(task: asyncio.Task[Any]) -> None:
    if not task.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward frames unchanged, stop on client disconnect, optionally emit heartbeats.

    Disconnect cancels the pending step of `source`, which closes the upstream
    read beneath it.
    """
    started = time.monotonic()
    try:
        emit_keepalive = keepalive_seconds > 0
        poll_seconds = keepalive_seconds if emit_keepalive else 0.5

        iterator = source.__aiter__()
        while True:
            next_item = asyncio.create_task(iterator.__anext__())
            try:
                while not next_item.done():
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if request is not None and await request.is_disconnected():
                        LOG.info("client disconnected, stopping stream elapsed=%.3fs", time.monotonic() - started)
                        await _cancel_pending(next_item)
                        return
                    if emit_keepalive:
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                await _cancel_pending(next_item)
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception as exc:
            LOG.debug("stream source close failed error=%s", exc)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError


async def handle_stream_request(
    *,
    request: Request,
    service: Any,
    force_demo: bool = False,
) -> StreamingResponse:
    """Validate one request and answer it with a relay event stream."""
    relay_request = await read_relay_request(request)
    stream = service.stream(relay_request, force_demo=force_demo)
    return build_sse_response(
        stream_with_keepalive(
            stream,
            keepalive_seconds=service.cfg.stream_keepalive_seconds or 0.0,
            request=request,
        )
    )


async def handle_query_request(*, request: Request, service: Any) -> JSONResponse:
    """Validate one request and answer it with a non-streaming completion."""
    relay_request = await read_relay_request(request)
    try:
        return JSONResponse(await service.query(relay_request))
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except UpstreamError as exc:
        LOG.warning("query failed kind=%s status=%s error=%s body=%.500s", exc.kind, exc.status_code, exc, exc.body)
        raise HTTPException(status_code=502, detail=f"Upstream error: {exc}") from exc
