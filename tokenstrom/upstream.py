"""Client wrapper for the upstream OpenAI-compatible completion provider."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncGenerator, Callable, Iterable, Sequence

import httpx

from .config import RelayConfig
from .errors import CapacityError, ConfigurationError, GenericUpstreamError, UpstreamError
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

_COMPLETIONS_PATH = "/v1/chat/completions"

CapacityClassifier = Callable[[int | None, str], bool]


def marker_capacity_classifier(
    markers: Iterable[str],
    status_codes: Iterable[int] = (),
) -> CapacityClassifier:
    """Build a classifier matching body markers (case-insensitive) or status codes."""
    lowered = tuple(marker.lower() for marker in markers if marker)
    codes = frozenset(status_codes)

    def classify(status_code: int | None, body: str) -> bool:
        if status_code is not None and status_code in codes:
            return True
        text = body.lower()
        return any(marker in text for marker in lowered)

    return classify


async def _shielded_close(*resources: Any) -> bool:
    """Close response/client objects, surviving cancellation; report if cancelled."""
    cleanup_cancelled = False
    for resource in resources:
        if resource is None:
            continue
        try:
            await asyncio.shield(resource.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception as exc:
            LOG.debug("upstream resource close failed error=%s", exc)
    return cleanup_cancelled


class UpstreamStream:
    """Live upstream streaming response exposed as an async byte sequence."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient, *, trace_id: str) -> None:
        self._response = response
        self._client = client
        self._trace_id = trace_id
        self._started = time.monotonic()
        self._closed = False
        self.bytes_read = 0

    async def aiter_bytes(self) -> AsyncGenerator[bytes, None]:
        """Yield raw network chunks as they arrive."""
        async for chunk in self._response.aiter_bytes():
            self.bytes_read += len(chunk)
            yield chunk

    async def aclose(self) -> None:
        """Release the response and its dedicated client."""
        if self._closed:
            return
        self._closed = True
        close_started = time.monotonic()
        cleanup_cancelled = await _shielded_close(self._response, self._client)
        LOG.debug(
            "upstream stream closed trace=%s elapsed=%.3fs close_elapsed=%.3fs bytes=%s",
            self._trace_id,
            time.monotonic() - self._started,
            time.monotonic() - close_started,
            self.bytes_read,
        )
        if cleanup_cancelled:
            raise asyncio.CancelledError


class UpstreamClient:
    """Thin async HTTP client for the upstream completion endpoint.

    The client never retries: classification into `CapacityError` and
    `GenericUpstreamError` is reported to the caller, which owns the degrade
    decision.
    """

    def __init__(self, cfg: RelayConfig, classifier: CapacityClassifier | None = None) -> None:
        """Create an upstream client from relay configuration."""
        self.cfg = cfg
        self._base_url = cfg.upstream_base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)
        self._classifier = classifier or marker_capacity_classifier(
            cfg.capacity_markers,
            cfg.capacity_status_codes,
        )

    @property
    def has_credential(self) -> bool:
        return bool(self.cfg.upstream_api_key)

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json"}
        if self.cfg.upstream_api_key:
            headers["Authorization"] = f"Bearer {self.cfg.upstream_api_key}"
        return headers

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance for one call."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    def _payload(
        self,
        messages: Sequence[dict[str, Any]],
        model: str | None,
        *,
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        return {
            "model": model or self.cfg.upstream_default_model,
            "messages": [dict(message) for message in messages],
            "stream": stream,
            "max_tokens": max_tokens if max_tokens is not None else self.cfg.upstream_max_tokens,
            "temperature": temperature if temperature is not None else self.cfg.upstream_temperature,
        }

    def classify_failure(self, status_code: int | None, body: str) -> UpstreamError:
        """Map one failed upstream response to the error taxonomy."""
        message = f"upstream returned HTTP {status_code}" if status_code is not None else "upstream request failed"
        if self._classifier(status_code, body):
            return CapacityError(message, status_code=status_code, body=body)
        return GenericUpstreamError(message, status_code=status_code, body=body)

    def _require_credential(self) -> None:
        if not self.has_credential:
            raise ConfigurationError("Upstream API key not configured")

    async def open_stream(
        self,
        messages: Sequence[dict[str, Any]],
        model: str | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        trace_id: str | None = None,
    ) -> UpstreamStream:
        """Open a streaming completion; raise a classified error on failure."""
        self._require_credential()
        payload = self._payload(messages, model, stream=True, temperature=temperature, max_tokens=max_tokens)
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s method=POST path=%s payload=%s",
            tag,
            _COMPLETIONS_PATH,
            to_bounded_json(payload),
        )

        client = self._build_client()
        response: httpx.Response | None = None
        handed_off = False
        try:
            headers = self._headers()
            headers["Connection"] = "close"
            response = await client.send(
                client.build_request("POST", _COMPLETIONS_PATH, headers=headers, json=payload),
                stream=True,
            )
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise self.classify_failure(response.status_code, body)
            handed_off = True
            return UpstreamStream(response, client, trace_id=tag)
        except httpx.HTTPError as exc:
            raise GenericUpstreamError(f"upstream unreachable: {exc}") from exc
        finally:
            if not handed_off:
                if await _shielded_close(response, client):
                    raise asyncio.CancelledError

    async def complete(
        self,
        messages: Sequence[dict[str, Any]],
        model: str | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Run one non-streaming completion and return the decoded response."""
        self._require_credential()
        payload = self._payload(messages, model, stream=False, temperature=temperature, max_tokens=max_tokens)
        LOG.debug(
            "forwarding upstream request method=POST path=%s stream=false payload=%s",
            _COMPLETIONS_PATH,
            to_bounded_json(payload),
        )
        try:
            async with self._build_client() as client:
                response = await client.post(_COMPLETIONS_PATH, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise GenericUpstreamError(f"upstream unreachable: {exc}") from exc
        if not response.is_success:
            raise self.classify_failure(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise GenericUpstreamError("upstream returned a non-JSON body", status_code=response.status_code) from exc
        if not isinstance(data, dict):
            raise GenericUpstreamError("upstream returned a non-object body", status_code=response.status_code)
        return data
