"""Helpers for relay wire payloads and upstream chunk inspection.

Outbound builders cover the closed set of client event shapes; every code path
(live, replay, demo) goes through them so consumers see identical shapes.
"""

from __future__ import annotations

from typing import Any

from .models import Delta, DeltaKind, Usage
from .utils import now_ms

_DELTA_FIELDS: dict[str, str] = {
    "reasoning": "reasoning_content",
    "content": "content",
}


def connection_event(timestamp_ms: int | None = None) -> dict[str, Any]:
    """Build the connection acknowledgement sent first on every stream."""
    return {
        "type": "connection",
        "status": "connected",
        "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
    }


def status_event(stage: str, message: str) -> dict[str, Any]:
    """Build a best-effort progress notice."""
    return {"type": "status", "stage": stage, "message": message}


def delta_event(delta: Delta, timestamp_ms: int | None = None) -> dict[str, Any]:
    """Build the client event for one Delta."""
    return {
        "choices": [{"delta": {_DELTA_FIELDS[delta.kind]: delta.text}}],
        "token_count": delta.sequence,
        "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
    }


def complete_event(usage: Usage) -> dict[str, Any]:
    """Build the completion event preceding the sentinel."""
    return {"type": "complete", "usage": usage.as_dict()}


def error_event(message: str) -> dict[str, Any]:
    """Build the pre-stream fatal event."""
    return {"error": message}


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def extract_delta_texts(chunk: dict[str, Any]) -> list[tuple[DeltaKind, str]]:
    """Return reasoning and content text carried by one upstream stream chunk.

    Reasoning is reported before content when a chunk carries both. Empty
    strings and non-string values are ignored.
    """
    choice = pick_primary_choice(chunk)
    if choice is None:
        return []
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return []

    out: list[tuple[DeltaKind, str]] = []
    reasoning = delta.get("reasoning_content")
    if not isinstance(reasoning, str) or not reasoning:
        reasoning = delta.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        out.append(("reasoning", reasoning))
    content = delta.get("content")
    if isinstance(content, str) and content:
        out.append(("content", content))
    return out


def extract_finish(chunk: dict[str, Any]) -> tuple[str | None, Usage | None]:
    """Return `(finish_reason, usage)` signalled by an upstream chunk, if any."""
    choice = pick_primary_choice(chunk) or {}
    finish_reason = choice.get("finish_reason")
    if not isinstance(finish_reason, str) or not finish_reason:
        finish_reason = None
    return finish_reason, Usage.from_payload(chunk.get("usage"))


def extract_upstream_error(chunk: dict[str, Any]) -> str | None:
    """Return the message of an in-band upstream error object."""
    error = chunk.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "upstream error")
    return str(error)


def extract_message_texts(response: dict[str, Any]) -> tuple[str, str]:
    """Return `(reasoning, content)` from a non-streaming completion response."""
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return "", ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return "", ""
    reasoning = message.get("reasoning_content") or message.get("reasoning") or ""
    content = message.get("content") or ""
    return (
        reasoning if isinstance(reasoning, str) else "",
        content if isinstance(content, str) else "",
    )
