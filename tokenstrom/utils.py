"""Shared utility helpers for the tokenstrom package."""

from __future__ import annotations

import json
import time
from typing import Any, Iterable, Mapping


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def now_ms() -> int:
    """Return wall-clock time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def last_user_message_text(messages: Iterable[Mapping[str, Any]]) -> str:
    """Return the content of the most recent `user` message, or an empty string."""
    for message in reversed(list(messages)):
        if message.get("role") == "user":
            content = message.get("content")
            return content if isinstance(content, str) else ""
    return ""
