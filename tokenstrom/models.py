"""Value types shared by the relay pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

DeltaKind = Literal["reasoning", "content"]
TokenSource = Literal["live", "replay", "demo", "none"]


@dataclass(frozen=True)
class Delta:
    """One streamed fragment of model output."""

    kind: DeltaKind
    text: str
    sequence: int


@dataclass(frozen=True)
class Usage:
    """Token accounting reported with the completion event."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "Usage":
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)

    @classmethod
    def from_payload(cls, raw: Any) -> "Usage | None":
        """Build usage from an upstream `usage` object; None when absent or unusable."""
        if not isinstance(raw, dict):
            return None
        values: dict[str, int] = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = raw.get(key)
            values[key] = value if isinstance(value, int) and not isinstance(value, bool) else 0
        if not any(values.values()):
            return None
        if not values["total_tokens"]:
            values["total_tokens"] = values["prompt_tokens"] + values["completion_tokens"]
        return cls(**values)

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CompletionOutcome:
    """Terminal record of a session: success or failure, never both."""

    source: TokenSource
    usage: Usage | None = None
    finish_reason: str | None = None
    error_kind: str | None = None
    message: str | None = None

    @classmethod
    def success(cls, source: TokenSource, *, usage: Usage | None, finish_reason: str | None) -> "CompletionOutcome":
        return cls(source=source, usage=usage, finish_reason=finish_reason)

    @classmethod
    def failure(cls, source: TokenSource, *, error_kind: str, message: str) -> "CompletionOutcome":
        return cls(source=source, error_kind=error_kind, message=message)

    @property
    def ok(self) -> bool:
        return self.error_kind is None
