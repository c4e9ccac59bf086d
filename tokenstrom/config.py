"""Configuration models and loaders for tokenstrom.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "tokenstrom/config.yaml"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class EnrichmentConfig(BaseModel):
    """Retrieval collaborator and context budget settings."""

    model_config = ConfigDict(extra="forbid")

    retrieval_url: str | None = None
    budget_seconds: float = 1.0
    max_snippets: int = 5
    snippet_chars: int = 300
    search_limit: int = 10

    @field_validator("budget_seconds")
    @classmethod
    def _validate_budget(cls, value: float) -> float:
        """Reject non-positive enrichment budgets."""
        if value <= 0:
            raise ValueError("enrichment budget_seconds must be > 0")
        return value

    @field_validator("max_snippets", "snippet_chars", "search_limit")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("enrichment limits must be >= 1")
        return value


class PacingConfig(BaseModel):
    """Per-character emission intervals for synthesized token streams.

    All values are milliseconds; 0 disables sleeping entirely.
    """

    model_config = ConfigDict(extra="forbid")

    replay_reasoning_ms: int = 15
    replay_content_ms: int = 10
    demo_reasoning_ms: int = 20
    demo_content_ms: int = 25
    demo_section_pause_ms: int = 500

    @field_validator("*")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("pacing intervals must be >= 0")
        return value


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"

    upstream_base_url: str
    upstream_api_key: str | None = None
    upstream_default_model: str | None = None
    upstream_max_tokens: int | None = None
    upstream_temperature: float | None = None

    capacity_markers: list[str] = Field(default_factory=lambda: ["governor"])
    capacity_status_codes: list[int] = Field(default_factory=list)
    missing_credential_policy: Literal["demo", "fatal"] | None = None
    interrupted_stream_policy: Literal["finish", "demo"] | None = None
    stream_keepalive_seconds: float | None = None

    enrichment: EnrichmentConfig | None = None
    pacing: PacingConfig | None = None
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "RelayConfig":
        """Validate that service_base_url includes host and port, then fill defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        if self.upstream_default_model is None:
            self.upstream_default_model = "deepseek-reasoner"
        if self.upstream_max_tokens is None:
            self.upstream_max_tokens = 8192
        if self.upstream_temperature is None:
            self.upstream_temperature = 0.1
        if self.missing_credential_policy is None:
            self.missing_credential_policy = "demo"
        if self.interrupted_stream_policy is None:
            self.interrupted_stream_policy = "finish"
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 0.0
        if self.enrichment is None:
            self.enrichment = EnrichmentConfig()
        if self.pacing is None:
            self.pacing = PacingConfig()
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("upstream_api_key", mode="before")
    @classmethod
    def _blank_key_to_none(cls, value: Any) -> Any:
        """Treat an empty or whitespace-only credential as missing."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("capacity_markers", "capacity_status_codes", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_INT_KEYS = {"upstream_max_tokens", "enrichment.max_snippets", "enrichment.snippet_chars", "enrichment.search_limit"}
_FLOAT_KEYS = {"upstream_temperature", "stream_keepalive_seconds", "enrichment.budget_seconds"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "TOKENSTROM_SERVICE_BASE_URL",
        "upstream_base_url": "TOKENSTROM_UPSTREAM_BASE_URL",
        "upstream_api_key": "TOKENSTROM_UPSTREAM_API_KEY",
        "upstream_default_model": "TOKENSTROM_UPSTREAM_DEFAULT_MODEL",
        "upstream_max_tokens": "TOKENSTROM_UPSTREAM_MAX_TOKENS",
        "upstream_temperature": "TOKENSTROM_UPSTREAM_TEMPERATURE",
        "missing_credential_policy": "TOKENSTROM_MISSING_CREDENTIAL_POLICY",
        "interrupted_stream_policy": "TOKENSTROM_INTERRUPTED_STREAM_POLICY",
        "stream_keepalive_seconds": "TOKENSTROM_STREAM_KEEPALIVE_SECONDS",
        "enrichment.retrieval_url": "TOKENSTROM_RETRIEVAL_URL",
        "enrichment.budget_seconds": "TOKENSTROM_ENRICHMENT_BUDGET_SECONDS",
        "enrichment.max_snippets": "TOKENSTROM_ENRICHMENT_MAX_SNIPPETS",
        "enrichment.snippet_chars": "TOKENSTROM_ENRICHMENT_SNIPPET_CHARS",
        "enrichment.search_limit": "TOKENSTROM_ENRICHMENT_SEARCH_LIMIT",
        "logging.level": "TOKENSTROM_LOG_LEVEL",
        "logging.json_logs": "TOKENSTROM_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})
    out["enrichment"] = dict(out.get("enrichment") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in _INT_KEYS:
            parsed: Any = int(value)
        elif key in _FLOAT_KEYS:
            parsed = float(value)
        elif key.endswith("_policy"):
            parsed = value.strip().lower()
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
            continue
        else:
            parsed = value

        section, _, field = key.partition(".")
        if field:
            out[section][field] = parsed
        else:
            out[key] = parsed

    return out


def load_config(path: str | None = None) -> RelayConfig:
    """Load, merge, and validate relay configuration."""
    final_path = path or os.getenv("TOKENSTROM_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return RelayConfig.model_validate(raw)
