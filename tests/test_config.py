from pathlib import Path

import pytest
from pydantic import ValidationError

from tokenstrom.config import RelayConfig, load_config


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_are_filled_after_validation() -> None:
    cfg = RelayConfig.model_validate({"upstream_base_url": "http://127.0.0.1:10000"})

    assert cfg.upstream_default_model == "deepseek-reasoner"
    assert cfg.upstream_max_tokens == 8192
    assert cfg.upstream_temperature == 0.1
    assert cfg.capacity_markers == ["governor"]
    assert cfg.missing_credential_policy == "demo"
    assert cfg.interrupted_stream_policy == "finish"
    assert cfg.enrichment.budget_seconds == 1.0
    assert cfg.enrichment.max_snippets == 5
    assert cfg.pacing.demo_section_pause_ms == 500
    assert cfg.logging.level == "INFO"


def test_blank_api_key_is_treated_as_missing() -> None:
    cfg = RelayConfig.model_validate({"upstream_base_url": "http://u", "upstream_api_key": "   "})

    assert cfg.upstream_api_key is None


def test_service_base_url_requires_port() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://u", "service_base_url": "http://localhost"})


def test_unknown_keys_and_bad_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://u", "unknown": 1})
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://u", "pacing": {"demo_content_ms": -1}})
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://u", "enrichment": {"budget_seconds": 0}})
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_base_url": "http://u", "missing_credential_policy": "explode"})


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "upstream_base_url: http://127.0.0.1:10000\n"
        "capacity_markers: null\n"
        "enrichment:\n  retrieval_url: http://127.0.0.1:10002/search\n"
        "logging:\n  json: true\n",
    )

    cfg = load_config(path)

    assert cfg.capacity_markers == []
    assert cfg.enrichment.retrieval_url == "http://127.0.0.1:10002/search"
    assert cfg.logging.json_logs is True


def test_environment_overrides_file_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "upstream_base_url: http://from-file:1\nupstream_max_tokens: 100\n")
    monkeypatch.setenv("TOKENSTROM_UPSTREAM_BASE_URL", "http://from-env:2")
    monkeypatch.setenv("TOKENSTROM_UPSTREAM_MAX_TOKENS", "256")
    monkeypatch.setenv("TOKENSTROM_UPSTREAM_API_KEY", "sk-env")
    monkeypatch.setenv("TOKENSTROM_MISSING_CREDENTIAL_POLICY", "FATAL")
    monkeypatch.setenv("TOKENSTROM_ENRICHMENT_BUDGET_SECONDS", "0.25")
    monkeypatch.setenv("TOKENSTROM_LOG_JSON", "yes")

    cfg = load_config(path)

    assert cfg.upstream_base_url == "http://from-env:2"
    assert cfg.upstream_max_tokens == 256
    assert cfg.upstream_api_key == "sk-env"
    assert cfg.missing_credential_policy == "fatal"
    assert cfg.enrichment.budget_seconds == 0.25
    assert cfg.logging.json_logs is True


def test_missing_file_allows_environment_only_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOKENSTROM_UPSTREAM_BASE_URL", "http://from-env:2")

    cfg = load_config(str(tmp_path / "absent.yaml"))

    assert cfg.upstream_base_url == "http://from-env:2"


def test_non_mapping_yaml_root_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "- just\n- a list\n"))
