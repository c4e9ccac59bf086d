import json
import logging

from tokenstrom.config import LoggingConfig
from tokenstrom.logging_utils import JsonLogFormatter, setup_logging


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="WARNING", json=False))

    assert logging.getLogger().level == logging.WARNING
    assert noisy.level == logging.WARNING
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_uses_json_formatter_when_requested() -> None:
    setup_logging(LoggingConfig(level="INFO", json=True))

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, JsonLogFormatter)


def test_json_formatter_includes_session_fields() -> None:
    record = logging.LogRecord("tokenstrom.session", logging.INFO, __file__, 1, "session %s done", ("s1",), None)
    record.session_id = "relay-1"
    record.source = "demo"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "session s1 done"
    assert payload["logger"] == "tokenstrom.session"
    assert payload["session_id"] == "relay-1"
    assert payload["source"] == "demo"
    assert "state" not in payload
