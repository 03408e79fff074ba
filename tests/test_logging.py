import json
import logging

from switchbot_fan_bridge import logging as bridge_logging
from switchbot_fan_bridge.config import Config
from switchbot_fan_bridge.logging import JsonFormatter, redact_mapping


def test_redact_mapping_hides_credentials() -> None:
    redacted = redact_mapping(
        {"Authorization": "token", "sign": "abc", "X-API-Key": "k", "nonce": "n"},
        extra_keys=["nonce"],
    )
    assert redacted == {
        "Authorization": "***REDACTED***",
        "sign": "***REDACTED***",
        "X-API-Key": "***REDACTED***",
        "nonce": "***REDACTED***",
    }


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord(
        name="switchbot.dispatch",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Cloud command acknowledged",
        args=(),
        exc_info=None,
    )
    record.device_id = "AABBCCDDEEFF"
    record.command = "turnOn"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["logger"] == "switchbot.dispatch"
    assert payload["message"] == "Cloud command acknowledged"
    assert payload["device_id"] == "AABBCCDDEEFF"
    assert payload["command"] == "turnOn"
    assert "lineno" not in payload


def test_configure_logging_applies_subsystem_levels(monkeypatch) -> None:
    captured = {}
    monkeypatch.setattr(bridge_logging.logging.config, "dictConfig", captured.update)

    bridge_logging.configure_logging(
        Config(log_format="json", log_level="WARNING", dispatch_log_level="DEBUG", radio_log_level="ERROR")
    )

    loggers = captured["loggers"]
    assert loggers["switchbot"]["level"] == "WARNING"
    assert loggers["switchbot.dispatch"]["level"] == "DEBUG"
    assert loggers["switchbot.scheduler"]["level"] == "DEBUG"
    assert loggers["switchbot.radio"]["level"] == "ERROR"
    assert loggers["switchbot.api"]["level"] == "WARNING"
    assert captured["formatters"]["default"]["()"].endswith("JsonFormatter")
