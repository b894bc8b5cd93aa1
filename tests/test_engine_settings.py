from __future__ import annotations

import logging

import orjson
import pytest
from pydantic import ValidationError

from placement.core.clock import FrozenClock, SystemClock, validate_timezone
from placement.core.logging_config import JSONLogFormatter, configure_logging, correlation_id_var
from placement.core.settings import EngineSettings, ScoringWeights
from tests.support import START


def test_environment_overrides_nested_values(monkeypatch) -> None:
    monkeypatch.setenv("PLACEMENT_RANKING__WEIGHTS__SUCCESS", "0.9")
    monkeypatch.setenv("PLACEMENT_LEDGER__ATTEMPTS", "7")
    monkeypatch.setenv("PLACEMENT_DATABASE__DSN", "sqlite:///override.db")
    monkeypatch.setenv("PLACEMENT_LOG_LEVEL", "debug")

    settings = EngineSettings()

    assert settings.ranking.weights.success == pytest.approx(0.9)
    assert settings.ranking.weights.headroom == pytest.approx(0.30)
    assert settings.ledger.attempts == 7
    assert settings.database.dsn == "sqlite:///override.db"
    assert settings.log_level == "DEBUG"


def test_weights_must_not_all_be_zero() -> None:
    with pytest.raises(ValidationError, match="SCORING_WEIGHTS_INVALID"):
        ScoringWeights(headroom=0, success=0, preference=0, recency=0)
    with pytest.raises(ValidationError):
        ScoringWeights(success=-0.1)


def test_timezone_and_level_are_validated() -> None:
    with pytest.raises(ValidationError, match="CONFIG_TZ_INVALID"):
        EngineSettings(timezone="Mars/Olympus")
    with pytest.raises(ValidationError, match="CONFIG_LOG_LEVEL_INVALID"):
        EngineSettings(log_level="chatty")
    assert EngineSettings(timezone="Asia/Tehran").timezone == "Asia/Tehran"


def test_clocks_follow_configured_zone() -> None:
    frozen = FrozenClock(START, timezone="Asia/Tehran")
    assert frozen.today().isoformat() == "2025-01-06"
    assert frozen.now().utcoffset().total_seconds() == 3.5 * 3600
    frozen.advance(15 * 3600)
    assert frozen.today().isoformat() == "2025-01-07"
    assert frozen.monotonic() == 15 * 3600

    system = SystemClock(timezone=validate_timezone("UTC"), now_factory=lambda: START.replace(tzinfo=None))
    assert system.now() == START

    with pytest.raises(ValueError, match="CONFIG_CLOCK_FROZEN"):
        FrozenClock(START.replace(tzinfo=None))


def test_json_formatter_carries_code_and_correlation_id() -> None:
    formatter = JSONLogFormatter(service_name="placement-engine")
    record = logging.LogRecord("placement.ledger", logging.INFO, __file__, 1, "capacity %s applied", ("reserve",), None)
    record.code = "RESERVE"
    record.window = object()
    token = correlation_id_var.set("req-42")
    try:
        payload = orjson.loads(formatter.format(record))
    finally:
        correlation_id_var.reset(token)

    assert payload["message"] == "capacity reserve applied"
    assert payload["code"] == "RESERVE"
    assert payload["correlation_id"] == "req-42"
    assert payload["service"] == "placement-engine"
    assert isinstance(payload["window"], str)
    assert "args" not in payload


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("placement-engine", "DEBUG")
        configure_logging("placement-engine", "DEBUG")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONLogFormatter)
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
