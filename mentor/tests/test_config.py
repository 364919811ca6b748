"""Tests for configuration validation."""

import logging
from types import SimpleNamespace

import pytest

from mentor.core.config import Settings, validate_config


def make_settings(**overrides):
    defaults = dict(
        ENV="development",
        CONFIG_STRICT=False,
        REMOTE_URL="https://remote.test",
        REMOTE_API_KEY="anon-key",
        AT_RISK_CUTOFF_HOUR=20,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def test_complete_config_passes():
    assert validate_config(strict=True, settings_obj=make_settings()) is True


def test_missing_remote_warns_in_lenient_mode(caplog):
    with caplog.at_level(logging.WARNING, logger="mentor"):
        validate_config(strict=False, settings_obj=make_settings(REMOTE_URL=None))

    assert any("REMOTE_URL" in r.getMessage() for r in caplog.records)


def test_missing_remote_raises_in_strict_mode():
    with pytest.raises(RuntimeError) as exc_info:
        validate_config(strict=True, settings_obj=make_settings(REMOTE_API_KEY=""))
    assert "REMOTE_API_KEY" in str(exc_info.value)
    assert "anon-key" not in str(exc_info.value)


def test_cutoff_hour_out_of_range_raises_in_strict_mode():
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=make_settings(AT_RISK_CUTOFF_HOUR=24))


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("SYNC_MAX_RETRIES", "3")
    monkeypatch.setenv("AT_RISK_CUTOFF_HOUR", "21")

    cfg = Settings()

    assert cfg.SYNC_MAX_RETRIES == 3
    assert cfg.AT_RISK_CUTOFF_HOUR == 21
    assert cfg.BANK_LOOKBACK_DAYS == 30


def test_all_problems_reported_together():
    bad = make_settings(REMOTE_URL=None, SYNC_BACKOFF_BASE_SECONDS=60, SYNC_BACKOFF_CAP_SECONDS=30, DEFAULT_TIMEZONE="Mars/Olympus")

    with pytest.raises(RuntimeError) as exc_info:
        validate_config(strict=True, settings_obj=bad)

    message = str(exc_info.value)
    assert "REMOTE_URL" in message
    assert "SYNC_BACKOFF_BASE_SECONDS" in message
    assert "Mars/Olympus" in message
