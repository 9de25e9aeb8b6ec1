import logging

import pytest

from attendrix.core.config import Settings, validate_config


def test_defaults():
    cfg = Settings(_env_file=None)
    assert cfg.STREAK_TIMEZONE == "Asia/Kolkata"
    assert cfg.MIRROR_TX_MAX_RETRIES == 5
    assert cfg.WRITE_BUFFER_DEBOUNCE_SECONDS == 15.0


def test_missing_required_warns_when_not_strict(caplog):
    cfg = Settings(_env_file=None, AUTHORITATIVE_API_URL=None, MIRROR_DATABASE_URL=None)
    with caplog.at_level(logging.WARNING, logger="attendrix"):
        assert validate_config(strict=False, settings_obj=cfg) is True
    assert "AUTHORITATIVE_API_URL" in caplog.text
    assert "MIRROR_DATABASE_URL" in caplog.text


def test_missing_required_raises_when_strict():
    cfg = Settings(_env_file=None, AUTHORITATIVE_API_URL=None, MIRROR_DATABASE_URL="sqlite:///mirror.db")
    with pytest.raises(RuntimeError, match="AUTHORITATIVE_API_URL"):
        validate_config(strict=True, settings_obj=cfg)


def test_non_positive_flush_interval_rejected():
    cfg = Settings(
        _env_file=None,
        AUTHORITATIVE_API_URL="https://rpc.test",
        MIRROR_DATABASE_URL="sqlite:///mirror.db",
        WRITE_BUFFER_FLUSH_INTERVAL_SECONDS=0,
    )
    with pytest.raises(RuntimeError, match="WRITE_BUFFER_FLUSH_INTERVAL_SECONDS"):
        validate_config(strict=True, settings_obj=cfg)


def test_complete_config_passes_strict():
    cfg = Settings(_env_file=None, AUTHORITATIVE_API_URL="https://rpc.test", MIRROR_DATABASE_URL="sqlite:///mirror.db")
    assert validate_config(strict=True, settings_obj=cfg) is True
