"""Tests for environment-driven configuration."""

from datetime import timedelta

import pytest

from signalrelay.core.config import (
    CadenceConfig,
    ConsumerConfig,
    StoreConfig,
    TelegramConfig,
    get_settings,
    reset_settings,
    validate_required_settings,
)
from signalrelay.core.exceptions import ConfigurationError


def test_defaults():
    settings = get_settings()

    assert settings.store.database_url == "sqlite:///signalrelay.db"
    assert settings.telegram.parse_mode == "MarkdownV2"
    assert settings.telegram.timeout_seconds == 15.0
    assert settings.consumer.signal_batch_size == 20
    assert settings.consumer.news_batch_size == 1
    assert settings.consumer.commit_max_attempts == 3
    assert settings.consumer.news_enabled


@pytest.mark.parametrize("ms,seconds", [("60000", 60.0), ("1000", 10.0), ("0", 10.0), ("120000", 120.0)])
def test_poll_interval_floor(monkeypatch, ms, seconds):
    monkeypatch.setenv("SIGNAL_POLL_INTERVAL_MS", ms)

    assert ConsumerConfig().poll_interval_seconds == seconds


@pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("false", False), ("0", False)])
def test_boolean_parsing(monkeypatch, raw, expected):
    monkeypatch.setenv("NEWS_ENABLED", raw)
    monkeypatch.setenv("DEBUG", raw)
    reset_settings()

    assert ConsumerConfig().news_enabled is expected
    assert get_settings().debug is expected


def test_channel_fallbacks():
    only_premium = TelegramConfig(PREMIUM_CHANNEL_ID="@p")

    assert only_premium.channel_for("premium") == "@p"
    assert only_premium.channel_for("free") == "@p"
    assert only_premium.channel_for("news") == "@p"
    assert only_premium.channel_for("unknown") is None

    explicit = TelegramConfig(PREMIUM_CHANNEL_ID="@p", FREE_CHANNEL_ID="@f", NEWS_CHANNEL_ID="@n")
    assert explicit.channel_for("free") == "@f"
    assert explicit.channel_for("news") == "@n"


def test_cadence_windows(monkeypatch):
    monkeypatch.setenv("NEWS_PUBLISH_INTERVAL_MINUTES", "15")
    config = CadenceConfig()

    assert config.window("premium") == timedelta(hours=24)
    assert config.window("free") == timedelta(days=7)
    assert config.window("news") == timedelta(minutes=15)
    with pytest.raises(ConfigurationError):
        config.window("vip")


def test_failure_log_defaults_to_store(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///a.db")

    assert StoreConfig().resolved_failure_log_url == "sqlite:///a.db"

    monkeypatch.setenv("FAILURE_LOG_URL", "sqlite:///b.db")
    assert StoreConfig().resolved_failure_log_url == "sqlite:///b.db"


def test_bot_token_hidden_from_repr(monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", "123:secret")

    assert "123:secret" not in repr(TelegramConfig())


def test_validate_required_settings(monkeypatch):
    missing = validate_required_settings("consumer")
    assert "BOT_TOKEN" in missing
    assert "PREMIUM_CHANNEL_ID" in missing

    monkeypatch.setenv("BOT_TOKEN", "t")
    monkeypatch.setenv("PREMIUM_CHANNEL_ID", "@p")
    reset_settings()
    assert validate_required_settings("consumer") == []
    assert validate_required_settings("api") == ["ADMIN_TOKEN"]
    assert validate_required_settings("minimal") == []


@pytest.mark.parametrize("mode", ["MarkdownV2", "Markdown"])
def test_supported_parse_modes(monkeypatch, mode):
    monkeypatch.setenv("TELEGRAM_PARSE_MODE", mode)

    assert TelegramConfig().parse_mode == mode


@pytest.mark.parametrize("mode", ["HTML", "markdownv2", ""])
def test_unsupported_parse_mode_rejected(monkeypatch, mode):
    monkeypatch.setenv("TELEGRAM_PARSE_MODE", mode)

    with pytest.raises(ValueError, match="TELEGRAM_PARSE_MODE"):
        TelegramConfig()


def test_get_settings_wraps_invalid_values(monkeypatch):
    monkeypatch.setenv("TELEGRAM_PARSE_MODE", "HTML")
    reset_settings()

    with pytest.raises(ConfigurationError, match="TELEGRAM_PARSE_MODE"):
        get_settings()
