"""
Configuration management for signalrelay.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from signalrelay.core.exceptions import ConfigurationError

# Lower bound for the delay between ticks
MIN_POLL_INTERVAL_SECONDS = 10.0

# Telegram markup dialects the formatter can escape for
SUPPORTED_PARSE_MODES = ("MarkdownV2", "Markdown")


def _parse_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y")
    return bool(v)


class StoreConfig(BaseSettings):
    """Work-item store and failure log configuration."""

    database_url: str = Field(default="sqlite:///signalrelay.db", alias="DATABASE_URL")
    failure_log_url: Optional[str] = Field(default=None, alias="FAILURE_LOG_URL")
    echo: bool = Field(default=False, alias="SQL_ECHO")

    @field_validator("echo", mode="before")
    @classmethod
    def parse_echo(cls, v):
        return _parse_bool(v)

    @property
    def resolved_failure_log_url(self) -> str:
        """Failure log location; shares the store database unless overridden."""
        return self.failure_log_url or self.database_url

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class TelegramConfig(BaseSettings):
    """Telegram Bot API configuration."""

    bot_token: Optional[str] = Field(default=None, alias="BOT_TOKEN", repr=False)
    premium_channel_id: Optional[str] = Field(default=None, alias="PREMIUM_CHANNEL_ID")
    free_channel_id: Optional[str] = Field(default=None, alias="FREE_CHANNEL_ID")
    news_channel_id: Optional[str] = Field(default=None, alias="NEWS_CHANNEL_ID")

    api_base: str = Field(default="https://api.telegram.org", alias="TELEGRAM_API_BASE")
    timeout_seconds: float = Field(default=15.0, alias="TELEGRAM_TIMEOUT_SECONDS")
    parse_mode: str = Field(default="MarkdownV2", alias="TELEGRAM_PARSE_MODE")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    @field_validator("parse_mode")
    @classmethod
    def check_parse_mode(cls, v):
        if v not in SUPPORTED_PARSE_MODES:
            raise ValueError(
                f"TELEGRAM_PARSE_MODE must be one of {', '.join(SUPPORTED_PARSE_MODES)}, got {v!r}"
            )
        return v

    def channel_for(self, category: str) -> Optional[str]:
        """Resolve the destination chat for a category."""
        if category == "premium":
            return self.premium_channel_id
        if category == "free":
            return self.free_channel_id or self.premium_channel_id
        if category == "news":
            return self.news_channel_id or self.premium_channel_id
        return None


class CadenceConfig(BaseSettings):
    """Minimum interval between publishes, per audience tier."""

    premium_interval_hours: float = Field(default=24.0, alias="PREMIUM_PUBLISH_INTERVAL_HOURS")
    free_interval_days: float = Field(default=7.0, alias="FREE_PUBLISH_INTERVAL_DAYS")
    news_interval_minutes: float = Field(default=60.0, alias="NEWS_PUBLISH_INTERVAL_MINUTES")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    def windows(self) -> Dict[str, timedelta]:
        return {
            "premium": timedelta(hours=self.premium_interval_hours),
            "free": timedelta(days=self.free_interval_days),
            "news": timedelta(minutes=self.news_interval_minutes),
        }

    def window(self, category: str) -> timedelta:
        """
        Return the publish window for a category.

        Raises:
            ConfigurationError: If the category has no configured window
        """
        try:
            return self.windows()[category]
        except KeyError:
            raise ConfigurationError(
                f"No publish window configured for category '{category}'",
                details={"category": category},
            )


class ConsumerConfig(BaseSettings):
    """Consumer loop tuning."""

    poll_interval_ms: int = Field(default=60000, alias="SIGNAL_POLL_INTERVAL_MS")
    signal_batch_size: int = Field(default=20, alias="SIGNAL_BATCH_SIZE")
    news_batch_size: int = Field(default=1, alias="NEWS_BATCH_SIZE")
    news_enabled: bool = Field(default=True, alias="NEWS_ENABLED")

    commit_max_attempts: int = Field(default=3, alias="COMMIT_MAX_ATTEMPTS")
    commit_backoff_seconds: float = Field(default=1.0, alias="COMMIT_BACKOFF_SECONDS")
    max_send_attempts: int = Field(default=3, alias="MAX_SEND_ATTEMPTS")

    @field_validator("news_enabled", mode="before")
    @classmethod
    def parse_news_enabled(cls, v):
        return _parse_bool(v)

    @property
    def poll_interval_seconds(self) -> float:
        """Delay between ticks, never below the fixed floor."""
        return max(MIN_POLL_INTERVAL_SECONDS, self.poll_interval_ms / 1000.0)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class ApiConfig(BaseSettings):
    """Operator HTTP endpoint configuration."""

    admin_token: Optional[str] = Field(default=None, alias="ADMIN_TOKEN", repr=False)
    host: str = Field(default="127.0.0.1", alias="API_HOST")
    port: int = Field(default=8080, alias="API_PORT")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: str = Field(default="production", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")

    # Component configurations
    store: StoreConfig = Field(default_factory=StoreConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    cadence: CadenceConfig = Field(default_factory=CadenceConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

    @field_validator("json_logs", mode="before")
    @classmethod
    def parse_json_logs(cls, v):
        return _parse_bool(v)

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        try:
            settings = Settings()
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
    return settings


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global settings
    settings = None


def validate_required_settings(for_workflow: str = "consumer") -> List[str]:
    """
    Validate that required settings are present for specific workflows.

    Args:
        for_workflow: Workflow name ("consumer", "api", or "minimal")

    Returns:
        List of missing required settings
    """
    missing = []
    try:
        config = get_settings()

        if for_workflow in ("consumer", "api"):
            if not config.telegram.bot_token:
                missing.append("BOT_TOKEN")
            if not config.telegram.premium_channel_id:
                missing.append("PREMIUM_CHANNEL_ID")
            if not config.store.database_url:
                missing.append("DATABASE_URL")

        if for_workflow == "api" and not config.api.admin_token:
            missing.append("ADMIN_TOKEN")

    except Exception as e:
        missing.append(f"Configuration error: {e}")

    return missing


def print_configuration_summary():
    """Print a summary of the current configuration for debugging."""
    try:
        config = get_settings()
        windows = config.cadence.windows()
        print("=== signalrelay Configuration Summary ===")
        print(f"Environment: {config.environment}")
        print(f"Debug Mode: {config.debug}")
        print(f"JSON Logs: {config.json_logs}")
        print()
        print(f"Database: {config.store.database_url}")
        print(f"Failure Log: {config.store.resolved_failure_log_url}")
        print()
        print(f"Bot Token: {'✓' if config.telegram.bot_token else '✗'}")
        print(f"Premium Channel: {config.telegram.premium_channel_id or '✗'}")
        print(f"Free Channel: {config.telegram.channel_for('free') or '✗'}")
        print(f"News Channel: {config.telegram.channel_for('news') or '✗'}")
        print(f"Parse Mode: {config.telegram.parse_mode}")
        print(f"Send Timeout: {config.telegram.timeout_seconds}s")
        print()
        print("Publish Windows:")
        for category, window in windows.items():
            print(f"  {category}: {window}")
        print()
        print(f"Poll Interval: {config.consumer.poll_interval_seconds}s")
        print(f"Signal Batch Size: {config.consumer.signal_batch_size}")
        print(f"News Enabled: {'✓' if config.consumer.news_enabled else '✗'}")
        print(f"Max Send Attempts: {config.consumer.max_send_attempts}")
        print(f"Admin Token: {'✓' if config.api.admin_token else '✗'}")
        print("=" * 41)
    except Exception as e:
        print(f"Error loading configuration: {e}")
