"""Configure pytest fixtures and environment for signalrelay tests."""

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from signalrelay.core.config import (
    ApiConfig,
    CadenceConfig,
    ConsumerConfig,
    Settings,
    StoreConfig,
    TelegramConfig,
    reset_settings,
)
from signalrelay.core.exceptions import TransportError
from signalrelay.core.models import utcnow
from signalrelay.data.db import create_engine_for_url
from signalrelay.data.store import WorkItemStore
from signalrelay.services.cadence import CadenceLedger
from signalrelay.services.consumer import ConsumerLoop
from signalrelay.services.formatter import MessageFormatter
from signalrelay.services.reconciler import DeliveryReconciler

ENV_VARS = (
    "DATABASE_URL",
    "FAILURE_LOG_URL",
    "SQL_ECHO",
    "BOT_TOKEN",
    "PREMIUM_CHANNEL_ID",
    "FREE_CHANNEL_ID",
    "NEWS_CHANNEL_ID",
    "TELEGRAM_API_BASE",
    "TELEGRAM_TIMEOUT_SECONDS",
    "TELEGRAM_PARSE_MODE",
    "PREMIUM_PUBLISH_INTERVAL_HOURS",
    "FREE_PUBLISH_INTERVAL_DAYS",
    "NEWS_PUBLISH_INTERVAL_MINUTES",
    "SIGNAL_POLL_INTERVAL_MS",
    "SIGNAL_BATCH_SIZE",
    "NEWS_BATCH_SIZE",
    "NEWS_ENABLED",
    "COMMIT_MAX_ATTEMPTS",
    "COMMIT_BACKOFF_SECONDS",
    "MAX_SEND_ATTEMPTS",
    "ADMIN_TOKEN",
    "API_HOST",
    "API_PORT",
    "ENVIRONMENT",
    "DEBUG",
    "JSON_LOGS",
)


class FakeTransport:
    """Records sends instead of calling Telegram."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with = fail_with
        self._next_id = 1000
        self._lock = threading.Lock()

    def send(self, destination: str, text: str, **options: Any) -> Dict[str, Any]:
        with self._lock:
            if self.fail_with is not None:
                raise self.fail_with
            self._next_id += 1
            self.sent.append({"destination": destination, "text": text, "message_id": self._next_id})
            return {"message_id": self._next_id, "chat_id": destination}

    def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "bot_username": "fake_bot"}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(database_url: str, **consumer_overrides) -> Settings:
    """Return settings tuned for deterministic tests."""
    consumer = {"COMMIT_BACKOFF_SECONDS": 0}
    consumer.update(consumer_overrides)
    return Settings(
        store=StoreConfig(DATABASE_URL=database_url),
        telegram=TelegramConfig(
            BOT_TOKEN="test-token",
            PREMIUM_CHANNEL_ID="@premium",
            FREE_CHANNEL_ID="@free",
            NEWS_CHANNEL_ID="@news",
        ),
        cadence=CadenceConfig(),
        consumer=ConsumerConfig(**consumer),
        api=ApiConfig(ADMIN_TOKEN="secret"),
    )


def signal_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "pair": "BTC/USDT",
        "signal_type": "LONG",
        "market_type": "crypto",
        "entry_price": 64250.5,
        "stop_loss": 62900,
        "take_profit": 68000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's environment out of the settings under test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_engine_for_url(database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def settings(database_url) -> Settings:
    return make_settings(database_url)


@pytest.fixture
def store(engine) -> WorkItemStore:
    store = WorkItemStore(engine)
    store.create_tables()
    return store


@pytest.fixture
def ledger(engine, settings) -> CadenceLedger:
    ledger = CadenceLedger(engine, settings.cadence)
    ledger.create_tables()
    return ledger


@pytest.fixture
def reconciler(engine) -> DeliveryReconciler:
    reconciler = DeliveryReconciler(engine)
    reconciler.create_tables()
    return reconciler


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def consumer(store, ledger, transport, reconciler, settings, clock) -> ConsumerLoop:
    return ConsumerLoop(
        store=store,
        ledger=ledger,
        transport=transport,
        formatter=MessageFormatter(settings.telegram.parse_mode),
        reconciler=reconciler,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def failing_transport() -> FakeTransport:
    return FakeTransport(fail_with=TransportError("Bad Request: chat not found", status_code=400))
