"""Tests for the enqueue helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from signalrelay.core.exceptions import ValidationError
from signalrelay.services.producer import enqueue_news, enqueue_signal, parse_timestamp
from tests.conftest import signal_payload


def test_parse_timestamp_normalizes_to_naive_utc():
    assert parse_timestamp("2024-05-01T14:30:00+02:00") == datetime(2024, 5, 1, 12, 30)
    assert parse_timestamp(datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)) == datetime(2024, 5, 1, 12, 30)
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValidationError):
        parse_timestamp("not a date")


def test_enqueue_signal_default_ttl(store):
    generated = datetime(2030, 1, 1, 8, 0)

    item = enqueue_signal(store, signal_payload(), category="free", generated_at=generated)

    assert item.kind == "signal"
    assert item.category == "free"
    assert item.expires_at == generated + timedelta(hours=24)


def test_enqueue_signal_rejects_news_category(store):
    with pytest.raises(ValidationError):
        enqueue_signal(store, signal_payload(), category="news")


def test_enqueue_news(store):
    item = enqueue_news(store, {"title": "Hello"}, ttl=timedelta(hours=2))

    assert item.kind == "news"
    assert item.category == "news"
    assert item.expires_at - item.generated_at == timedelta(hours=2)
