"""Tests for the per-category publish ledger."""

import threading
from datetime import timedelta

import pytest

from signalrelay.core.config import CadenceConfig
from signalrelay.core.exceptions import ConfigurationError
from signalrelay.core.models import utcnow
from signalrelay.data.db import create_engine_for_url
from signalrelay.services.cadence import CadenceLedger


def test_never_published_is_allowed(ledger):
    assert ledger.last_published("premium") is None
    assert ledger.allowed("premium")
    assert ledger.next_allowed_at("premium") is None


@pytest.mark.parametrize(
    "category,window",
    [
        ("premium", timedelta(hours=24)),
        ("free", timedelta(days=7)),
        ("news", timedelta(minutes=60)),
    ],
)
def test_window_blocks_until_elapsed(ledger, category, window):
    published = utcnow()
    ledger.set_published(category, published)

    assert not ledger.allowed(category, published + window - timedelta(seconds=1))
    assert ledger.allowed(category, published + window)
    assert ledger.next_allowed_at(category) == published + window


def test_categories_are_independent(ledger):
    now = utcnow()
    ledger.set_published("premium", now)

    assert not ledger.allowed("premium", now)
    assert ledger.allowed("free", now)
    assert ledger.allowed("news", now)


def test_set_published_is_monotonic(ledger):
    now = utcnow()
    ledger.set_published("premium", now)
    ledger.set_published("premium", now - timedelta(hours=3))

    assert ledger.last_published("premium") == now


def test_entries(ledger):
    now = utcnow()
    ledger.set_published("news", now)
    ledger.set_published("free", now)

    assert ledger.entries() == {"news": now, "free": now}


def test_custom_windows(engine, monkeypatch):
    monkeypatch.setenv("PREMIUM_PUBLISH_INTERVAL_HOURS", "1")
    ledger = CadenceLedger(engine, CadenceConfig())
    ledger.create_tables()
    now = utcnow()
    ledger.set_published("premium", now)

    assert ledger.allowed("premium", now + timedelta(hours=1))


def test_unknown_category_window(ledger):
    with pytest.raises(ConfigurationError):
        ledger.allowed("vip")


class TestReservation:
    def test_first_reservation_creates_entry(self, ledger):
        now = utcnow()

        reservation = ledger.reserve("premium", now)

        assert reservation is not None
        assert reservation.previous is None
        assert ledger.last_published("premium") == now

    def test_second_reservation_within_window_refused(self, ledger):
        now = utcnow()
        assert ledger.reserve("premium", now) is not None

        assert ledger.reserve("premium", now + timedelta(hours=1)) is None
        assert ledger.last_published("premium") == now

    def test_reservation_after_window(self, ledger):
        published = utcnow() - timedelta(hours=25)
        ledger.set_published("premium", published)
        now = utcnow()

        reservation = ledger.reserve("premium", now)

        assert reservation.previous == published
        assert ledger.last_published("premium") == now

    def test_release_restores_previous(self, ledger):
        published = utcnow() - timedelta(days=8)
        ledger.set_published("free", published)
        reservation = ledger.reserve("free", utcnow())

        assert ledger.release(reservation)
        assert ledger.last_published("free") == published

    def test_release_of_first_reservation_removes_entry(self, ledger):
        reservation = ledger.reserve("news", utcnow())

        assert ledger.release(reservation)
        assert ledger.last_published("news") is None
        assert ledger.allowed("news")

    def test_release_after_later_publish_is_noop(self, ledger):
        now = utcnow()
        reservation = ledger.reserve("premium", now)
        ledger.set_published("premium", now + timedelta(seconds=5))

        assert not ledger.release(reservation)
        assert ledger.last_published("premium") == now + timedelta(seconds=5)

    def test_concurrent_reservations_single_winner(self, database_url, settings):
        ledgers = []
        for _ in range(4):
            engine = create_engine_for_url(database_url)
            ledgers.append(CadenceLedger(engine, settings.cadence))
        ledgers[0].create_tables()
        now = utcnow()
        barrier = threading.Barrier(len(ledgers))
        won = []

        def run(ledger):
            barrier.wait()
            won.append(ledger.reserve("premium", now))

        threads = [threading.Thread(target=run, args=(ledger,)) for ledger in ledgers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sum(1 for r in won if r is not None) == 1
