"""Tests for the operator CLI."""

import json
from datetime import datetime

import pytest
from click.testing import CliRunner

from signalrelay import main as cli
from signalrelay.services.consumer import open_stores
from signalrelay.services.producer import enqueue_signal
from tests.conftest import FakeTransport, signal_payload


@pytest.fixture
def runner(monkeypatch, database_url):
    monkeypatch.setenv("DATABASE_URL", database_url)
    # Leave structlog's default configuration alone between invocations
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return CliRunner()


def test_init_db(runner):
    result = runner.invoke(cli.main, ["init-db"])

    assert result.exit_code == 0
    assert "Tables ready" in result.output


def test_enqueue_signal_then_preview(runner):
    result = runner.invoke(
        cli.main,
        ["enqueue-signal", "--pair", "ETH/USDT", "--entry", "3100", "--stop", "2950", "--direction", "SHORT"],
    )
    assert result.exit_code == 0, result.output
    assert "Signal queued" in result.output

    result = runner.invoke(cli.main, ["preview"])
    assert result.exit_code == 0
    assert "ETH/USDT" in result.output
    assert "SELL \\(SHORT\\)" in result.output


def test_enqueue_signal_with_explicit_expiry(runner):
    result = runner.invoke(
        cli.main,
        ["enqueue-signal", "--pair", "BTC/USDT", "--entry", "1", "--expires-at", "2099-01-01T00:00:00Z"],
    )

    assert result.exit_code == 0, result.output
    store, _, _ = open_stores()
    assert store.list_items()[0].expires_at.year == 2099


def test_enqueue_signal_bad_timestamp(runner):
    result = runner.invoke(
        cli.main, ["enqueue-signal", "--pair", "BTC/USDT", "--entry", "1", "--expires-at", "soon-ish"]
    )

    assert result.exit_code == 1
    assert "Unparseable timestamp" in result.output


def test_enqueue_news_requires_content(runner):
    result = runner.invoke(cli.main, ["enqueue-news", "--url", "https://example.com"])

    assert result.exit_code == 2

    result = runner.invoke(cli.main, ["enqueue-news", "--title", "Hello"])
    assert result.exit_code == 0
    assert "News queued" in result.output


def test_preview_flags_expired_items(runner):
    store, _, _ = open_stores()
    enqueue_signal(
        store,
        signal_payload(),
        generated_at=datetime(2020, 1, 1),
        expires_at=datetime(2020, 1, 2),
    )

    result = runner.invoke(cli.main, ["preview"])

    assert result.exit_code == 0
    assert "Expired; will not be claimed" in result.output
    assert "BTC/USDT" not in result.output


def test_preview_empty(runner):
    result = runner.invoke(cli.main, ["preview"])

    assert result.exit_code == 0
    assert "No pending items" in result.output


def test_tick_json(runner, monkeypatch, settings, consumer, store):
    monkeypatch.setenv("BOT_TOKEN", "t")
    monkeypatch.setenv("PREMIUM_CHANNEL_ID", "@premium")
    monkeypatch.setattr(cli, "create_consumer", lambda: consumer)
    runner.invoke(cli.main, ["enqueue-signal", "--pair", "BTC/USDT", "--entry", "64000"])

    result = runner.invoke(cli.main, ["tick", "--json"])

    assert result.exit_code == 0, result.output
    body = json.loads(result.output[result.output.index("{\n  \"ok\""):])
    assert body["ok"] is True
    assert body["results"][0]["status"] == "sent"


def test_tick_table(runner, monkeypatch, consumer):
    monkeypatch.setenv("BOT_TOKEN", "t")
    monkeypatch.setenv("PREMIUM_CHANNEL_ID", "@premium")
    monkeypatch.setattr(cli, "create_consumer", lambda: consumer)

    result = runner.invoke(cli.main, ["tick"])

    assert result.exit_code == 0, result.output
    assert "Tick completed" in result.output


def test_tick_requires_configuration(runner):
    result = runner.invoke(cli.main, ["tick"])

    assert result.exit_code == 1
    assert "BOT_TOKEN" in result.output


def test_requeue_deferred(runner):
    store, _, _ = open_stores()
    runner.invoke(cli.main, ["enqueue-signal", "--pair", "BTC/USDT", "--entry", "1"])
    item = store.list_items()[0]
    store.claim(item.id)
    store.mark_deferred(item.id)

    result = runner.invoke(cli.main, ["requeue-deferred", "--category", "premium"])

    assert result.exit_code == 0
    assert "1 deferred item(s) requeued" in result.output
    assert store.get(item.id).status == "pending"


def test_failures_list_and_resolve(runner):
    store, _, reconciler = open_stores()
    runner.invoke(cli.main, ["enqueue-signal", "--pair", "BTC/USDT", "--entry", "1"])
    item = store.claim(store.list_items()[0].id)
    record = reconciler.record(item, 77, "@premium", "database is locked")

    result = runner.invoke(cli.main, ["failures", "list"])
    assert result.exit_code == 0
    assert "Delivery Failures" in result.output

    result = runner.invoke(cli.main, ["failures", "resolve", str(record.id), "--as", "published"])
    assert result.exit_code == 0, result.output
    assert store.get(item.id).status == "active"

    result = runner.invoke(cli.main, ["failures", "list"])
    assert "No delivery failures" in result.output


def test_failures_resolve_unknown_record(runner):
    result = runner.invoke(cli.main, ["failures", "resolve", "404", "--as", "dismiss"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_stuck_claims(runner):
    result = runner.invoke(cli.main, ["stuck"])

    assert result.exit_code == 0
    assert "No stuck claims" in result.output


def test_config_reports_missing(runner):
    result = runner.invoke(cli.main, ["config"])

    assert result.exit_code == 1
    assert "Missing: BOT_TOKEN" in result.output


def test_health(runner, monkeypatch, database_url):
    from signalrelay.services.consumer import create_consumer

    monkeypatch.setattr(
        cli, "create_consumer", lambda: create_consumer(transport=FakeTransport())
    )

    result = runner.invoke(cli.main, ["health"])

    assert result.exit_code == 0, result.output
    assert "System is healthy" in result.output


def test_unsupported_parse_mode_reported(runner, monkeypatch):
    monkeypatch.setenv("TELEGRAM_PARSE_MODE", "HTML")

    result = runner.invoke(cli.main, ["preview"])

    assert result.exit_code == 1
    assert "TELEGRAM_PARSE_MODE" in result.output
