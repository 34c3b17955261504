"""
Consumer loop orchestration.

Each tick fetches pending signals and news from the shared store, claims
them one at a time, applies the publish cadence, formats, sends through the
transport and commits the result. Several processes may run this loop
against one store; the conditional claim keeps them from sending the same
item twice.
"""

from __future__ import annotations

import signal
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from signalrelay.core.config import Settings, get_settings
from signalrelay.core.exceptions import (
    ClaimLostError,
    DeliveryCommitError,
    SignalRelayError,
    StoreError,
    TransportError,
    ValidationError,
)
from signalrelay.core.logging import get_logger, set_correlation_id
from signalrelay.core.models import (
    SIGNAL_CATEGORIES,
    Category,
    ItemKind,
    ItemOutcome,
    OutcomeStatus,
    TickResult,
    WorkItem,
    utcnow,
)
from signalrelay.data.db import create_engine_for_url
from signalrelay.data.store import WorkItemStore
from signalrelay.data.telegram_client import TelegramTransport, Transport
from signalrelay.services.cadence import CadenceLedger, Reservation
from signalrelay.services.claims import ClaimProtocol
from signalrelay.services.formatter import MessageFormatter
from signalrelay.services.reconciler import DeliveryReconciler
from signalrelay.utils.reliability import HealthChecker, retry_call

logger = get_logger(__name__)


class ConsumerLoop:
    """Tick-based publisher for signals and news."""

    def __init__(
        self,
        store: WorkItemStore,
        ledger: CadenceLedger,
        transport: Transport,
        formatter: MessageFormatter,
        reconciler: DeliveryReconciler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.ledger = ledger
        self.transport = transport
        self.formatter = formatter
        self.reconciler = reconciler
        self.claims = ClaimProtocol(store)
        self.clock = clock

        self._stop = threading.Event()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop scheduling; the item in flight still finishes its commit."""
        if not self._stop.is_set():
            logger.info("Consumer stop requested")
        self._stop.set()

    def install_signal_handlers(self) -> None:
        def _handle(signum, frame):
            logger.info("Shutdown signal received", signal=signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def run_forever(self, max_ticks: Optional[int] = None) -> int:
        """
        Tick until stopped, waiting the poll interval after every tick.

        Returns:
            Number of ticks executed
        """
        interval = self.settings.consumer.poll_interval_seconds
        ticks = 0
        logger.info("Consumer loop started", poll_interval_seconds=interval)

        while not self._stop.is_set():
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self._stop.wait(interval)

        logger.info("Consumer loop stopped", ticks=ticks)
        return ticks

    # ------------------------------------------------------------------ #
    # Tick
    # ------------------------------------------------------------------ #

    def tick(self, correlation_id: Optional[str] = None) -> TickResult:
        """Run one pass over signals and one over news."""
        result = TickResult(correlation_id=set_correlation_id(correlation_id))
        structlog.contextvars.bind_contextvars(tick_id=result.correlation_id)
        errors: List[str] = []

        try:
            for name, run_pass in (("signals", self._signal_pass), ("news", self._news_pass)):
                if self._stop.is_set():
                    break
                try:
                    result.outcomes.extend(run_pass())
                except SignalRelayError as e:
                    # Store unreachable or misconfigured; the other pass still runs
                    logger.error(
                        "Tick pass failed", tick_pass=name, error=str(e), error_type=type(e).__name__
                    )
                    errors.append(f"{name}: {e}")
        finally:
            structlog.contextvars.unbind_contextvars("tick_id")

        if errors:
            result.error_message = "; ".join(errors)
        result.finish()

        logger.info(
            "Tick completed",
            processed=len(result.outcomes),
            sent=result.count(OutcomeStatus.SENT),
            deferred=result.count(OutcomeStatus.DEFERRED),
            skipped=result.count(OutcomeStatus.SKIPPED),
            errors=result.count(OutcomeStatus.ERROR),
            duration_seconds=result.duration_seconds,
            ok=result.ok,
        )
        return result

    def _signal_pass(self) -> List[ItemOutcome]:
        candidates = self.store.fetch_candidates(
            ItemKind.SIGNAL.value,
            SIGNAL_CATEGORIES,
            limit=self.settings.consumer.signal_batch_size,
            now=self.clock(),
        )
        outcomes: List[ItemOutcome] = []
        for item in candidates:
            if self._stop.is_set():
                break
            outcome = self.process_item(item)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _news_pass(self) -> List[ItemOutcome]:
        """Publish at most one news item, gated by its own ledger entry."""
        if not self.settings.consumer.news_enabled:
            return []
        if not self.ledger.allowed(Category.NEWS.value, self.clock()):
            logger.debug(
                "News cadence window not elapsed",
                next_allowed_at=str(self.ledger.next_allowed_at(Category.NEWS.value)),
            )
            return []

        candidates = self.store.fetch_candidates(
            ItemKind.NEWS.value,
            [Category.NEWS.value],
            limit=self.settings.consumer.news_batch_size,
            now=self.clock(),
        )
        outcomes: List[ItemOutcome] = []
        for item in candidates:
            if self._stop.is_set():
                break
            outcome = self.process_item(item)
            if outcome is None:
                continue
            outcomes.append(outcome)
            # Stop once a message went out, committed or not
            if outcome.status in (OutcomeStatus.SENT.value, OutcomeStatus.DEFERRED.value) or (
                outcome.reason == "commit_failed"
            ):
                break
        return outcomes

    # ------------------------------------------------------------------ #
    # Per item
    # ------------------------------------------------------------------ #

    def process_item(self, item: WorkItem) -> Optional[ItemOutcome]:
        """
        Claim and publish one candidate.

        Returns None when another consumer won the claim. Errors never
        escape: they are logged and reported as an ``error`` outcome.
        """
        log = logger.bind(item_id=item.id, kind=item.kind, category=item.category)
        try:
            return self._process(item, log)
        except Exception as e:
            log.error("Item processing failed", error=str(e), error_type=type(e).__name__)
            return self._outcome(item, OutcomeStatus.ERROR, reason="unexpected_error", error=str(e))

    def _process(self, item: WorkItem, log) -> Optional[ItemOutcome]:
        if self.reconciler.has_unresolved(item.id):
            log.warning("Unresolved delivery failure on record; not resending")
            return self._outcome(item, OutcomeStatus.SKIPPED, reason="unresolved_delivery_failure")

        now = self.clock()
        claimed = self.claims.claim(item.id, now=now)
        if claimed is None:
            return None

        try:
            self.formatter.validate(claimed)
        except ValidationError as e:
            self.store.mark_invalid(claimed.id, e.message)
            log.warning("Invalid payload; item dead-lettered", error=e.message, missing=e.details.get("missing"))
            return self._outcome(claimed, OutcomeStatus.SKIPPED, reason="invalid", error=e.message)

        reservation = self.ledger.reserve(claimed.category, now)
        if reservation is None:
            self.store.mark_deferred(claimed.id, now=now)
            log.info(
                "Publish window not elapsed; item deferred",
                next_allowed_at=str(self.ledger.next_allowed_at(claimed.category)),
            )
            return self._outcome(claimed, OutcomeStatus.DEFERRED, reason="cadence")

        channel = self.settings.telegram.channel_for(claimed.category)
        if not channel:
            self._release_slot(reservation, log)
            self.store.release(claimed.id)
            log.warning("No destination configured for category; claim released")
            return self._outcome(claimed, OutcomeStatus.SKIPPED, reason="no_destination")

        try:
            text = self.formatter.format(claimed)
            response = self.transport.send(channel, text)
        except TransportError as e:
            self._release_slot(reservation, log)
            new_status = self.store.record_send_failure(
                claimed.id, e.message, self.settings.consumer.max_send_attempts
            )
            log.warning(
                "Send failed",
                channel=channel,
                error=e.message,
                status_code=e.status_code,
                item_status=new_status,
            )
            return self._outcome(
                claimed,
                OutcomeStatus.ERROR,
                reason=f"transport_failed:{new_status or 'unclaimed'}",
                channel=channel,
                error=e.message,
            )
        except Exception:
            self._release_slot(reservation, log)
            raise

        message_id = response.get("message_id")
        return self._commit(claimed, channel, message_id, log)

    def _release_slot(self, reservation: Reservation, log) -> None:
        """Hand back a publish slot that was reserved but not used."""
        try:
            self.ledger.release(reservation)
        except StoreError as e:
            # The tier waits one extra window
            log.error("Publish slot release failed", error=str(e))

    def _commit(self, item: WorkItem, channel: str, message_id: Optional[int], log) -> ItemOutcome:
        """Record a confirmed send; on failure, write a delivery failure record."""
        sent_at = self.clock()
        try:
            self._commit_sent(item, channel, message_id, sent_at)
        except DeliveryCommitError as e:
            log.error(
                "Commit after send failed",
                channel=channel,
                message_id=message_id,
                error=e.message,
                cause=e.details.get("cause"),
            )
            self._record_failure(item, channel, message_id, e.message, log)
            return self._outcome(
                item,
                OutcomeStatus.ERROR,
                reason="commit_failed",
                channel=channel,
                message_id=message_id,
                error=e.message,
            )

        try:
            self.ledger.set_published(item.category, sent_at)
        except StoreError as e:
            log.error("Publish ledger update failed", error=str(e))

        log.info("Item published", channel=channel, message_id=message_id)
        return self._outcome(
            item, OutcomeStatus.SENT, channel=channel, message_id=message_id
        )

    def _commit_sent(
        self, item: WorkItem, channel: str, message_id: Optional[int], sent_at: datetime
    ) -> None:
        """
        Write the sent status under bounded retry.

        Raises:
            DeliveryCommitError: Retries exhausted or the claim was lost
        """
        consumer_config = self.settings.consumer
        try:
            retry_call(
                self.store.commit_sent,
                item.id,
                item.kind,
                channel,
                message_id,
                now=sent_at,
                max_attempts=consumer_config.commit_max_attempts,
                backoff_seconds=consumer_config.commit_backoff_seconds,
                retry_exceptions=(StoreError,),
                give_up_on=(ClaimLostError,),
            )
        except StoreError as e:
            raise DeliveryCommitError(
                str(e),
                transport_message_id=message_id,
                details={"item_id": item.id, "channel": channel, "cause": type(e).__name__},
            ) from e

    def _record_failure(
        self, item: WorkItem, channel: str, message_id: Optional[int], error: str, log
    ) -> None:
        consumer_config = self.settings.consumer
        try:
            retry_call(
                self.reconciler.record,
                item,
                message_id,
                channel,
                error,
                max_attempts=consumer_config.commit_max_attempts,
                backoff_seconds=consumer_config.commit_backoff_seconds,
                retry_exceptions=(StoreError,),
            )
        except StoreError as e:
            # Last resort: the structured log line is the only trace left
            log.critical(
                "Delivery failure could not be recorded",
                channel=channel,
                message_id=message_id,
                commit_error=error,
                error=str(e),
                snapshot=item.snapshot(),
            )

    @staticmethod
    def _outcome(item: WorkItem, status: OutcomeStatus, **fields: Any) -> ItemOutcome:
        return ItemOutcome(
            item_id=item.id, kind=item.kind, category=item.category, status=status, **fields
        )

    # ------------------------------------------------------------------ #
    # Diagnostics
    # ------------------------------------------------------------------ #

    def perform_health_checks(self) -> Dict[str, Any]:
        """Check store and transport connectivity."""
        checker = HealthChecker()
        checker.register_check("store", self.store.health_check)
        health_check = getattr(self.transport, "health_check", None)
        if health_check is not None:
            checker.register_check("transport", health_check)

        results: Dict[str, Any] = dict(checker.check_all())
        results["overall_status"] = "healthy" if checker.is_healthy() else "unhealthy"
        logger.info("Health checks completed", overall_status=results["overall_status"])
        return results


def open_stores(
    settings: Optional[Settings] = None, create_tables: bool = True
) -> Tuple[WorkItemStore, CadenceLedger, DeliveryReconciler]:
    """Build the store, ledger and failure log; the log may use its own database."""
    settings = settings or get_settings()
    store_config = settings.store

    engine = create_engine_for_url(store_config.database_url, echo=store_config.echo)
    if store_config.resolved_failure_log_url == store_config.database_url:
        failure_engine = engine
    else:
        failure_engine = create_engine_for_url(
            store_config.resolved_failure_log_url, echo=store_config.echo
        )

    store = WorkItemStore(engine)
    ledger = CadenceLedger(engine, settings.cadence)
    reconciler = DeliveryReconciler(failure_engine)
    if create_tables:
        store.create_tables()
        ledger.create_tables()
        reconciler.create_tables()
    return store, ledger, reconciler


def create_consumer(
    settings: Optional[Settings] = None,
    transport: Optional[Transport] = None,
    create_tables: bool = True,
) -> ConsumerLoop:
    """Wire a consumer from settings."""
    settings = settings or get_settings()
    store, ledger, reconciler = open_stores(settings, create_tables=create_tables)

    return ConsumerLoop(
        store=store,
        ledger=ledger,
        transport=transport or TelegramTransport(settings.telegram),
        formatter=MessageFormatter(settings.telegram.parse_mode),
        reconciler=reconciler,
        settings=settings,
    )
