"""
Delivery reconciliation log.

When a message reached Telegram but the item's state commit could not be
confirmed, the fact is written here so it is never silently lost. The log
may live in a separate database from the work-item store. It is the only
record of such sends: the consumer consults it before sending and refuses
to resend an item with an unresolved record. Operators resolve records by
hand.
"""

from __future__ import annotations

from typing import List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col, select

from signalrelay.core.exceptions import ClaimLostError, SignalRelayError, StoreError
from signalrelay.core.models import DeliveryFailure, WorkItem, WorkItemStatus, utcnow
from signalrelay.data.db import DeliveryFailureRecord, get_session, init_db
from signalrelay.data.store import WorkItemStore

logger = structlog.get_logger(__name__)

RESOLUTIONS = ("published", "requeue", "dismiss")


class DeliveryReconciler:
    """Append-only failure log plus operator resolution helpers."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create_tables(self) -> None:
        try:
            init_db(self._engine, tables=[DeliveryFailureRecord])
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create failure log table: {e}")

    def record(
        self,
        item: WorkItem,
        transport_message_id: Optional[int],
        channel_id: Optional[str],
        error: str,
    ) -> DeliveryFailure:
        """Append a failure record with a snapshot of the item."""
        row = DeliveryFailureRecord(
            item_id=item.id,
            kind=item.kind,
            transport_message_id=transport_message_id,
            channel_id=channel_id,
            error_message=error,
            snapshot=item.snapshot(),
        )
        try:
            with get_session(self._engine) as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                failure = row.to_delivery_failure()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write delivery failure record: {e}")

        logger.error(
            "Delivery failure recorded",
            record_id=failure.id,
            item_id=item.id,
            transport_message_id=transport_message_id,
            channel=channel_id,
            error=error,
        )
        return failure

    def list_failures(self, include_resolved: bool = False, limit: int = 100) -> List[DeliveryFailure]:
        statement = select(DeliveryFailureRecord)
        if not include_resolved:
            statement = statement.where(col(DeliveryFailureRecord.resolved_at).is_(None))
        statement = statement.order_by(
            col(DeliveryFailureRecord.created_at).asc(), col(DeliveryFailureRecord.id).asc()
        ).limit(limit)
        try:
            with get_session(self._engine) as session:
                return [r.to_delivery_failure() for r in session.exec(statement).all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read delivery failure log: {e}")

    def has_unresolved(self, item_id: int) -> bool:
        statement = select(DeliveryFailureRecord.id).where(
            col(DeliveryFailureRecord.item_id) == item_id,
            col(DeliveryFailureRecord.resolved_at).is_(None),
        )
        try:
            with get_session(self._engine) as session:
                return session.exec(statement).first() is not None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read delivery failure log: {e}")

    def get(self, record_id: int) -> Optional[DeliveryFailure]:
        try:
            with get_session(self._engine) as session:
                row = session.get(DeliveryFailureRecord, record_id)
                return row.to_delivery_failure() if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read delivery failure log: {e}")

    def resolve(self, record_id: int, resolution: str, store: WorkItemStore) -> DeliveryFailure:
        """
        Apply an operator decision to the item, then close the record.

        ``published`` commits the item as sent using the recorded message id,
        ``requeue`` puts it back to pending (allowing a resend), ``dismiss``
        only closes the record.

        Raises:
            SignalRelayError: Unknown record or resolution
        """
        if resolution not in RESOLUTIONS:
            raise SignalRelayError(
                f"Unknown resolution '{resolution}'", details={"allowed": list(RESOLUTIONS)}
            )
        failure = self.get(record_id)
        if failure is None:
            raise SignalRelayError(f"Delivery failure record {record_id} not found")

        if resolution == "published":
            try:
                store.commit_sent(
                    failure.item_id,
                    failure.kind,
                    failure.channel_id or "",
                    failure.transport_message_id,
                )
            except ClaimLostError:
                logger.warning(
                    "Item no longer in sending; closing record only", item_id=failure.item_id
                )
        elif resolution == "requeue":
            if not store.resolve_stuck(failure.item_id, WorkItemStatus.PENDING.value):
                logger.warning(
                    "Item no longer in sending; closing record only", item_id=failure.item_id
                )

        try:
            with get_session(self._engine) as session:
                row = session.get(DeliveryFailureRecord, record_id)
                row.resolved_at = utcnow()
                row.resolution = resolution
                session.add(row)
                session.commit()
                session.refresh(row)
                resolved = row.to_delivery_failure()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to resolve delivery failure record: {e}")

        logger.info(
            "Delivery failure resolved",
            record_id=record_id,
            item_id=failure.item_id,
            resolution=resolution,
        )
        return resolved
