"""
Shared work-item store.

Every status transition is a conditional update (``WHERE status = ?``) so
several consumer processes can share one database without a broker. Only
append-only fields are written without a status guard, and only by the
current claim owner.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

import structlog
from sqlalchemy import text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from signalrelay.core.exceptions import ClaimLostError, StoreError
from signalrelay.core.models import (
    Category,
    ItemKind,
    WorkItem,
    WorkItemStatus,
    to_naive_utc,
    utcnow,
)
from signalrelay.data.db import WorkItemRecord, get_session, init_db

logger = structlog.get_logger(__name__)


class WorkItemStore:
    """Persistence for signals and news items shared by all consumer instances."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create_tables(self) -> None:
        try:
            init_db(self._engine, tables=[WorkItemRecord])
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create work item tables: {e}")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session that commits on success and maps driver errors to StoreError."""
        session = get_session(self._engine)
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Store operation failed", error=str(e), error_type=type(e).__name__)
            raise StoreError(f"Store operation failed: {e}", details={"error_type": type(e).__name__})
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _transition(
        self,
        session: Session,
        item_id: int,
        expected_status: str,
        values: Dict[str, Any],
        extra_conditions: Iterable[Any] = (),
    ) -> bool:
        stmt = (
            update(WorkItemRecord)
            .where(
                col(WorkItemRecord.id) == item_id,
                col(WorkItemRecord.status) == expected_status,
                *extra_conditions,
            )
            .values(**values)
        )
        result = session.connection().execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def insert(
        self,
        kind: str,
        category: str,
        payload: Dict[str, Any],
        expires_at: datetime,
        generated_at: Optional[datetime] = None,
    ) -> WorkItem:
        """Insert a new item in ``pending`` state."""
        record = WorkItemRecord(
            kind=ItemKind(kind).value,
            category=Category(category).value,
            payload=dict(payload),
            status=WorkItemStatus.PENDING.value,
            generated_at=to_naive_utc(generated_at) if generated_at else utcnow(),
            expires_at=to_naive_utc(expires_at),
        )
        with self._session() as session:
            session.add(record)
            session.flush()
            session.refresh(record)
            item = record.to_work_item()

        logger.debug("Work item inserted", item_id=item.id, kind=kind, category=category)
        return item

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, item_id: int) -> Optional[WorkItem]:
        with self._session() as session:
            record = session.get(WorkItemRecord, item_id)
            return record.to_work_item() if record else None

    def fetch_candidates(
        self,
        kind: str,
        categories: Iterable[str],
        limit: int,
        now: Optional[datetime] = None,
    ) -> List[WorkItem]:
        """Pending, unexpired items of a kind, oldest-generated first."""
        now = now or utcnow()
        statement = (
            select(WorkItemRecord)
            .where(
                col(WorkItemRecord.kind) == kind,
                col(WorkItemRecord.category).in_(list(categories)),
                col(WorkItemRecord.status) == WorkItemStatus.PENDING.value,
                col(WorkItemRecord.expires_at) > now,
            )
            .order_by(col(WorkItemRecord.generated_at).asc(), col(WorkItemRecord.id).asc())
            .limit(limit)
        )
        with self._session() as session:
            return [record.to_work_item() for record in session.exec(statement).all()]

    def list_items(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> List[WorkItem]:
        statement = select(WorkItemRecord)
        if status:
            statement = statement.where(col(WorkItemRecord.status) == status)
        if kind:
            statement = statement.where(col(WorkItemRecord.kind) == kind)
        statement = statement.order_by(
            col(WorkItemRecord.generated_at).asc(), col(WorkItemRecord.id).asc()
        ).limit(limit)
        with self._session() as session:
            return [record.to_work_item() for record in session.exec(statement).all()]

    # ------------------------------------------------------------------ #
    # Claim protocol primitive
    # ------------------------------------------------------------------ #

    def claim(self, item_id: int, now: Optional[datetime] = None) -> Optional[WorkItem]:
        """
        Atomically move ``pending -> sending`` for an unexpired item.

        Returns the post-update item to the single caller that won the race,
        None to every other caller.

        Raises:
            StoreError: If the store is unreachable (nothing is applied)
        """
        now = now or utcnow()
        with self._session() as session:
            won = self._transition(
                session,
                item_id,
                WorkItemStatus.PENDING.value,
                {"status": WorkItemStatus.SENDING.value, "claimed_at": now},
                extra_conditions=(col(WorkItemRecord.expires_at) > now,),
            )
            if not won:
                return None
            record = session.exec(
                select(WorkItemRecord).where(col(WorkItemRecord.id) == item_id)
            ).one()
            return record.to_work_item()

    # ------------------------------------------------------------------ #
    # Claim-owner transitions
    # ------------------------------------------------------------------ #

    def mark_deferred(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """``sending -> deferred`` after a throttle decision."""
        with self._session() as session:
            return self._transition(
                session,
                item_id,
                WorkItemStatus.SENDING.value,
                {"status": WorkItemStatus.DEFERRED.value, "deferred_at": now or utcnow()},
            )

    def mark_invalid(self, item_id: int, error: str) -> bool:
        """``sending -> invalid``; terminal dead-letter for unformattable payloads."""
        with self._session() as session:
            return self._transition(
                session,
                item_id,
                WorkItemStatus.SENDING.value,
                {"status": WorkItemStatus.INVALID.value, "last_error": error},
            )

    def release(self, item_id: int) -> bool:
        """Give a claim back (``sending -> pending``) without counting an attempt."""
        with self._session() as session:
            return self._transition(
                session,
                item_id,
                WorkItemStatus.SENDING.value,
                {"status": WorkItemStatus.PENDING.value, "claimed_at": None},
            )

    def record_send_failure(self, item_id: int, error: str, max_attempts: int) -> Optional[str]:
        """
        Count a failed send and release or dead-letter the claim.

        Returns the resulting status (``pending`` or ``failed``), or None when
        the item was no longer claimed.
        """
        with self._session() as session:
            record = session.get(WorkItemRecord, item_id)
            if record is None or record.status != WorkItemStatus.SENDING.value:
                return None
            attempts = (record.send_attempts or 0) + 1
            new_status = (
                WorkItemStatus.FAILED.value
                if attempts >= max_attempts
                else WorkItemStatus.PENDING.value
            )
            values: Dict[str, Any] = {
                "status": new_status,
                "send_attempts": attempts,
                "last_error": error,
            }
            if new_status == WorkItemStatus.PENDING.value:
                values["claimed_at"] = None
            if not self._transition(session, item_id, WorkItemStatus.SENDING.value, values):
                return None
            return new_status

    def commit_sent(
        self,
        item_id: int,
        kind: str,
        channel: str,
        message_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> WorkItem:
        """
        ``sending -> active|published`` after a confirmed send.

        Appends the destination to ``sent_channels``.

        Raises:
            ClaimLostError: If the item is no longer claimed
            StoreError: If the update could not be applied
        """
        now = now or utcnow()
        with self._session() as session:
            record = session.get(WorkItemRecord, item_id)
            if record is None:
                raise ClaimLostError(item_id, WorkItemStatus.SENDING.value)
            channels = list(record.sent_channels or [])
            if channel not in channels:
                channels.append(channel)
            sent_status = WorkItemStatus.sent_status_for(kind)
            values: Dict[str, Any] = {
                "status": sent_status.value,
                "sent_at": now,
                "last_transport_message_id": message_id,
                "sent_channels": channels,
            }
            if not self._transition(session, item_id, WorkItemStatus.SENDING.value, values):
                raise ClaimLostError(item_id, WorkItemStatus.SENDING.value)
            session.expire_all()
            return session.get(WorkItemRecord, item_id).to_work_item()

    # ------------------------------------------------------------------ #
    # Operator transitions
    # ------------------------------------------------------------------ #

    def requeue_deferred(self, category: Optional[str] = None) -> int:
        """Move deferred items back to pending; never called by the consumer."""
        conditions = [col(WorkItemRecord.status) == WorkItemStatus.DEFERRED.value]
        if category:
            conditions.append(col(WorkItemRecord.category) == category)
        stmt = (
            update(WorkItemRecord)
            .where(*conditions)
            .values(status=WorkItemStatus.PENDING.value, claimed_at=None, deferred_at=None)
        )
        with self._session() as session:
            count = session.connection().execute(stmt).rowcount
        logger.info("Deferred items requeued", count=count, category=category)
        return count

    def resolve_stuck(self, item_id: int, target_status: str) -> bool:
        """Operator correction of an item left in ``sending``."""
        values: Dict[str, Any] = {"status": target_status}
        if target_status == WorkItemStatus.PENDING.value:
            values["claimed_at"] = None
        with self._session() as session:
            return self._transition(session, item_id, WorkItemStatus.SENDING.value, values)

    def stale_claims(self, older_than: timedelta, now: Optional[datetime] = None) -> List[WorkItem]:
        """Items stuck in ``sending`` longer than ``older_than``."""
        cutoff = (now or utcnow()) - older_than
        statement = (
            select(WorkItemRecord)
            .where(
                col(WorkItemRecord.status) == WorkItemStatus.SENDING.value,
                col(WorkItemRecord.claimed_at) < cutoff,
            )
            .order_by(col(WorkItemRecord.claimed_at).asc())
        )
        with self._session() as session:
            return [record.to_work_item() for record in session.exec(statement).all()]

    def health_check(self) -> Dict[str, Any]:
        with self._session() as session:
            session.connection().execute(text("SELECT 1"))
        return {"status": "healthy", "backend": self._engine.url.get_backend_name()}
