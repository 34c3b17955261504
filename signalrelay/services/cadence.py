"""
Publish-cadence ledger.

Holds the last successful publish time per category and answers whether a
category may publish again. The ledger throttles a destination regardless
of how many items are waiting for it. A send first reserves the slot with a
conditional update and gives it back if nothing went out.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col, select

from signalrelay.core.config import CadenceConfig
from signalrelay.core.exceptions import StoreError
from signalrelay.core.models import utcnow
from signalrelay.data.db import PublishLedgerRecord, get_session, init_db

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Reservation:
    """A publish slot taken ahead of a send."""

    category: str
    reserved_at: datetime
    previous: Optional[datetime]


class CadenceLedger:
    """Shared per-category publish ledger."""

    def __init__(self, engine: Engine, config: CadenceConfig):
        self._engine = engine
        self.config = config

    def create_tables(self) -> None:
        try:
            init_db(self._engine, tables=[PublishLedgerRecord])
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create ledger table: {e}")

    def window(self, category: str) -> timedelta:
        return self.config.window(category)

    def last_published(self, category: str) -> Optional[datetime]:
        """Last successful publish for a category, None if never published."""
        try:
            with get_session(self._engine) as session:
                record = session.get(PublishLedgerRecord, category)
                return record.last_published if record else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read publish ledger: {e}", details={"category": category})

    def allowed(self, category: str, now: Optional[datetime] = None) -> bool:
        """True if the category never published or its window has elapsed."""
        now = now or utcnow()
        window = self.window(category)
        last = self.last_published(category)
        if last is None:
            return True
        return now - last >= window

    def next_allowed_at(self, category: str) -> Optional[datetime]:
        last = self.last_published(category)
        return last + self.window(category) if last else None

    def reserve(self, category: str, now: Optional[datetime] = None) -> Optional[Reservation]:
        """
        Atomically take the category's publish slot.

        The ledger entry moves to ``now`` only if it still holds the value
        read here and that value is at least one window old, so of several
        processes racing for the same tier at most one gets a reservation.

        Returns:
            The reservation, or None while the window has not elapsed
        """
        now = now or utcnow()
        cutoff = now - self.window(category)
        try:
            with get_session(self._engine) as session:
                record = session.get(PublishLedgerRecord, category)
                if record is None:
                    session.add(PublishLedgerRecord(category=category, last_published=now))
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        logger.debug("Publish slot taken by another consumer", category=category)
                        return None
                    return Reservation(category=category, reserved_at=now, previous=None)

                previous = record.last_published
                if previous > cutoff:
                    return None

                stmt = (
                    update(PublishLedgerRecord)
                    .where(
                        col(PublishLedgerRecord.category) == category,
                        col(PublishLedgerRecord.last_published) == previous,
                    )
                    .values(last_published=now)
                )
                won = session.connection().execute(stmt).rowcount == 1
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to reserve publish slot: {e}", details={"category": category})

        if not won:
            logger.debug("Publish slot taken by another consumer", category=category)
            return None
        return Reservation(category=category, reserved_at=now, previous=previous)

    def release(self, reservation: Reservation) -> bool:
        """Give an unused slot back; a no-op once a later publish moved the entry."""
        table = PublishLedgerRecord
        conditions = (
            col(table.category) == reservation.category,
            col(table.last_published) == reservation.reserved_at,
        )
        if reservation.previous is None:
            stmt = delete(table).where(*conditions)
        else:
            stmt = update(table).where(*conditions).values(last_published=reservation.previous)

        try:
            with get_session(self._engine) as session:
                restored = session.connection().execute(stmt).rowcount == 1
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                f"Failed to release publish slot: {e}", details={"category": reservation.category}
            )
        return restored

    def set_published(self, category: str, now: Optional[datetime] = None) -> None:
        """Record a confirmed publish; creates the entry on first use."""
        now = now or utcnow()
        try:
            with get_session(self._engine) as session:
                record = session.get(PublishLedgerRecord, category)
                if record is None:
                    record = PublishLedgerRecord(category=category, last_published=now)
                elif now > record.last_published:
                    record.last_published = now
                session.add(record)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update publish ledger: {e}", details={"category": category})

        logger.debug("Publish ledger updated", category=category, last_published=now.isoformat())

    def entries(self) -> Dict[str, datetime]:
        try:
            with get_session(self._engine) as session:
                return {r.category: r.last_published for r in session.exec(select(PublishLedgerRecord))}
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read publish ledger: {e}")
