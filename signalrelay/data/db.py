"""Database tables and engine helpers for signalrelay."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from signalrelay.core.models import DeliveryFailure, WorkItem, utcnow


class WorkItemRecord(SQLModel, table=True):
    """Signal or news item queued for publishing."""

    __tablename__ = "work_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)
    category: str = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="pending", index=True)

    generated_at: datetime = Field(default_factory=utcnow, index=True)
    expires_at: datetime = Field(index=True)

    claimed_at: Optional[datetime] = None
    deferred_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_transport_message_id: Optional[int] = None
    sent_channels: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    send_attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))

    def to_work_item(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            kind=self.kind,
            category=self.category,
            payload=self.payload,
            status=self.status,
            generated_at=self.generated_at,
            expires_at=self.expires_at,
            claimed_at=self.claimed_at,
            deferred_at=self.deferred_at,
            sent_at=self.sent_at,
            last_transport_message_id=self.last_transport_message_id,
            sent_channels=self.sent_channels,
            send_attempts=self.send_attempts,
            last_error=self.last_error,
        )


class PublishLedgerRecord(SQLModel, table=True):
    """Last successful publish per category."""

    __tablename__ = "publish_ledger"

    category: str = Field(primary_key=True)
    last_published: datetime


class DeliveryFailureRecord(SQLModel, table=True):
    """Send whose state commit could not be confirmed; read by operators."""

    __tablename__ = "delivery_failures"

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(index=True)
    kind: str
    transport_message_id: Optional[int] = None
    channel_id: Optional[str] = None
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    snapshot: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)

    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    def to_delivery_failure(self) -> DeliveryFailure:
        return DeliveryFailure(
            id=self.id,
            item_id=self.item_id,
            kind=self.kind,
            transport_message_id=self.transport_message_id,
            channel_id=self.channel_id,
            error_message=self.error_message,
            snapshot=self.snapshot or {},
            created_at=self.created_at,
            resolved_at=self.resolved_at,
            resolution=self.resolution,
        )


def create_engine_for_url(url: str, echo: bool = False) -> Engine:
    """Return an engine for the provided database URL."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    # Several consumer threads share one file
    connect_args = {"check_same_thread": False, "timeout": 30}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # In-memory databases exist per connection; keep exactly one
        return create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine, tables: Optional[List[Any]] = None) -> None:
    """Ensure tables exist (all of them unless a subset is given)."""
    SQLModel.metadata.create_all(engine, tables=[t.__table__ for t in tables] if tables else None)


def get_session(engine: Engine) -> Session:
    """Create a session bound to the shared engine."""
    return Session(engine)
