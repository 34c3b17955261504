"""
Data models and type definitions for signalrelay.

Provides type-safe data structures for work items, tick outcomes and
delivery failure records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used throughout the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ItemKind(str, Enum):
    """Logical queue a work item belongs to."""

    SIGNAL = "signal"
    NEWS = "news"


class Category(str, Enum):
    """Audience tier; determines cadence window and destination."""

    PREMIUM = "premium"
    FREE = "free"
    NEWS = "news"


SIGNAL_CATEGORIES = (Category.PREMIUM.value, Category.FREE.value)


class WorkItemStatus(str, Enum):
    """Lifecycle status of a work item."""

    PENDING = "pending"
    SENDING = "sending"
    ACTIVE = "active"
    PUBLISHED = "published"
    DEFERRED = "deferred"
    INVALID = "invalid"
    FAILED = "failed"

    @classmethod
    def sent_status_for(cls, kind: str) -> "WorkItemStatus":
        """Terminal status written after a confirmed send."""
        return cls.PUBLISHED if kind == ItemKind.NEWS.value else cls.ACTIVE


class OutcomeStatus(str, Enum):
    """Per-item result reported by a tick."""

    SENT = "sent"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    ERROR = "error"


class WorkItem(BaseModel):
    """Unit of outbound content (signal or news) with lifecycle status."""

    id: int
    kind: ItemKind
    category: Category
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: WorkItemStatus = Field(default=WorkItemStatus.PENDING)

    generated_at: datetime
    expires_at: datetime

    # Written only by the consumer
    claimed_at: Optional[datetime] = None
    deferred_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_transport_message_id: Optional[int] = None
    sent_channels: List[str] = Field(default_factory=list)
    send_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    @field_validator("sent_channels", mode="before")
    @classmethod
    def parse_sent_channels(cls, v):
        return list(v or [])

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v):
        return dict(v or {})

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy for failure records."""
        return self.model_dump(mode="json")


class ItemOutcome(BaseModel):
    """Result of processing one claimed item in a tick."""

    item_id: int
    kind: ItemKind
    category: Optional[Category] = None
    status: OutcomeStatus
    reason: Optional[str] = None
    channel: Optional[str] = None
    message_id: Optional[int] = None
    error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class TickResult(BaseModel):
    """Result of a single consumer tick."""

    correlation_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    outcomes: List[ItemOutcome] = Field(default_factory=list)

    # Tick-level failure (store unreachable); per-item errors live in outcomes
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status.value)

    def finish(self) -> "TickResult":
        self.completed_at = utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
        return self


class DeliveryFailure(BaseModel):
    """Append-only record of a send whose state commit could not be confirmed."""

    id: Optional[int] = None
    item_id: int
    kind: ItemKind
    transport_message_id: Optional[int] = None
    channel_id: Optional[str] = None
    error_message: Optional[str] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    # Operator resolution
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None
