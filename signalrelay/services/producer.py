"""Helpers for inserting work items, used by producers and test publishing."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from dateutil import parser as date_parser

from signalrelay.core.exceptions import ValidationError
from signalrelay.core.logging import get_logger
from signalrelay.core.models import SIGNAL_CATEGORIES, Category, ItemKind, WorkItem, to_naive_utc, utcnow
from signalrelay.data.store import WorkItemStore

logger = get_logger(__name__)

DEFAULT_TTL = timedelta(hours=24)

TimestampLike = Union[datetime, str, None]


def parse_timestamp(value: TimestampLike) -> Optional[datetime]:
    """Parse an ISO-ish timestamp into naive UTC; None passes through."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(date_parser.parse(value))
    except (ValueError, OverflowError) as e:
        raise ValidationError(f"Unparseable timestamp '{value}'", details={"value": value}) from e


def _expiry(generated_at: datetime, expires_at: TimestampLike, ttl: timedelta) -> datetime:
    parsed = parse_timestamp(expires_at)
    return parsed if parsed is not None else generated_at + ttl


def enqueue_signal(
    store: WorkItemStore,
    payload: Dict[str, Any],
    category: str = Category.PREMIUM.value,
    ttl: timedelta = DEFAULT_TTL,
    expires_at: TimestampLike = None,
    generated_at: TimestampLike = None,
) -> WorkItem:
    """Queue a trading signal for the given tier."""
    if category not in SIGNAL_CATEGORIES:
        raise ValidationError(
            f"Signals must be one of {', '.join(SIGNAL_CATEGORIES)}", details={"category": category}
        )
    generated = parse_timestamp(generated_at) or utcnow()
    item = store.insert(
        ItemKind.SIGNAL.value,
        category,
        payload,
        expires_at=_expiry(generated, expires_at, ttl),
        generated_at=generated,
    )
    logger.info("Signal queued", item_id=item.id, category=category, pair=payload.get("pair"))
    return item


def enqueue_news(
    store: WorkItemStore,
    payload: Dict[str, Any],
    ttl: timedelta = DEFAULT_TTL,
    expires_at: TimestampLike = None,
    generated_at: TimestampLike = None,
) -> WorkItem:
    """Queue a news update."""
    generated = parse_timestamp(generated_at) or utcnow()
    item = store.insert(
        ItemKind.NEWS.value,
        Category.NEWS.value,
        payload,
        expires_at=_expiry(generated, expires_at, ttl),
        generated_at=generated,
    )
    logger.info("News queued", item_id=item.id, title=payload.get("title"))
    return item
