"""Claim protocol: exclusive processing rights over a pending work item."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from signalrelay.core.models import WorkItem, utcnow
from signalrelay.data.store import WorkItemStore

logger = structlog.get_logger(__name__)


class ClaimProtocol:
    """
    Optimistic conditional ``pending -> sending`` transition.

    Exactly one concurrent caller wins each transition. Losing is expected
    contention and is reported as None, never as an error. Store failures
    propagate and leave the item untouched.
    """

    def __init__(self, store: WorkItemStore):
        self.store = store

    def claim(self, item_id: int, now: Optional[datetime] = None) -> Optional[WorkItem]:
        claimed = self.store.claim(item_id, now=now or utcnow())
        if claimed is None:
            logger.debug("Claim lost", item_id=item_id)
        return claimed

