"""In-memory queue of trades waiting for a human decision.

Oldest first. Entries older than the TTL are dropped silently from every
operation and parked until ``purge_expired`` hands them back, so their
ledger records can be rejected. Queue operations never await, so each one
is atomic on the event loop.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from polyedge.config import APPROVAL_TTL
from polyedge.markets.models import MarketRecord
from polyedge.pricing.result import PricingResult

logger = logging.getLogger(__name__)


class PendingTrade(BaseModel):
    result: PricingResult
    market: MarketRecord
    size: float = Field(..., gt=0)
    position_ids: list[str] = Field(default_factory=list, description="Ledger records, one per leg.")
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: datetime, ttl: float) -> bool:
        return now - self.enqueued_at > timedelta(seconds=ttl)


class ApprovalQueue:
    def __init__(
        self,
        ttl: float = APPROVAL_TTL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._items: deque[PendingTrade] = deque()
        self._expired: list[PendingTrade] = []

    def __len__(self) -> int:
        self._drop_expired()
        return len(self._items)

    def now(self) -> datetime:
        return self._clock()

    def _drop_expired(self) -> None:
        now = self._clock()
        while self._items and self._items[0].is_expired(now, self.ttl):
            self._expired.append(self._items.popleft())

    def enqueue(self, trade: PendingTrade) -> None:
        self._items.append(trade)
        logger.info(
            "trade_enqueued",
            extra={"market_id": trade.market.market_id, "size": trade.size, "depth": len(self._items)},
        )

    def purge_expired(self) -> list[PendingTrade]:
        """Hand back every entry that has aged out since the last call."""
        self._drop_expired()
        expired, self._expired = self._expired, []
        if expired:
            logger.info("pending_expired", extra={"count": len(expired)})
        return expired

    def accept_oldest(self, size: Optional[float] = None) -> Optional[PendingTrade]:
        """Pop the oldest live entry, optionally overriding its size."""
        if size is not None and size <= 0:
            raise ValueError(f"size override must be positive, got {size}")
        self._drop_expired()
        if not self._items:
            return None
        trade = self._items.popleft()
        if size is not None:
            trade = trade.model_copy(update={"size": size})
        return trade

    def reject_oldest(self) -> Optional[PendingTrade]:
        self._drop_expired()
        if not self._items:
            return None
        return self._items.popleft()

    def reject_all(self) -> list[PendingTrade]:
        self._drop_expired()
        rejected = list(self._items)
        self._items.clear()
        return rejected

    def list(self) -> list[PendingTrade]:
        self._drop_expired()
        return list(self._items)
