"""Position records, the risk ledger document, and its on-disk store.

The ledger is a single JSON document holding every position ever created
(across lifecycle states) plus the running daily pnl, exposure totals and
the circuit-breaker pause. Only ``RiskManager`` mutates it.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from polyedge.markets.models import MarketCategory

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """A position was asked to move to a state its current state forbids."""


class PositionNotFoundError(KeyError):
    """No position with the given ID exists in the ledger."""


class PositionStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    OPEN = "open"
    CLOSED = "closed"
    REJECTED = "rejected"


_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.PENDING_APPROVAL: frozenset({PositionStatus.OPEN, PositionStatus.REJECTED}),
    PositionStatus.OPEN: frozenset({PositionStatus.CLOSED}),
    PositionStatus.CLOSED: frozenset(),
    PositionStatus.REJECTED: frozenset(),
}


def new_position_id() -> str:
    return uuid.uuid4().hex[:12]


class Position(BaseModel):
    """One trade from proposal to settlement."""

    id: str = Field(default_factory=new_position_id)
    market_id: str
    question: str = ""
    side: str = Field(..., description="Outcome label held.")
    token_id: str = ""
    category: MarketCategory = Field(..., description="Exposure bucket.")
    size: float = Field(..., ge=0.0, description="Committed USDC.")
    shares: float = Field(default=0.0, ge=0.0)
    entry_price: float = Field(..., gt=0.0, le=1.0)
    fair_prob: float = Field(default=0.0, ge=0.0, le=1.0)
    edge: float = 0.0
    confidence: float = 0.0
    reasoning: str = ""
    order_id: Optional[str] = None
    hold_to_settlement: bool = Field(
        default=False, description="Arbitrage legs skip take-profit/stop-loss."
    )
    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    won: Optional[bool] = None
    settlement_ref: Optional[str] = None

    def model_post_init(self, __context) -> None:
        if self.shares == 0.0 and self.size > 0:
            self.shares = self.size / self.entry_price

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def transition(self, new_status: PositionStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"position {self.id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status = new_status

    def require_open(self) -> None:
        if not self.is_open:
            raise InvalidTransitionError(
                f"position {self.id} is {self.status.value}, not open"
            )

    def unrealized_return(self, price: float) -> float:
        return (price - self.entry_price) / self.entry_price


class RiskLedger(BaseModel):
    positions: list[Position] = Field(default_factory=list)
    daily_pnl: float = 0.0
    daily_pnl_date: Optional[str] = None
    total_exposure: float = 0.0
    bucket_exposure: dict[str, float] = Field(default_factory=dict)
    paused_until: Optional[datetime] = None

    def open_positions(self) -> list[Position]:
        return [p for p in self.positions if p.is_open]

    def pending_positions(self) -> list[Position]:
        return [p for p in self.positions if p.status == PositionStatus.PENDING_APPROVAL]

    def find(self, position_id: str) -> Position:
        for position in self.positions:
            if position.id == position_id:
                return position
        raise PositionNotFoundError(position_id)

    def recompute_exposure(self) -> None:
        """Rebuild totals from open positions so they can never drift."""
        buckets: dict[str, float] = defaultdict(float)
        for position in self.open_positions():
            buckets[position.category.value] += position.size
        self.bucket_exposure = {k: round(v, 6) for k, v in buckets.items()}
        self.total_exposure = round(sum(buckets.values()), 6)

    def is_paused(self, now: datetime) -> bool:
        return self.paused_until is not None and now < self.paused_until


class LedgerStore:
    """JSON file persistence with atomic replace."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def load(self) -> RiskLedger:
        if not self.path.exists():
            return RiskLedger()
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return RiskLedger()
        return RiskLedger.model_validate_json(raw)

    def save(self, ledger: RiskLedger) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(ledger.model_dump_json(indent=2))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
