"""Risk manager: sole owner of the risk ledger.

Every proposed trade passes ``check`` before reaching the execution engine.
The checks, in order:

1. Circuit breaker (paused after a daily loss limit breach)
2. Maximum concurrent open positions
3. Total exposure cap
4. Bucket (category) exposure cap

A trade that clears all four is shrunk to the smallest of its proposed size,
the per-position cap and the remaining total and bucket headroom, rounded
down to the cent, and refused if that falls under the minimum order size.

The scan loop and the command poller both mutate the ledger, so every
mutation runs as one transaction under an ``asyncio.Lock``: load the
document, apply the change, recompute exposure from open positions, and
persist atomically. A failure anywhere inside leaves the stored ledger
untouched.

Order placement happens between the check and the commit, outside the
lock. ``reserve`` holds the approved amount as in-flight exposure for that
window so a concurrent check cannot spend the same headroom, and
``claim_exit`` gives one caller at a time the right to sell a position.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from pydantic import BaseModel, Field

from polyedge.config import (
    BANKROLL_USDC,
    CIRCUIT_BREAKER_COOLDOWN,
    DAILY_LOSS_LIMIT_PCT,
    MAX_CONCURRENT_POSITIONS,
    MAX_POSITION_PCT,
    MAX_SINGLE_BUCKET_PCT,
    MAX_TOTAL_EXPOSURE_PCT,
    MIN_ORDER_USDC,
)
from polyedge.execution.ledger import (
    LedgerStore,
    Position,
    PositionNotFoundError,
    PositionStatus,
    RiskLedger,
)
from polyedge.markets.models import MarketCategory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RiskLimits(BaseModel):
    """Bankroll and the fractional limits derived from it."""

    bankroll: float = Field(default=BANKROLL_USDC, gt=0)
    max_position_pct: float = MAX_POSITION_PCT
    max_total_exposure_pct: float = MAX_TOTAL_EXPOSURE_PCT
    max_bucket_pct: float = MAX_SINGLE_BUCKET_PCT
    daily_loss_limit_pct: float = DAILY_LOSS_LIMIT_PCT
    max_concurrent_positions: int = MAX_CONCURRENT_POSITIONS
    min_order_usdc: float = MIN_ORDER_USDC
    cooldown_seconds: int = CIRCUIT_BREAKER_COOLDOWN

    @classmethod
    def from_config(cls) -> "RiskLimits":
        return cls()

    @property
    def max_position_usdc(self) -> float:
        return self.bankroll * self.max_position_pct

    @property
    def max_total_usdc(self) -> float:
        return self.bankroll * self.max_total_exposure_pct

    @property
    def max_bucket_usdc(self) -> float:
        return self.bankroll * self.max_bucket_pct

    @property
    def daily_loss_limit_usdc(self) -> float:
        return self.bankroll * self.daily_loss_limit_pct


class RiskViolation(str, Enum):
    """Type of risk limit that refused a trade."""

    PAUSED = "paused"
    MAX_POSITIONS = "max_positions"
    TOTAL_EXPOSURE = "total_exposure"
    BUCKET_EXPOSURE = "bucket_exposure"
    BELOW_MINIMUM = "below_minimum"


class RiskDecision(BaseModel):
    """Result of a pre-trade risk check. Refusals are outcomes, not errors."""

    allowed: bool = False
    approved_size: float = 0.0
    violation: Optional[RiskViolation] = None
    reason: str = ""


def floor_cents(amount: float) -> float:
    return math.floor(amount * 100 + 1e-9) / 100


def evaluate(
    ledger: RiskLedger,
    proposed: float,
    category: MarketCategory,
    limits: RiskLimits,
    now: datetime,
    in_flight: int = 0,
) -> RiskDecision:
    """Pure risk check against a ledger snapshot.

    ``in_flight`` counts reserved entries that will become new positions.
    """
    if ledger.is_paused(now):
        return RiskDecision(
            violation=RiskViolation.PAUSED,
            reason=f"Circuit breaker active until {ledger.paused_until.isoformat()}.",
        )

    n_open = len(ledger.open_positions()) + in_flight
    if n_open >= limits.max_concurrent_positions:
        return RiskDecision(
            violation=RiskViolation.MAX_POSITIONS,
            reason=f"At max positions ({n_open}/{limits.max_concurrent_positions}).",
        )

    total_headroom = limits.max_total_usdc - ledger.total_exposure
    if total_headroom <= 0:
        return RiskDecision(
            violation=RiskViolation.TOTAL_EXPOSURE,
            reason=(
                f"Total exposure at cap "
                f"(${ledger.total_exposure:.2f} / ${limits.max_total_usdc:.2f})."
            ),
        )

    bucket = ledger.bucket_exposure.get(category.value, 0.0)
    bucket_headroom = limits.max_bucket_usdc - bucket
    if bucket_headroom <= 0:
        return RiskDecision(
            violation=RiskViolation.BUCKET_EXPOSURE,
            reason=(
                f"Bucket {category.value} at cap "
                f"(${bucket:.2f} / ${limits.max_bucket_usdc:.2f})."
            ),
        )

    size = floor_cents(
        min(proposed, limits.max_position_usdc, total_headroom, bucket_headroom)
    )
    if size < limits.min_order_usdc:
        return RiskDecision(
            violation=RiskViolation.BELOW_MINIMUM,
            approved_size=max(size, 0.0),
            reason=f"Size ${size:.2f} below minimum ${limits.min_order_usdc:.2f}.",
        )

    return RiskDecision(allowed=True, approved_size=size, reason="approved")


# ---------------------------------------------------------------------------
# Risk Manager
# ---------------------------------------------------------------------------


class RiskManager:
    """Serialized owner of the persisted risk ledger.

    Attributes:
        store: Where the ledger document lives.
        limits: Bankroll-derived caps.
    """

    def __init__(
        self,
        store: LedgerStore,
        limits: Optional[RiskLimits] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.limits = limits or RiskLimits.from_config()
        self._clock = clock
        self._lock = asyncio.Lock()
        # reservation id -> (bucket, usdc, opens a new position)
        self._reservations: dict[int, tuple[str, float, bool]] = {}
        self._reservation_ids = itertools.count()
        self._exiting: set[str] = set()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[RiskLedger]:
        async with self._lock:
            ledger = await asyncio.to_thread(self.store.load)
            self._maybe_reset_daily(ledger)
            yield ledger
            ledger.recompute_exposure()
            await asyncio.to_thread(self.store.save, ledger)

    async def snapshot(self) -> RiskLedger:
        """A private copy of the current ledger. Mutating it changes nothing."""
        async with self._lock:
            ledger = await asyncio.to_thread(self.store.load)
        self._maybe_reset_daily(ledger)
        return ledger

    def _maybe_reset_daily(self, ledger: RiskLedger) -> None:
        """Reset the daily pnl counter at midnight UTC."""
        today = self._clock().strftime("%Y-%m-%d")
        if ledger.daily_pnl_date != today:
            if ledger.daily_pnl_date is not None:
                logger.info(
                    "daily_pnl_reset",
                    extra={
                        "previous_day": ledger.daily_pnl_date,
                        "final_daily_pnl": ledger.daily_pnl,
                    },
                )
            ledger.daily_pnl = 0.0
            ledger.daily_pnl_date = today

    def _book_realized(self, ledger: RiskLedger, pnl: float) -> None:
        ledger.daily_pnl = round(ledger.daily_pnl + pnl, 6)
        if ledger.daily_pnl < -self.limits.daily_loss_limit_usdc and not ledger.is_paused(self._clock()):
            ledger.paused_until = self._clock() + timedelta(seconds=self.limits.cooldown_seconds)
            logger.warning(
                "circuit_breaker_tripped",
                extra={
                    "daily_pnl": ledger.daily_pnl,
                    "limit": -self.limits.daily_loss_limit_usdc,
                    "paused_until": ledger.paused_until.isoformat(),
                },
            )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _evaluate_with_reservations(
        self, ledger: RiskLedger, proposed: float, category: MarketCategory
    ) -> RiskDecision:
        ledger.recompute_exposure()
        in_flight = 0
        for bucket, usdc, new_position in self._reservations.values():
            ledger.total_exposure += usdc
            ledger.bucket_exposure[bucket] = ledger.bucket_exposure.get(bucket, 0.0) + usdc
            if new_position:
                in_flight += 1
        decision = evaluate(ledger, proposed, category, self.limits, self._clock(), in_flight)
        if not decision.allowed:
            logger.info(
                "risk_refused",
                extra={
                    "category": category.value,
                    "proposed": proposed,
                    "violation": decision.violation.value if decision.violation else None,
                    "reason": decision.reason,
                },
            )
        return decision

    async def check(self, proposed: float, category: MarketCategory) -> RiskDecision:
        """Read-only check. Reserves nothing; use ``reserve`` before trading."""
        ledger = await self.snapshot()
        return self._evaluate_with_reservations(ledger, proposed, category)

    @asynccontextmanager
    async def reserve(
        self, proposed: float, category: MarketCategory, new_position: bool = True
    ) -> AsyncIterator[RiskDecision]:
        """Check and hold the approved size as exposure for the block's duration.

        Commit the trade with ``open``/``add_to_position`` inside the block.
        The hold is released on exit, whether or not anything was committed.
        """
        async with self._lock:
            ledger = await asyncio.to_thread(self.store.load)
            self._maybe_reset_daily(ledger)
            decision = self._evaluate_with_reservations(ledger, proposed, category)
            reservation = next(self._reservation_ids)
            if decision.allowed:
                self._reservations[reservation] = (category.value, decision.approved_size, new_position)
        try:
            yield decision
        finally:
            self._reservations.pop(reservation, None)

    @asynccontextmanager
    async def claim_exit(self, position_id: str) -> AsyncIterator[Optional[Position]]:
        """Exclusive right to trade out of (or into) one open position.

        Yields a fresh copy of the position, or None when it is no longer
        open or another caller already holds the claim.
        """
        async with self._lock:
            ledger = await asyncio.to_thread(self.store.load)
            try:
                position: Optional[Position] = ledger.find(position_id)
            except PositionNotFoundError:
                position = None
            if position is not None and (not position.is_open or position_id in self._exiting):
                position = None
            if position is not None:
                self._exiting.add(position_id)
        if position is None:
            logger.info("position_claim_refused", extra={"position_id": position_id})
        try:
            yield position
        finally:
            if position is not None:
                self._exiting.discard(position_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def open(self, position: Position) -> Position:
        """Record an executed entry."""
        if position.status != PositionStatus.OPEN:
            raise ValueError(f"open() needs an open position, got {position.status.value}")
        async with self._transaction() as ledger:
            ledger.positions.append(position)
        logger.info(
            "position_opened",
            extra={
                "position_id": position.id,
                "market_id": position.market_id,
                "side": position.side,
                "size": position.size,
                "entry_price": position.entry_price,
                "category": position.category.value,
            },
        )
        return position

    async def record_pending(self, position: Position) -> Position:
        """Record a trade waiting for human approval. Carries no exposure."""
        if position.status != PositionStatus.PENDING_APPROVAL:
            raise ValueError(f"record_pending() needs a pending position, got {position.status.value}")
        async with self._transaction() as ledger:
            ledger.positions.append(position)
        return position

    async def activate_pending(
        self,
        position_id: str,
        order_id: Optional[str] = None,
        size: Optional[float] = None,
        entry_price: Optional[float] = None,
    ) -> Position:
        """pending_approval -> open, once the approved order is accepted."""
        async with self._transaction() as ledger:
            position = ledger.find(position_id)
            position.transition(PositionStatus.OPEN)
            if entry_price is not None:
                position.entry_price = entry_price
            if size is not None:
                position.size = size
            position.shares = position.size / position.entry_price
            position.order_id = order_id
            position.opened_at = self._clock()
            result = position.model_copy(deep=True)
        logger.info(
            "pending_activated",
            extra={"position_id": position_id, "size": result.size, "order_id": order_id},
        )
        return result

    async def reject_pending(self, position_id: str, reason: str = "") -> Position:
        async with self._transaction() as ledger:
            position = ledger.find(position_id)
            position.transition(PositionStatus.REJECTED)
            position.closed_at = self._clock()
            position.settlement_ref = reason or None
            result = position.model_copy(deep=True)
        logger.info("pending_rejected", extra={"position_id": position_id, "reason": reason})
        return result

    async def reject_orphaned_pending(self) -> int:
        """Reject pending entries left over from a previous process."""
        async with self._transaction() as ledger:
            orphans = ledger.pending_positions()
            for position in orphans:
                position.transition(PositionStatus.REJECTED)
                position.closed_at = self._clock()
                position.settlement_ref = "orphaned_at_startup"
        if orphans:
            logger.info("orphaned_pending_rejected", extra={"count": len(orphans)})
        return len(orphans)

    def _close_in_place(
        self, ledger: RiskLedger, position: Position, exit_price: float, settlement_ref: str
    ) -> None:
        position.transition(PositionStatus.CLOSED)
        pnl = (exit_price - position.entry_price) * position.size / position.entry_price
        position.exit_price = exit_price
        position.pnl = round(pnl, 6)
        position.won = exit_price > position.entry_price
        position.closed_at = self._clock()
        position.settlement_ref = settlement_ref or None
        self._book_realized(ledger, pnl)

    async def close(
        self, position_id: str, exit_price: float, settlement_ref: str = ""
    ) -> Position:
        """Close an open position at ``exit_price`` and book the realized pnl.

        pnl = (exit - entry) * size / entry, i.e. shares * (exit - entry).
        Exposure is released by the original committed size.
        """
        async with self._transaction() as ledger:
            position = ledger.find(position_id)
            self._close_in_place(ledger, position, exit_price, settlement_ref)
            result = position.model_copy(deep=True)
        logger.info(
            "position_closed",
            extra={
                "position_id": position_id,
                "exit_price": exit_price,
                "pnl": result.pnl,
                "won": result.won,
                "ref": settlement_ref,
            },
        )
        return result

    async def add_to_position(self, position_id: str, add_usdc: float, price: float) -> Position:
        """Grow an open position; entry becomes the share-weighted average."""
        if add_usdc <= 0 or not 0 < price <= 1:
            raise ValueError("add_usdc must be positive and price in (0, 1]")
        async with self._transaction() as ledger:
            position = ledger.find(position_id)
            position.require_open()
            position.size = round(position.size + add_usdc, 6)
            position.shares += add_usdc / price
            position.entry_price = position.size / position.shares
            result = position.model_copy(deep=True)
        logger.info(
            "position_increased",
            extra={"position_id": position_id, "added": add_usdc, "size": result.size},
        )
        return result

    async def reduce_position(
        self, position_id: str, reduce_usdc: float, exit_price: float
    ) -> Position:
        """Sell part of an open position. Reducing by the full size closes it."""
        if reduce_usdc <= 0:
            raise ValueError("reduce_usdc must be positive")
        async with self._transaction() as ledger:
            position = ledger.find(position_id)
            position.require_open()
            if reduce_usdc >= position.size - 1e-9:
                self._close_in_place(ledger, position, exit_price, "manual_reduce")
            else:
                fraction = reduce_usdc / position.size
                realized = (exit_price - position.entry_price) * reduce_usdc / position.entry_price
                position.size = round(position.size - reduce_usdc, 6)
                position.shares -= position.shares * fraction
                self._book_realized(ledger, realized)
            result = position.model_copy(deep=True)
        logger.info(
            "position_reduced",
            extra={"position_id": position_id, "reduced": reduce_usdc, "size": result.size},
        )
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def status(self) -> dict:
        """Current risk status summary."""
        ledger = await self.snapshot()
        now = self._clock()
        return {
            "paused": ledger.is_paused(now),
            "paused_until": ledger.paused_until.isoformat() if ledger.is_paused(now) else None,
            "n_positions": len(ledger.open_positions()),
            "n_pending": len(ledger.pending_positions()),
            "max_positions": self.limits.max_concurrent_positions,
            "total_exposure": ledger.total_exposure,
            "max_exposure": self.limits.max_total_usdc,
            "bucket_exposure": dict(ledger.bucket_exposure),
            "max_bucket_exposure": self.limits.max_bucket_usdc,
            "daily_pnl": ledger.daily_pnl,
            "daily_loss_limit": self.limits.daily_loss_limit_usdc,
            "bankroll": self.limits.bankroll,
        }
