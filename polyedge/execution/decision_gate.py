"""Decision gate: auto-execute strong opportunities, queue the rest for approval.

An opportunity auto-executes only when all three hold:
    edge >= AUTO_EXECUTE_EDGE_PCT
    confidence >= AUTO_EXECUTE_CONFIDENCE
    size <= AUTO_EXECUTE_MAX_SIZE_PCT % of bankroll

Everything else is recorded as a pending position, queued, and announced on
the approval channel. Arbitrage bundles execute one BUY per outcome token,
with the size split evenly across legs.
"""

from __future__ import annotations

import logging
from html import escape
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from polyedge.api.telegram_client import TelegramClient
from polyedge.config import (
    AUTO_EXECUTE_CONFIDENCE,
    AUTO_EXECUTE_EDGE_PCT,
    AUTO_EXECUTE_MAX_SIZE_PCT,
    BANKROLL_USDC,
)
from polyedge.execution.approval_queue import ApprovalQueue, PendingTrade
from polyedge.execution.engine import ExecutionEngine, OrderRequest, clamp_price
from polyedge.execution.ledger import Position, PositionNotFoundError, PositionStatus
from polyedge.execution.risk_manager import RiskManager
from polyedge.markets.models import MarketRecord, OutcomeToken
from polyedge.notifications.alerts import format_execution_confirm, format_trade_alert
from polyedge.pricing.result import PricingResult

logger = logging.getLogger(__name__)


class GateOutcome(str, Enum):
    EXECUTED = "executed"
    QUEUED = "queued"
    FAILED = "failed"


class TradeLeg(BaseModel):
    token: OutcomeToken
    usdc: float
    price: float
    fair_prob: float


def build_legs(market: MarketRecord, result: PricingResult, size: float) -> list[TradeLeg]:
    """One leg per token for an arbitrage bundle, otherwise the chosen side's token."""
    if result.is_arbitrage:
        n = len(market.tokens)
        per_leg = round(size / n, 2)
        return [
            TradeLeg(token=t, usdc=per_leg, price=clamp_price(t.price), fair_prob=1.0 / n)
            for t in market.tokens
        ]
    token = market.token_for(result.side)
    if token is None:
        return []
    return [TradeLeg(token=token, usdc=size, price=clamp_price(result.implied_prob), fair_prob=result.fair_prob)]


class DecisionGate:
    """Routes sized, risk-approved opportunities to execution or the approval queue."""

    def __init__(
        self,
        risk: RiskManager,
        engine: ExecutionEngine,
        queue: ApprovalQueue,
        notifier: TelegramClient,
        auto_edge: float = AUTO_EXECUTE_EDGE_PCT,
        auto_confidence: float = AUTO_EXECUTE_CONFIDENCE,
        auto_max_size: float = BANKROLL_USDC * AUTO_EXECUTE_MAX_SIZE_PCT / 100,
    ) -> None:
        self.risk = risk
        self.engine = engine
        self.queue = queue
        self.notifier = notifier
        self.auto_edge = auto_edge
        self.auto_confidence = auto_confidence
        self.auto_max_size = auto_max_size

    def should_auto_execute(self, result: PricingResult, size: float) -> bool:
        return (
            result.edge >= self.auto_edge
            and result.confidence >= self.auto_confidence
            and size <= self.auto_max_size
        )

    async def handle(self, market: MarketRecord, result: PricingResult, size: float) -> GateOutcome:
        if self.should_auto_execute(result, size):
            positions = await self.execute(market, result, size)
            if not positions:
                return GateOutcome.FAILED
            await self.notifier.send_message(
                format_execution_confirm(
                    result, market, size,
                    [p.order_id or "" for p in positions],
                    dry_run=self.engine.dry_run,
                )
            )
            return GateOutcome.EXECUTED

        await self.enqueue(market, result, size)
        return GateOutcome.QUEUED

    def _position_for(
        self,
        market: MarketRecord,
        result: PricingResult,
        leg: TradeLeg,
        status: PositionStatus,
        order_id: Optional[str] = None,
    ) -> Position:
        return Position(
            market_id=market.market_id,
            question=market.question,
            side=leg.token.outcome,
            token_id=leg.token.token_id,
            category=market.category,
            size=leg.usdc,
            entry_price=leg.price,
            fair_prob=leg.fair_prob,
            edge=result.edge,
            confidence=result.confidence,
            reasoning=result.reasoning,
            order_id=order_id,
            hold_to_settlement=result.is_arbitrage,
            status=status,
        )

    async def execute(self, market: MarketRecord, result: PricingResult, size: float) -> list[Position]:
        """Submit every leg; each accepted leg becomes an open ledger position."""
        opened: list[Position] = []
        for leg in build_legs(market, result, size):
            order = await self.engine.place_order(
                OrderRequest.for_usdc(
                    market.market_id, leg.token.token_id, "BUY", leg.price, leg.usdc,
                    edge=result.edge, neg_risk=market.group_id is not None,
                )
            )
            if not order.entry_ok:
                logger.warning(
                    "entry_failed",
                    extra={
                        "market_id": market.market_id,
                        "side": leg.token.outcome,
                        "status": order.status.value,
                        "error": order.error_msg,
                    },
                )
                if opened:
                    await self.notifier.send_message(
                        f"⚠️ Arbitrage leg {leg.token.outcome} failed after "
                        f"{len(opened)} leg(s) filled on {escape(market.question[:60])}. Check manually."
                    )
                break
            position = self._position_for(
                market, result, leg, PositionStatus.OPEN, order_id=order.order_id
            )
            opened.append(await self.risk.open(position))
        return opened

    async def enqueue(self, market: MarketRecord, result: PricingResult, size: float) -> PendingTrade:
        ids = []
        for leg in build_legs(market, result, size):
            pending = self._position_for(market, result, leg, PositionStatus.PENDING_APPROVAL)
            await self.risk.record_pending(pending)
            ids.append(pending.id)
        trade = PendingTrade(
            result=result, market=market, size=size, position_ids=ids, enqueued_at=self.queue.now()
        )
        self.queue.enqueue(trade)
        await self.notifier.send_message(format_trade_alert(result, market, size))
        return trade

    async def accept(self, trade: PendingTrade) -> bool:
        """Submit an approved trade directly; no further risk validation.

        Any error on the way rejects the legs still pending, so a failed
        approval never leaves a record stuck in ``pending_approval``.
        """
        try:
            return await self._submit_approved(trade)
        except Exception:
            logger.error(
                "approval_failed",
                extra={"market_id": trade.market.market_id, "size": trade.size},
                exc_info=True,
            )
            await self._reject_still_pending(trade, "approval_error")
            await self.notifier.send_message(
                f"❌ Approval failed for <b>{escape(trade.market.question[:70])}</b>. "
                "The trade was rejected."
            )
            return False

    async def _reject_still_pending(self, trade: PendingTrade, reason: str) -> None:
        ledger = await self.risk.snapshot()
        for position_id in trade.position_ids:
            try:
                position = ledger.find(position_id)
            except PositionNotFoundError:
                continue
            if position.status == PositionStatus.PENDING_APPROVAL:
                await self.risk.reject_pending(position_id, reason)

    async def _submit_approved(self, trade: PendingTrade) -> bool:
        legs = build_legs(trade.market, trade.result, trade.size)
        order_ids: list[str] = []
        ok = True
        for leg, position_id in zip(legs, trade.position_ids):
            if not ok:
                await self.risk.reject_pending(position_id, "earlier_leg_failed")
                continue
            order = await self.engine.place_order(
                OrderRequest.for_usdc(
                    trade.market.market_id, leg.token.token_id, "BUY", leg.price, leg.usdc,
                    edge=trade.result.edge, neg_risk=trade.market.group_id is not None,
                )
            )
            if order.entry_ok:
                await self.risk.activate_pending(
                    position_id, order_id=order.order_id, size=leg.usdc, entry_price=leg.price
                )
                order_ids.append(order.order_id)
            else:
                ok = False
                await self.risk.reject_pending(position_id, f"order_{order.status.value}")
                await self.notifier.send_message(
                    f"❌ Order failed for <b>{escape(trade.market.question[:70])}</b>: "
                    f"{escape(order.error_msg or order.status.value)}"
                )

        if order_ids:
            await self.notifier.send_message(
                format_execution_confirm(
                    trade.result, trade.market, trade.size, order_ids,
                    dry_run=self.engine.dry_run, auto=False,
                )
            )
        return ok and bool(order_ids)

    async def reject(self, trade: PendingTrade, reason: str = "rejected_by_user") -> None:
        for position_id in trade.position_ids:
            await self.risk.reject_pending(position_id, reason)

    async def expire_pending(self) -> int:
        """Reject the ledger records of queue entries that aged out. Silent."""
        expired = self.queue.purge_expired()
        for trade in expired:
            await self.reject(trade, "expired")
        return len(expired)
