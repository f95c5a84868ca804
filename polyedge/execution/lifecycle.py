"""Position lifecycle: exit monitoring for open positions.

Each scan, every open position is checked once:

    live order book  -> reference price = mid of best bid / best ask
                        stop-loss    if price < entry * STOP_LOSS_FRACTION
                        take-profit  if price - fair > TAKE_PROFIT_MARGIN
    no order book    -> settlement query; a resolved market closes at the
                        terminal price of the held outcome (1.0 or 0.0)

Arbitrage legs are held to settlement and skip the price-based exits.

Exits are SELL limits at a discount to the reference price. A matched (or
dry-run) exit closes the position at its fill price; a resting exit is
cancelled and retried next cycle so no order is left behind.

The scan loop and the inline menu can act on the same position at once.
Every exit, resize and settlement close runs under the risk manager's exit
claim, so only one SELL per position is ever in flight.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from html import escape
from typing import Optional

from pydantic import BaseModel

from polyedge.api.gamma_client import GammaClient
from polyedge.api.telegram_client import TelegramClient
from polyedge.config import EXIT_PRICE_FACTOR, STOP_LOSS_FRACTION, TAKE_PROFIT_MARGIN
from polyedge.execution.engine import (
    ExecutionEngine,
    OrderRequest,
    OrderStatus,
    clamp_price,
)
from polyedge.execution.ledger import InvalidTransitionError, Position, PositionNotFoundError
from polyedge.execution.risk_manager import RiskManager
from polyedge.notifications.alerts import format_exit_notice

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Another action on this position is in progress, or it was just closed."


class ExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    SETTLED = "settled"
    MANUAL = "manual"


class ActionOutcome(BaseModel):
    """Reply for a manually triggered position action."""

    ok: bool
    message: str


def exit_reason(
    position: Position,
    price: float,
    stop_loss_fraction: float = STOP_LOSS_FRACTION,
    take_profit_margin: float = TAKE_PROFIT_MARGIN,
) -> Optional[ExitReason]:
    if position.hold_to_settlement:
        return None
    if price < position.entry_price * stop_loss_fraction:
        return ExitReason.STOP_LOSS
    if price - position.fair_prob > take_profit_margin:
        return ExitReason.TAKE_PROFIT
    return None


class PositionLifecycleManager:
    def __init__(
        self,
        risk: RiskManager,
        engine: ExecutionEngine,
        gamma: GammaClient,
        notifier: TelegramClient,
        stop_loss_fraction: float = STOP_LOSS_FRACTION,
        take_profit_margin: float = TAKE_PROFIT_MARGIN,
        exit_price_factor: float = EXIT_PRICE_FACTOR,
    ) -> None:
        self.risk = risk
        self.engine = engine
        self.gamma = gamma
        self.notifier = notifier
        self.stop_loss_fraction = stop_loss_fraction
        self.take_profit_margin = take_profit_margin
        self.exit_price_factor = exit_price_factor

    async def reference_price(self, position: Position) -> Optional[float]:
        if not position.token_id:
            return None
        book = await self.engine.get_order_book(position.token_id)
        if book is None:
            return None
        return book.mid_price()

    # ------------------------------------------------------------------
    # Scan-cycle checks
    # ------------------------------------------------------------------

    async def check_all(self, stopping: Optional[asyncio.Event] = None) -> list[Position]:
        """Check every open position once. Returns those closed this pass."""
        ledger = await self.risk.snapshot()
        closed: list[Position] = []
        for position in ledger.open_positions():
            if stopping is not None and stopping.is_set():
                logger.info("lifecycle_stopped_early")
                break
            try:
                result = await self.check_position(position)
            except Exception:
                logger.error(
                    "lifecycle_check_failed",
                    extra={"position_id": position.id, "market_id": position.market_id},
                    exc_info=True,
                )
                continue
            if result is not None:
                closed.append(result)
        return closed

    async def check_position(self, position: Position) -> Optional[Position]:
        async with self.risk.claim_exit(position.id) as claimed:
            if claimed is None:
                return None
            return await self._check_claimed(claimed)

    async def _check_claimed(self, position: Position) -> Optional[Position]:
        price = await self.reference_price(position)

        if price is None:
            settlement = await self.gamma.fetch_settlement(position.market_id)
            if settlement is None or not settlement.resolved:
                logger.info(
                    "position_unpriced",
                    extra={"position_id": position.id, "market_id": position.market_id},
                )
                return None
            terminal = settlement.price_for(position.side)
            if terminal is None:
                logger.warning(
                    "settlement_outcome_missing",
                    extra={"position_id": position.id, "side": position.side},
                )
                return None
            closed = await self.risk.close(
                position.id, terminal, settlement_ref=f"settlement:{position.market_id}"
            )
            await self.notifier.send_message(format_exit_notice(closed, ExitReason.SETTLED.value))
            return closed

        reason = exit_reason(position, price, self.stop_loss_fraction, self.take_profit_margin)
        if reason is None:
            return None
        logger.info(
            "exit_triggered",
            extra={
                "position_id": position.id,
                "reason": reason.value,
                "price": price,
                "entry_price": position.entry_price,
                "fair_prob": position.fair_prob,
            },
        )
        return await self._sell(position, price, reason)

    async def _sell(
        self,
        position: Position,
        price: float,
        reason: ExitReason,
        shares: Optional[float] = None,
    ) -> Optional[Position]:
        """Submit the exit SELL; close on fill, cancel if it rests."""
        limit = clamp_price(price * self.exit_price_factor)
        quantity = round(shares if shares is not None else position.shares, 2)
        if quantity <= 0:
            return None
        order = await self.engine.place_order(
            OrderRequest(
                market_id=position.market_id,
                token_id=position.token_id,
                side="SELL",
                price=limit,
                size=quantity,
            )
        )

        if order.filled:
            fill = order.fill_price or limit
            closed = await self.risk.close(
                position.id, fill, settlement_ref=f"{reason.value}:{order.order_id}"
            )
            await self.notifier.send_message(format_exit_notice(closed, reason.value))
            return closed

        if order.status in (OrderStatus.LIVE, OrderStatus.SUBMITTED) and order.order_id:
            cancelled = await self.engine.cancel_order(order.order_id)
            if cancelled:
                logger.info(
                    "exit_unfilled_cancelled",
                    extra={"position_id": position.id, "order_id": order.order_id},
                )
            else:
                logger.error(
                    "exit_cancel_failed",
                    extra={"position_id": position.id, "order_id": order.order_id},
                )
                await self.notifier.send_message(
                    f"⚠️ Exit order <code>{escape(order.order_id)}</code> for "
                    f"<b>{escape(position.question[:60])}</b> is resting and could not be cancelled."
                )
            return None

        logger.warning(
            "exit_failed",
            extra={"position_id": position.id, "status": order.status.value, "error": order.error_msg},
        )
        return None

    # ------------------------------------------------------------------
    # Manual actions (inline menu)
    # ------------------------------------------------------------------

    async def _find_open(self, position_id: str) -> Optional[Position]:
        ledger = await self.risk.snapshot()
        try:
            position = ledger.find(position_id)
        except PositionNotFoundError:
            return None
        return position if position.is_open else None

    async def close_position(self, position_id: str) -> ActionOutcome:
        if await self._find_open(position_id) is None:
            return ActionOutcome(ok=False, message="Position not found. Try refreshing.")
        async with self.risk.claim_exit(position_id) as position:
            if position is None:
                return ActionOutcome(ok=False, message=BUSY_MESSAGE)
            price = await self.reference_price(position)
            if price is None:
                return ActionOutcome(ok=False, message="No order book. The market may have resolved.")
            try:
                closed = await self._sell(position, price, ExitReason.MANUAL)
            except InvalidTransitionError:
                return ActionOutcome(ok=False, message="Position already closed.")
        if closed is None:
            return ActionOutcome(ok=False, message="Sell order did not fill. Try again.")
        return ActionOutcome(ok=True, message=f"Closed at {closed.exit_price * 100:.0f}¢, PnL ${closed.pnl:+.2f}")

    async def increase_position(self, position_id: str, usdc: float) -> ActionOutcome:
        if await self._find_open(position_id) is None:
            return ActionOutcome(ok=False, message="Position not found. Try refreshing.")
        async with self.risk.claim_exit(position_id) as position:
            if position is None:
                return ActionOutcome(ok=False, message=BUSY_MESSAGE)
            async with self.risk.reserve(usdc, position.category, new_position=False) as decision:
                if not decision.allowed:
                    return ActionOutcome(ok=False, message=f"Risk refused: {decision.reason}")

                book = await self.engine.get_order_book(position.token_id) if position.token_id else None
                if book is None or book.mid_price() is None:
                    return ActionOutcome(ok=False, message="No order book for this outcome.")
                price = clamp_price(book.best_ask if book.best_ask is not None else book.mid_price())

                order = await self.engine.place_order(
                    OrderRequest.for_usdc(
                        position.market_id, position.token_id, "BUY", price, decision.approved_size
                    )
                )
                if not order.entry_ok:
                    return ActionOutcome(ok=False, message=f"Buy failed: {order.error_msg or order.status.value}")
                updated = await self.risk.add_to_position(
                    position.id, decision.approved_size, order.request.price
                )
        return ActionOutcome(ok=True, message=f"Added ${decision.approved_size:.2f}. Size now ${updated.size:.2f}")

    async def decrease_position(self, position_id: str, usdc: float) -> ActionOutcome:
        if await self._find_open(position_id) is None:
            return ActionOutcome(ok=False, message="Position not found. Try refreshing.")
        async with self.risk.claim_exit(position_id) as position:
            if position is None:
                return ActionOutcome(ok=False, message=BUSY_MESSAGE)
            price = await self.reference_price(position)
            if price is None:
                return ActionOutcome(ok=False, message="No order book. The market may have resolved.")

            if usdc >= position.size:
                closed = await self._sell(position, price, ExitReason.MANUAL)
                if closed is None:
                    return ActionOutcome(ok=False, message="Sell order did not fill. Try again.")
                return ActionOutcome(ok=True, message=f"Closed. PnL ${closed.pnl:+.2f}")

            shares = round(position.shares * usdc / position.size, 2)
            if shares <= 0:
                return ActionOutcome(ok=False, message="Amount too small to sell.")
            limit = clamp_price(price * self.exit_price_factor)
            order = await self.engine.place_order(
                OrderRequest(
                    market_id=position.market_id,
                    token_id=position.token_id,
                    side="SELL",
                    price=limit,
                    size=shares,
                )
            )
            if not order.filled:
                if order.status in (OrderStatus.LIVE, OrderStatus.SUBMITTED) and order.order_id:
                    await self.engine.cancel_order(order.order_id)
                return ActionOutcome(ok=False, message=f"Sell did not fill ({order.status.value}).")
            updated = await self.risk.reduce_position(position.id, usdc, order.fill_price or limit)
        return ActionOutcome(ok=True, message=f"Reduced by ${usdc:.2f}. Size now ${updated.size:.2f}")
