"""HTML message builders for the Telegram channel."""

from __future__ import annotations

from datetime import datetime, timezone
from html import escape
from typing import Optional, Sequence

from polyedge.config import MENU_DECREASE_USDC, MENU_INCREASE_USDC
from polyedge.execution.ledger import Position
from polyedge.markets.models import MarketRecord
from polyedge.pricing.result import PricingResult


def _edge_icon(edge: float) -> str:
    return "🔥" if edge >= 12 else "✅" if edge >= 8 else "⚠️"


def _conf_icon(confidence: float) -> str:
    return "💪" if confidence >= 85 else "👍" if confidence >= 70 else "🤔"


def _signed(amount: float) -> str:
    return f"+${amount:.2f}" if amount >= 0 else f"-${abs(amount):.2f}"


def format_trade_alert(
    result: PricingResult,
    market: MarketRecord,
    size: float,
    now: Optional[datetime] = None,
) -> str:
    """Everything a human needs to approve or reject a queued trade."""
    icon = _edge_icon(result.edge)
    lines = [
        f"{icon} <b>TRADE OPPORTUNITY</b>",
        "",
        f"<b>Market:</b> {escape(market.question[:100])}",
        f"<b>Category:</b> {market.category.value.upper()}",
        f"<b>Expiry:</b> {market.hours_to_expiry(now):.1f}h",
        "",
        f"<b>Side:</b> {escape(result.side)}",
        f"<b>Fair prob:</b> {result.fair_prob * 100:.1f}%",
        f"<b>Implied:</b> {result.implied_prob * 100:.1f}%",
        f"{icon} <b>Edge:</b> {result.edge:.1f}%",
        f"{_conf_icon(result.confidence)} <b>Confidence:</b> {result.confidence:.0f}/100",
        f"<b>Size:</b> ${size:.2f} USDC",
    ]
    if result.reward_apr:
        lines.append(f"<b>Reward APR:</b> {result.reward_apr:.0f}%")
    lines += [
        "",
        f"<b>Reasoning:</b> {escape(result.reasoning)}",
        f"<b>Risks:</b> {escape(result.risk_notes)}",
        "",
        "Reply: <code>approve</code> | <code>reject</code> | <code>size 5</code>",
    ]
    return "\n".join(lines)


def format_execution_confirm(
    result: PricingResult,
    market: MarketRecord,
    size: float,
    order_ids: Sequence[str],
    dry_run: bool,
    auto: bool = True,
) -> str:
    lines = [
        f"✅ <b>ORDER PLACED</b> ({'auto-executed' if auto else 'approved'})",
        f"<b>Market:</b> {escape(market.question[:80])}",
        f"<b>Side:</b> {escape(result.side)} @ {result.implied_prob * 100:.1f}¢",
        f"<b>Size:</b> ${size:.2f} USDC",
        f"<b>Edge:</b> {result.edge:.1f}% | Conf: {result.confidence:.0f}/100",
    ]
    if dry_run:
        lines.append("<i>(dry run, no real order)</i>")
    else:
        lines.append("<b>Orders:</b> " + ", ".join(f"<code>{escape(o)}</code>" for o in order_ids))
    return "\n".join(lines)


def format_exit_notice(position: Position, reason: str) -> str:
    pnl = position.pnl or 0.0
    exit_price = position.exit_price if position.exit_price is not None else 0.0
    return "\n".join([
        f"{'✅' if pnl >= 0 else '🔴'} <b>Position closed</b> ({escape(reason)})",
        f"<b>{escape(position.question[:70])}</b>",
        f"Entry: {position.entry_price * 100:.0f}¢ → Exit: {exit_price * 100:.0f}¢",
        f"PnL: {_signed(pnl)} USDC",
    ])


def format_pending_list(trades: Sequence, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if not trades:
        return "📭 No pending trades."
    lines = [f"📋 <b>Pending trades ({len(trades)})</b>", ""]
    for i, trade in enumerate(trades, start=1):
        age_min = (now - trade.enqueued_at).total_seconds() / 60
        lines.append(
            f"{i}. {escape(trade.market.question[:60])}\n"
            f"   {escape(trade.result.side)} | edge {trade.result.edge:.1f}% | "
            f"${trade.size:.2f} | {age_min:.0f}m ago"
        )
    lines += ["", "Oldest first. <code>approve</code> acts on #1."]
    return "\n".join(lines)


def build_menu_payload(
    positions: Sequence[Position],
    prices: dict[str, Optional[float]],
    daily_pnl: float,
) -> tuple[str, dict]:
    """Position manager text plus its inline keyboard.

    Callback data stays under Telegram's 64-byte limit:
    cl:<i>, ad:<i>:<amt>, rd:<i>:<amt>, rf, pd, bl.
    """
    text = "📊 <b>Position Manager</b>\n"
    text += f"💼 Open: {len(positions)} | Daily PnL: {_signed(daily_pnl)}\n\n"
    keyboard: list[list[dict]] = []

    if not positions:
        text += "📭 No open positions.\n"

    inc, dec = f"{MENU_INCREASE_USDC:g}", f"{MENU_DECREASE_USDC:g}"
    for i, pos in enumerate(positions):
        now = prices.get(pos.id)
        pnl_str, now_str = "—", "?¢"
        if now is not None:
            pnl = (now - pos.entry_price) * pos.shares
            pct = pos.unrealized_return(now) * 100
            pnl_str = f"{'🟢' if pnl >= 0 else '🔴'} {_signed(pnl)} ({pct:.0f}%)"
            now_str = f"{now * 100:.0f}¢"

        text += f"<b>{i + 1}. {escape(pos.question[:58])}</b>\n"
        text += f"   {escape(pos.side)} | Entry: {pos.entry_price * 100:.0f}¢ → Now: {now_str}\n"
        text += f"   Shares: {pos.shares:.1f} | Cost: ${pos.size:.2f} | {pnl_str}\n\n"

        keyboard.append([
            {"text": f"❌ Close #{i + 1}", "callback_data": f"cl:{i}"},
            {"text": f"➕ +${inc}", "callback_data": f"ad:{i}:{inc}"},
            {"text": f"➖ -${dec}", "callback_data": f"rd:{i}:{dec}"},
        ])

    keyboard.append([
        {"text": "🔄 Refresh", "callback_data": "rf"},
        {"text": "📋 Pending", "callback_data": "pd"},
        {"text": "💰 Balance", "callback_data": "bl"},
    ])
    return text, {"inline_keyboard": keyboard}
