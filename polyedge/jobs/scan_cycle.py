"""Job: one scan cycle, from raw feed to gated decisions and exit checks.

1. Reject queue entries that aged out
2. Fetch active markets, filter, prioritize
3. For each market: price -> size -> risk check -> decision gate
4. Check every open position for exits

Each market and each position runs inside its own failure boundary, so one
bad record costs only itself. The cycle stops between markets once the
context's ``stopping`` event is set.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel

from polyedge.config import MARKET_PROCESS_DELAY
from polyedge.execution.decision_gate import GateOutcome
from polyedge.execution.ledger import PositionStatus
from polyedge.markets.classifier import filter_markets, group_markets, prioritize
from polyedge.markets.models import MarketRecord

if TYPE_CHECKING:
    from polyedge.context import EngineContext

logger = logging.getLogger(__name__)


class ScanSummary(BaseModel):
    fetched: int = 0
    eligible: int = 0
    priced: int = 0
    executed: int = 0
    queued: int = 0
    refused: int = 0
    failed: int = 0
    skipped_held: int = 0
    closed: int = 0
    interrupted: bool = False


async def _held_market_ids(ctx: "EngineContext") -> set[str]:
    ledger = await ctx.risk.snapshot()
    return {
        p.market_id
        for p in ledger.positions
        if p.status in (PositionStatus.OPEN, PositionStatus.PENDING_APPROVAL)
    }


async def _process_market(
    ctx: "EngineContext",
    market: MarketRecord,
    group: list[MarketRecord],
    now: datetime,
    summary: ScanSummary,
) -> None:
    result = await ctx.pricing.price(market, group, now)
    if result is None:
        return
    summary.priced += 1

    if result.size_usdc <= 0:
        logger.info("zero_kelly_size", extra={"market_id": market.market_id})
        return

    # Headroom stays reserved until the gate has opened or queued the trade.
    async with ctx.risk.reserve(result.size_usdc, market.category) as decision:
        if not decision.allowed:
            summary.refused += 1
            return
        outcome = await ctx.gate.handle(market, result, decision.approved_size)

    if outcome == GateOutcome.EXECUTED:
        summary.executed += 1
    elif outcome == GateOutcome.QUEUED:
        summary.queued += 1
    else:
        summary.failed += 1


async def run_scan_cycle(ctx: "EngineContext", delay: float = MARKET_PROCESS_DELAY) -> ScanSummary:
    summary = ScanSummary()
    now = datetime.now(timezone.utc)

    await ctx.gate.expire_pending()

    markets = await ctx.gamma.fetch_active_markets()
    summary.fetched = len(markets)
    eligible = filter_markets(markets, now)
    ordered = prioritize(eligible)
    summary.eligible = len(ordered)
    # Group sums need every member, including ones filtered out individually.
    groups = group_markets(markets)
    held = await _held_market_ids(ctx)

    logger.info(
        "scan_cycle_started",
        extra={"fetched": summary.fetched, "eligible": summary.eligible, "held": len(held)},
    )

    for market in ordered:
        if ctx.stopping.is_set():
            summary.interrupted = True
            logger.info("scan_cycle_interrupted")
            break
        if market.market_id in held:
            summary.skipped_held += 1
            continue
        try:
            group = groups.get(market.group_id, []) if market.group_id else []
            await _process_market(ctx, market, group, now, summary)
        except Exception:
            summary.failed += 1
            logger.error(
                "market_failed",
                extra={"market_id": market.market_id, "question": market.question[:80]},
                exc_info=True,
            )
        if delay:
            await asyncio.sleep(delay)

    if not ctx.stopping.is_set():
        closed = await ctx.lifecycle.check_all(ctx.stopping)
        summary.closed = len(closed)

    logger.info("scan_cycle_complete", extra=summary.model_dump())
    return summary
