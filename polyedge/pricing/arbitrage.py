"""Arbitrage pricers: binary bundles and grouped mutually-exclusive sets.

Binary: buying every outcome of a market pays exactly 1.0 at settlement, so
a bundle priced below 1.0 minus fees is a locked-in profit. A bundle priced
above 1.0 would need shorting, which the exchange does not offer.

Grouped: the Yes prices of a mutually-exclusive, exhaustive set of markets
should sum to 1.0. When they drift, the cheapest member relative to a
uniform prior is the candidate.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from polyedge.config import (
    ARB_CONFIDENCE,
    ARB_NO_ARB_BAND,
    GROUPED_CONFIDENCE,
    GROUPED_DEVIATION_THRESHOLD,
    GROUPED_UNDERPRICED_RATIO,
)
from polyedge.markets.models import MarketRecord
from polyedge.pricing.result import ARB_BOTH, PricingResult

logger = logging.getLogger(__name__)


def price_binary_arbitrage(
    market: MarketRecord, no_arb_band: float = ARB_NO_ARB_BAND
) -> Optional[PricingResult]:
    """Bundle view: fair 1.0 for the whole set (0.5 per leg), implied = price sum."""
    total = market.price_sum
    deviation = abs(1.0 - total)

    if deviation <= no_arb_band:
        return None
    if total > 1.0:
        logger.debug("arb_overpriced_bundle", extra={"market_id": market.market_id, "sum": total})
        return None

    legs = ", ".join(f"{t.outcome} {t.price:.3f}" for t in market.tokens)
    return PricingResult(
        market_id=market.market_id,
        side=ARB_BOTH,
        fair_prob=1.0,
        implied_prob=total,
        confidence=ARB_CONFIDENCE,
        reasoning=(
            f"Outcome prices sum to {total:.3f} ({deviation * 100:.1f}% below 1.0): {legs}. "
            f"Buying every leg locks in the gap at settlement."
        ),
        risk_notes="Both legs must fill. Check book depth on each side. Resolution timing risk.",
    )


def price_grouped(
    market: MarketRecord, group: Sequence[MarketRecord]
) -> Optional[PricingResult]:
    """Emit a Yes trade on ``market`` only if it is the group's most underpriced member."""
    members = [m for m in group if m.yes_token is not None]
    n = len(members)
    if n < 2:
        return None

    total = sum(m.yes_token.price for m in members)
    deviation = abs(1.0 - total)
    if deviation <= GROUPED_DEVIATION_THRESHOLD:
        return None

    uniform = 1.0 / n
    underpriced = [m for m in members if m.yes_token.price < uniform * GROUPED_UNDERPRICED_RATIO]
    if not underpriced:
        return None

    best = min(underpriced, key=lambda m: m.yes_token.price)
    if best.market_id != market.market_id:
        return None

    yes = best.yes_token
    return PricingResult(
        market_id=market.market_id,
        side=yes.outcome,
        fair_prob=uniform,
        implied_prob=yes.price,
        confidence=GROUPED_CONFIDENCE,
        reasoning=(
            f"Group of {n} Yes prices sums to {total:.3f} ({deviation * 100:.1f}% off 1.0). "
            f"This member trades at {yes.price * 100:.1f}% vs a {uniform * 100:.1f}% uniform share."
        ),
        risk_notes="Outcome dependency risk. Verify members are mutually exclusive and exhaustive.",
    )
