"""Sponsored-liquidity pricer.

Markets carrying a liquidity-reward program are priced at a flat 50/50 prior;
the alpha is the reward stream, reported as an annualized rate on bankroll.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from polyedge.config import BANKROLL_USDC, SPONSORED_CONFIDENCE
from polyedge.markets.models import MarketRecord
from polyedge.pricing.result import PricingResult

logger = logging.getLogger(__name__)

SPONSORED_FAIR = 0.5


def reward_apr(daily_rate: float, days_to_expiry: float, bankroll: float = BANKROLL_USDC) -> float:
    if days_to_expiry <= 0 or bankroll <= 0:
        return 0.0
    total = daily_rate * days_to_expiry
    return total / bankroll * (365.0 / days_to_expiry) * 100.0


def price_sponsored(
    market: MarketRecord, now: Optional[datetime] = None, bankroll: float = BANKROLL_USDC
) -> Optional[PricingResult]:
    if market.rewards_daily_rate <= 0:
        return None
    yes = market.yes_token
    if yes is None:
        return None

    now = now or datetime.now(timezone.utc)
    days = market.hours_to_expiry(now) / 24.0
    if days <= 0:
        return None

    if yes.price < SPONSORED_FAIR:
        side, implied = yes.outcome, yes.price
    else:
        no = market.no_token
        side = no.outcome if no else "No"
        implied = no.price if no else 1.0 - yes.price

    apr = reward_apr(market.rewards_daily_rate, days, bankroll)
    return PricingResult(
        market_id=market.market_id,
        side=side,
        fair_prob=SPONSORED_FAIR,
        implied_prob=implied,
        confidence=SPONSORED_CONFIDENCE,
        reward_apr=apr,
        reasoning=(
            f"Sponsored market. ${market.rewards_daily_rate:g}/day rewards, "
            f"{days:.1f} days left. Est. {apr:.0f}% reward APR."
        ),
        risk_notes="Reward rules may change. Resting limit orders are needed to qualify.",
    )
