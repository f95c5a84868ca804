"""Market classification, hard filters, and per-cycle prioritization.

Classification is an ordered list of pattern rules evaluated against the
lower-cased question text plus two structural flags supplied by the feed
(negRisk group membership and a liquidity-reward rate). The first rule that
matches wins, and the final rule always matches, so every market gets
exactly one category.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from polyedge.config import (
    ARB_MARKETS_PER_CYCLE,
    ARB_NO_ARB_BAND,
    MIN_EXPIRY_MINUTES,
    MIN_MARKET_LIQUIDITY,
    MIN_MARKET_VOLUME,
    SPONSORED_MARKETS_PER_CYCLE,
)
from polyedge.markets.models import MarketCategory, MarketRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pattern rules
# ---------------------------------------------------------------------------

# Word boundaries keep "Ukraine" from matching "rain".
_WEATHER_PATTERNS = [
    re.compile(r"\b(temperature|temp)\b"),
    re.compile(r"\b(high|low)\s+(of|above|below|exceed)\s+\d"),
    re.compile(r"\d+\s*°\s*[fc]\b"),
    re.compile(r"\bprecipitation\b"),
    re.compile(r"\b(rainfall|snowfall|snowpack)\b"),
    re.compile(r"\bnamed\s+storm\b"),
    re.compile(r"\bcategory\s+[1-5]\s+hurricane\b"),
]
_CRYPTO_ASSET = re.compile(r"\b(btc|bitcoin|eth|ethereum|solana|sol)\b")
_CRYPTO_HORIZON = re.compile(r"(above|below|exceed|reach|\$[\d,]+)\s*(by|on|before|at)")
_POLITICS = re.compile(
    r"\b(elect|election|vote|president|senator|congress|parliament|cabinet|"
    r"minister|referendum|resign|impeach|primary|nominee|nomination)\b"
)
_MACRO = re.compile(
    r"\b(gdp|cpi|inflation|unemployment|nonfarm|payroll|fomc|fed\s+rate|"
    r"fed\s+funds|rate\s+(hike|cut)|pce|ecb|boe|interest\s+rate)\b"
)
_ENTERTAINMENT = re.compile(
    r"\b(oscar|grammy|emmy|tony|nba|nfl|nhl|mlb|premier\s+league|"
    r"champions\s+league|world\s+cup|super\s+bowl|stanley\s+cup|award|finals)\b"
)

# (category, predicate(question, grouped, rewards_daily_rate))
_RULES: list[tuple[MarketCategory, Callable[[str, bool, float], bool]]] = [
    (MarketCategory.WEATHER, lambda q, g, r: any(p.search(q) for p in _WEATHER_PATTERNS)),
    (
        MarketCategory.CRYPTO_BINARY,
        lambda q, g, r: bool(_CRYPTO_ASSET.search(q) and _CRYPTO_HORIZON.search(q)),
    ),
    (MarketCategory.GROUPED, lambda q, g, r: g),
    (MarketCategory.SPONSORED, lambda q, g, r: r > 0),
    (MarketCategory.POLITICS, lambda q, g, r: bool(_POLITICS.search(q))),
    (MarketCategory.MACRO, lambda q, g, r: bool(_MACRO.search(q))),
    (MarketCategory.ENTERTAINMENT, lambda q, g, r: bool(_ENTERTAINMENT.search(q))),
    (MarketCategory.OTHER, lambda q, g, r: True),
]


def classify(
    question: str,
    grouped: bool = False,
    rewards_daily_rate: float = 0.0,
) -> MarketCategory:
    """Map a question and its structural flags to exactly one category."""
    q = (question or "").lower()
    for category, predicate in _RULES:
        if predicate(q, grouped, rewards_daily_rate):
            return category
    return MarketCategory.OTHER


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def rejection_reason(market: MarketRecord, now: Optional[datetime] = None) -> Optional[str]:
    """Return why a market fails the hard filters, or None if it passes."""
    now = now or datetime.now(timezone.utc)

    if market.end_date < now + timedelta(minutes=MIN_EXPIRY_MINUTES):
        return "expiry_too_soon"
    if market.volume < MIN_MARKET_VOLUME and market.liquidity < MIN_MARKET_LIQUIDITY:
        return "thin_market"
    if all(t.price == 0 for t in market.tokens):
        return "unpriced"
    if sum(1 for t in market.tokens if t.price > 0) < 2:
        return "too_few_priced_outcomes"
    if market.category == MarketCategory.CRYPTO_BINARY:
        if abs(market.price_sum - 1.0) <= ARB_NO_ARB_BAND:
            return "no_arbitrage"
    return None


def filter_markets(
    markets: Iterable[MarketRecord],
    now: Optional[datetime] = None,
) -> list[MarketRecord]:
    """Apply the hard filters, keeping input order."""
    now = now or datetime.now(timezone.utc)
    kept: list[MarketRecord] = []
    rejected: dict[str, int] = defaultdict(int)

    for market in markets:
        reason = rejection_reason(market, now)
        if reason is None:
            kept.append(market)
        else:
            rejected[reason] += 1

    logger.info(
        "markets_filtered",
        extra={"kept": len(kept), "rejected": dict(rejected)},
    )
    return kept


# ---------------------------------------------------------------------------
# Grouping and prioritization
# ---------------------------------------------------------------------------


def partition(markets: Iterable[MarketRecord]) -> dict[MarketCategory, list[MarketRecord]]:
    """Split markets by category."""
    buckets: dict[MarketCategory, list[MarketRecord]] = defaultdict(list)
    for market in markets:
        buckets[market.category].append(market)
    return dict(buckets)


def prioritize(markets: Iterable[MarketRecord]) -> list[MarketRecord]:
    """Order the markets worth pricing this cycle.

    Weather markets are always processed in full. Arbitrage candidates are
    capped to the most traded, sponsored markets to the richest reward
    pools. Categories without a pricing model are left out.
    """
    buckets = partition(markets)

    weather = buckets.get(MarketCategory.WEATHER, [])
    arb = sorted(
        buckets.get(MarketCategory.CRYPTO_BINARY, []) + buckets.get(MarketCategory.GROUPED, []),
        key=lambda m: m.volume,
        reverse=True,
    )[:ARB_MARKETS_PER_CYCLE]
    sponsored = sorted(
        buckets.get(MarketCategory.SPONSORED, []),
        key=lambda m: m.rewards_daily_rate,
        reverse=True,
    )[:SPONSORED_MARKETS_PER_CYCLE]

    logger.info(
        "markets_prioritized",
        extra={
            "weather": len(weather),
            "arbitrage": len(arb),
            "sponsored": len(sponsored),
            "unpriced": sum(
                len(v) for k, v in buckets.items()
                if k not in (
                    MarketCategory.WEATHER,
                    MarketCategory.CRYPTO_BINARY,
                    MarketCategory.GROUPED,
                    MarketCategory.SPONSORED,
                )
            ),
        },
    )
    return weather + arb + sponsored


def group_markets(markets: Iterable[MarketRecord]) -> dict[str, list[MarketRecord]]:
    """Collect negRisk markets by their shared group ID."""
    groups: dict[str, list[MarketRecord]] = defaultdict(list)
    for market in markets:
        if market.group_id:
            groups[market.group_id].append(market)
    return dict(groups)
