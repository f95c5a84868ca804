"""Pricing engine: routes a market to its category model and applies filters.

Pipeline per market:
    category model -> smart-money confidence boost -> edge/confidence floors
    -> half-Kelly size attached to the result
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from polyedge.config import (
    BANKROLL_USDC,
    MAX_POSITION_PCT,
    MIN_CONFIDENCE,
    MIN_CONFIDENCE_SPONSORED,
    MIN_EDGE_PCT,
    MIN_EDGE_SPONSORED_PCT,
)
from polyedge.execution.sizer import kelly_size
from polyedge.markets.models import MarketCategory, MarketRecord
from polyedge.pricing.arbitrage import price_binary_arbitrage, price_grouped
from polyedge.pricing.result import PricingResult
from polyedge.pricing.smart_money import SmartMoneyTracker, confidence_boost
from polyedge.pricing.sponsored import price_sponsored
from polyedge.pricing.weather import WeatherPricer

logger = logging.getLogger(__name__)

# Categories with no fair-value model yet.
UNPRICED_CATEGORIES = frozenset({
    MarketCategory.POLITICS,
    MarketCategory.MACRO,
    MarketCategory.ENTERTAINMENT,
    MarketCategory.OTHER,
})

MAX_CONFIDENCE = 99.0


class PricingEngine:
    """Turns a filtered market into a sized PricingResult, or None."""

    def __init__(
        self,
        weather: WeatherPricer,
        smart_money: Optional[SmartMoneyTracker] = None,
        bankroll: float = BANKROLL_USDC,
        max_position_pct: float = MAX_POSITION_PCT,
        min_edge: float = MIN_EDGE_PCT,
        min_edge_sponsored: float = MIN_EDGE_SPONSORED_PCT,
        min_confidence: float = MIN_CONFIDENCE,
        min_confidence_sponsored: float = MIN_CONFIDENCE_SPONSORED,
    ) -> None:
        self.weather = weather
        self.smart_money = smart_money
        self.bankroll = bankroll
        self.max_position_pct = max_position_pct
        self.min_edge = min_edge
        self.min_edge_sponsored = min_edge_sponsored
        self.min_confidence = min_confidence
        self.min_confidence_sponsored = min_confidence_sponsored

    async def _model(
        self,
        market: MarketRecord,
        group: Sequence[MarketRecord],
        now: Optional[datetime],
    ) -> Optional[PricingResult]:
        category = market.category
        if category == MarketCategory.WEATHER:
            return await self.weather.price(market, now)
        if category == MarketCategory.CRYPTO_BINARY:
            return price_binary_arbitrage(market)
        if category == MarketCategory.GROUPED:
            return price_grouped(market, group or [market])
        if category == MarketCategory.SPONSORED:
            return price_sponsored(market, now, self.bankroll)
        return None

    async def _apply_boost(self, market: MarketRecord, result: PricingResult) -> PricingResult:
        if self.smart_money is None or result.is_arbitrage:
            return result
        signals = await self.smart_money.signals_for(market)
        if not signals:
            return result
        boost = confidence_boost(signals, result.side)
        if boost <= 0:
            return result
        logger.info(
            "smart_money_boost",
            extra={"market_id": market.market_id, "boost": boost, "signals": len(signals)},
        )
        return result.model_copy(
            update={"confidence": min(result.confidence + boost, MAX_CONFIDENCE)}
        )

    def min_edge_for(self, category: MarketCategory) -> float:
        return self.min_edge_sponsored if category == MarketCategory.SPONSORED else self.min_edge

    def min_confidence_for(self, category: MarketCategory) -> float:
        # Sponsored results carry a flat prior, so their floor sits below the model confidence.
        if category == MarketCategory.SPONSORED:
            return self.min_confidence_sponsored
        return self.min_confidence

    async def price(
        self,
        market: MarketRecord,
        group: Sequence[MarketRecord] = (),
        now: Optional[datetime] = None,
    ) -> Optional[PricingResult]:
        if market.category in UNPRICED_CATEGORIES:
            logger.debug("no_pricing_model", extra={"market_id": market.market_id, "category": market.category.value})
            return None

        result = await self._model(market, group, now)
        if result is None:
            return None

        result = await self._apply_boost(market, result)

        min_edge = self.min_edge_for(market.category)
        if result.edge < min_edge:
            logger.info(
                "edge_below_minimum",
                extra={"market_id": market.market_id, "edge": round(result.edge, 2), "min_edge": min_edge},
            )
            return None
        min_confidence = self.min_confidence_for(market.category)
        if result.confidence < min_confidence:
            logger.info(
                "confidence_below_minimum",
                extra={"market_id": market.market_id, "confidence": result.confidence, "min_confidence": min_confidence},
            )
            return None

        size = kelly_size(result.fair_prob, result.implied_prob, self.bankroll, self.max_position_pct)
        return result.model_copy(update={"size_usdc": round(size, 2)})
