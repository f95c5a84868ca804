"""Client for the Polymarket Gamma API (market discovery and settlement)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from polyedge.config import GAMMA_API_URL, HTTP_TIMEOUT
from polyedge.markets.classifier import classify
from polyedge.markets.models import MarketRecord, OutcomeToken

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100
_WIN_SNAP = 0.99   # Closed-market prices at or above this count as the winner


class Settlement(BaseModel):
    """Resolution state of a market."""

    market_id: str
    resolved: bool = False
    prices: dict[str, float] = Field(
        default_factory=dict, description="Terminal price per outcome label."
    )

    def price_for(self, outcome: str) -> Optional[float]:
        wanted = outcome.lower()
        for label, price in self.prices.items():
            if label.lower() == wanted:
                return price
        return None


class GammaClient:
    """Fetch active markets and settlement state from the Gamma API."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=GAMMA_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def fetch_active_markets(self) -> list[MarketRecord]:
        """Paginate through all active, unsettled markets.

        A failed page ends pagination; whatever was collected so far is
        returned so the cycle can still work with a partial listing.
        """
        markets: list[MarketRecord] = []
        offset = 0
        raw_count = 0

        while True:
            try:
                resp = await self._client.get(
                    "/markets",
                    params={
                        "active": True,
                        "closed": False,
                        "limit": _PAGE_SIZE,
                        "offset": offset,
                    },
                )
                resp.raise_for_status()
                batch = resp.json()
            except Exception:
                logger.warning("gamma_markets_error", extra={"offset": offset}, exc_info=True)
                break

            if not isinstance(batch, list) or not batch:
                break

            raw_count += len(batch)
            for raw in batch:
                market = self.parse_market(raw)
                if market is not None:
                    markets.append(market)

            if len(batch) < _PAGE_SIZE:
                break
            offset += _PAGE_SIZE

        logger.info(
            "gamma_markets_fetched",
            extra={"raw": raw_count, "parsed": len(markets)},
        )
        return markets

    async def fetch_settlement(self, market_id: str) -> Optional[Settlement]:
        """Look up whether a market has resolved and its terminal prices.

        Returns None when the lookup itself fails.
        """
        try:
            resp = await self._client.get(
                "/markets", params={"condition_ids": market_id}
            )
            resp.raise_for_status()
            data = resp.json()
        except Exception:
            logger.warning("gamma_settlement_error", extra={"market_id": market_id}, exc_info=True)
            return None

        if not isinstance(data, list) or not data:
            return Settlement(market_id=market_id, resolved=False)

        raw = data[0]
        outcomes = self._parse_json_field(raw.get("outcomes", "[]"))
        prices = [self._to_float(p) for p in self._parse_json_field(raw.get("outcomePrices", "[]"))]
        priced = dict(zip((str(o) for o in outcomes), prices))

        closed = bool(raw.get("closed"))
        has_winner = any(p >= _WIN_SNAP for p in prices)
        resolved = closed and (raw.get("umaResolutionStatus") == "resolved" or has_winner)
        if not resolved:
            return Settlement(market_id=market_id, resolved=False, prices=priced)

        return Settlement(
            market_id=market_id,
            resolved=True,
            prices={label: (1.0 if p >= _WIN_SNAP else 0.0) for label, p in priced.items()},
        )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_market(self, m: dict) -> Optional[MarketRecord]:
        """Normalize a raw Gamma market row and classify it."""
        condition_id = m.get("conditionId") or m.get("condition_id")
        if not condition_id:
            return None

        outcomes = self._parse_json_field(m.get("outcomes", "[]"))
        prices = self._parse_json_field(m.get("outcomePrices", "[]"))
        token_ids = self._parse_json_field(m.get("clobTokenIds", "[]"))
        if not outcomes or not prices:
            return None

        tokens = [
            OutcomeToken(
                outcome=str(outcome),
                price=min(max(self._to_float(prices[i] if i < len(prices) else 0), 0.0), 1.0),
                token_id=str(token_ids[i]) if i < len(token_ids) else "",
            )
            for i, outcome in enumerate(outcomes)
        ]

        question = m.get("question", "") or ""
        grouped = bool(m.get("negRisk"))
        rewards = self._rewards_daily_rate(m)

        try:
            return MarketRecord(
                market_id=condition_id,
                question=question,
                category=classify(question, grouped=grouped, rewards_daily_rate=rewards),
                end_date=self._parse_dt(m.get("endDate") or m.get("endDateIso")),
                volume=self._to_float(m.get("volumeNum") or m.get("volume")),
                liquidity=self._to_float(m.get("liquidityNum") or m.get("liquidity")),
                tokens=tuple(tokens),
                group_id=(m.get("negRiskMarketID") or None) if grouped else None,
                rewards_daily_rate=rewards,
            )
        except ValidationError:
            logger.debug("gamma_market_invalid", extra={"condition_id": condition_id})
            return None

    @staticmethod
    def _rewards_daily_rate(m: dict) -> float:
        rewards = m.get("clobRewards") or []
        total = 0.0
        for r in rewards:
            if isinstance(r, dict):
                total += GammaClient._to_float(r.get("rewardsDailyRate"))
        return total

    @staticmethod
    def _parse_json_field(raw: str | list) -> list:
        """Handle double-encoded JSON fields (outcomes, outcomePrices, clobTokenIds)."""
        if isinstance(raw, list):
            return raw
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
        return []

    @staticmethod
    def _to_float(raw) -> float:
        try:
            return float(raw or 0)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime:
        if not raw:
            return datetime(2099, 1, 1, tzinfo=timezone.utc)
        try:
            cleaned = raw.replace("Z", "+00:00")
            parsed = datetime.fromisoformat(cleaned)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (ValueError, TypeError):
            return datetime(2099, 1, 1, tzinfo=timezone.utc)
