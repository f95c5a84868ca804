"""Client for the public Polymarket CLOB endpoints (order books)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from polyedge.config import CLOB_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)


class BookLevel(BaseModel):
    price: float
    size: float


class OrderBook(BaseModel):
    """Order book snapshot for one outcome token."""

    token_id: str
    bids: list[BookLevel] = Field(default_factory=list)
    asks: list[BookLevel] = Field(default_factory=list)

    @property
    def best_bid(self) -> Optional[float]:
        return max((b.price for b in self.bids), default=None)

    @property
    def best_ask(self) -> Optional[float]:
        return min((a.price for a in self.asks), default=None)

    @property
    def is_empty(self) -> bool:
        return not self.bids and not self.asks

    def mid_price(self) -> Optional[float]:
        """Midpoint of the touch; a one-sided book falls back to 0 / 1."""
        if self.is_empty:
            return None
        bid = self.best_bid if self.best_bid is not None else 0.0
        ask = self.best_ask if self.best_ask is not None else 1.0
        return (bid + ask) / 2


class ClobClient:
    """Async client for CLOB order book endpoints (L0 / public)."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=CLOB_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_orderbook(self, token_id: str) -> Optional[OrderBook]:
        """GET /book for a single token. None when no book exists."""
        try:
            resp = await self._client.get("/book", params={"token_id": token_id})
            resp.raise_for_status()
            return self.parse_orderbook(token_id, resp.json())
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            return None
        except Exception:
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            return None

    @staticmethod
    def parse_orderbook(token_id: str, data: dict[str, Any]) -> Optional[OrderBook]:
        if not isinstance(data, dict):
            return None
        return OrderBook(
            token_id=token_id,
            bids=_levels(data.get("bids")),
            asks=_levels(data.get("asks")),
        )


def _levels(raw: Any) -> list[BookLevel]:
    levels: list[BookLevel] = []
    for level in raw or []:
        try:
            levels.append(BookLevel(price=float(level["price"]), size=float(level["size"])))
        except (KeyError, TypeError, ValueError):
            continue
    return levels
