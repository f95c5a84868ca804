"""Client for Polymarket's public Goldsky subgraphs (on-chain activity).

Two subgraphs are used:
    pnl     -- userPositions (realizedPnl per wallet/token)
    orders  -- orderFilledEvents (maker/taker fills)

All amounts are raw USDC units (6 decimals); callers divide by USDC_SCALE.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from polyedge.config import GOLDSKY_SUBGRAPH_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)

USDC_SCALE = 1e6
COLLATERAL_ASSET_ID = "0"

ENDPOINTS = {
    "orders": f"{GOLDSKY_SUBGRAPH_URL}/orderbook-subgraph/0.0.1/gn",
    "pnl": f"{GOLDSKY_SUBGRAPH_URL}/pnl-subgraph/0.0.14/gn",
}

_TOP_PNL_QUERY = """
query TopPnl($minPnl: BigInt!, $first: Int!) {
  userPositions(
    where: { realizedPnl_gt: $minPnl }
    orderBy: realizedPnl
    orderDirection: desc
    first: $first
  ) { id user tokenId realizedPnl }
}
"""

_WALLET_POSITIONS_QUERY = """
query WalletPositions($users: [String!]!, $first: Int!) {
  userPositions(where: { user_in: $users }, first: $first) {
    user realizedPnl
  }
}
"""

_FILLS_QUERY = """
query Fills($makers: [String!]!, $since: BigInt!) {
  orderFilledEvents(
    where: { maker_in: $makers, timestamp_gt: $since }
    orderBy: timestamp
    orderDirection: desc
    first: 500
  ) {
    id maker taker makerAssetId takerAssetId
    makerAmountFilled takerAmountFilled timestamp transactionHash
  }
}
"""


class GoldskyClient:
    """Thin GraphQL-over-HTTP client for the pnl and orderbook subgraphs."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)

    async def close(self) -> None:
        await self._client.aclose()

    async def _query(self, subgraph: str, query: str, variables: dict[str, Any]) -> dict:
        resp = await self._client.post(
            ENDPOINTS[subgraph],
            json={"query": query, "variables": variables},
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("errors"):
            raise RuntimeError(f"subgraph errors: {body['errors']}")
        return body.get("data") or {}

    async def fetch_top_positions(self, min_pnl_usd: float, first: int = 200) -> list[dict]:
        """Positions with realized pnl above the floor, best first."""
        try:
            data = await self._query(
                "pnl",
                _TOP_PNL_QUERY,
                {"minPnl": str(int(min_pnl_usd * USDC_SCALE)), "first": first},
            )
            return data.get("userPositions") or []
        except Exception:
            logger.warning("goldsky_top_pnl_error", exc_info=True)
            return []

    async def fetch_wallet_positions(self, wallets: list[str], first: int = 1000) -> list[dict]:
        """All positions held by the given wallets (for win-rate estimation)."""
        if not wallets:
            return []
        try:
            data = await self._query(
                "pnl",
                _WALLET_POSITIONS_QUERY,
                {"users": [w.lower() for w in wallets], "first": first},
            )
            return data.get("userPositions") or []
        except Exception:
            logger.warning("goldsky_wallet_positions_error", exc_info=True)
            return []

    async def fetch_fills(self, makers: list[str], since_ts: int) -> list[dict]:
        """Recent fills where one of the wallets was the maker."""
        if not makers:
            return []
        try:
            data = await self._query(
                "orders",
                _FILLS_QUERY,
                {"makers": [m.lower() for m in makers], "since": str(since_ts)},
            )
            return data.get("orderFilledEvents") or []
        except Exception:
            logger.warning("goldsky_fills_error", exc_info=True)
            return []
