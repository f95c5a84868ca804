"""Smart-money tracker: high-conviction wallets and their recent entries.

A wallet qualifies when its realized pnl clears a floor, most of its closed
positions were winners, and it does not trade like an HFT bot. Large recent
buys by qualified wallets on a market's tokens become signals; a signal on
the same outcome as a pricing result raises that result's confidence.

The traded outcome is read from the fill itself. On the orderbook subgraph a
fill whose maker asset is collateral ("0") is the maker paying USDC for the
taker asset, i.e. a buy of that outcome token. Fills where the maker gave up
outcome tokens are sells and are ignored.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from polyedge.api.goldsky_client import COLLATERAL_ASSET_ID, USDC_SCALE, GoldskyClient
from polyedge.config import (
    SMART_HFT_TRADE_COUNT,
    SMART_LOOKBACK_HOURS,
    SMART_MAX_BOOST,
    SMART_MIN_FILL_USD,
    SMART_MIN_PNL_USD,
    SMART_MIN_WIN_RATE,
    SMART_WALLET_CACHE_TTL,
)
from polyedge.markets.models import MarketRecord

logger = logging.getLogger(__name__)

FILLS_CACHE_TTL = 60  # One fills query serves every market in a scan


class WalletStats(BaseModel):
    address: str
    realized_pnl: float = 0.0
    trade_count: int = 0
    win_rate: float = 0.0

    @property
    def is_hft(self) -> bool:
        return self.trade_count > SMART_HFT_TRADE_COUNT


class SmartMoneySignal(BaseModel):
    wallet: WalletStats
    market_id: str
    token_id: str
    side: str
    size_usdc: float
    timestamp: datetime
    tx_hash: str = ""


def attribute_fill(fill: dict) -> Optional[tuple[str, float]]:
    """Return (token bought by the maker, USDC paid) or None for sells."""
    maker_asset = str(fill.get("makerAssetId", ""))
    taker_asset = str(fill.get("takerAssetId", ""))
    if maker_asset != COLLATERAL_ASSET_ID or taker_asset in ("", COLLATERAL_ASSET_ID):
        return None
    try:
        usdc = float(fill.get("makerAmountFilled", 0)) / USDC_SCALE
    except (TypeError, ValueError):
        return None
    return taker_asset, usdc


def confidence_boost(signals: Iterable[SmartMoneySignal], side: str) -> int:
    """Up to SMART_MAX_BOOST points, scaled by the aligned wallets' average win rate."""
    aligned = [s for s in signals if s.side.lower() == side.lower()]
    if not aligned:
        return 0
    avg_win_rate = sum(s.wallet.win_rate for s in aligned) / len(aligned)
    raw = (avg_win_rate - SMART_MIN_WIN_RATE) / (1.0 - SMART_MIN_WIN_RATE) * SMART_MAX_BOOST
    return max(0, min(SMART_MAX_BOOST, round(raw)))


class SmartMoneyTracker:
    """Caches qualified wallets and answers per-market signal queries."""

    def __init__(
        self,
        goldsky: GoldskyClient,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._goldsky = goldsky
        self._clock = clock
        self._wallets: list[WalletStats] = []
        self._wallets_fetched_at: Optional[float] = None
        self._fills: list[dict] = []
        self._fills_fetched_at: Optional[float] = None

    async def smart_wallets(self) -> list[WalletStats]:
        now = self._clock()
        if self._wallets_fetched_at is not None and now - self._wallets_fetched_at < SMART_WALLET_CACHE_TTL:
            return self._wallets

        top = await self._goldsky.fetch_top_positions(SMART_MIN_PNL_USD)
        pnl_by_wallet: dict[str, float] = defaultdict(float)
        for row in top:
            addr = (row.get("user") or str(row.get("id", "")).split("-")[0]).lower()
            if addr:
                pnl_by_wallet[addr] += _usdc(row.get("realizedPnl"))

        candidates = [a for a, pnl in pnl_by_wallet.items() if pnl >= SMART_MIN_PNL_USD]
        history = await self._goldsky.fetch_wallet_positions(candidates)

        wins: dict[str, int] = defaultdict(int)
        closed: dict[str, int] = defaultdict(int)
        trades: dict[str, int] = defaultdict(int)
        for row in history:
            addr = str(row.get("user", "")).lower()
            pnl = _usdc(row.get("realizedPnl"))
            trades[addr] += 1
            if pnl != 0:
                closed[addr] += 1
                if pnl > 0:
                    wins[addr] += 1

        wallets = []
        for addr in candidates:
            stats = WalletStats(
                address=addr,
                realized_pnl=pnl_by_wallet[addr],
                trade_count=trades[addr],
                win_rate=wins[addr] / closed[addr] if closed[addr] else 0.0,
            )
            if stats.win_rate >= SMART_MIN_WIN_RATE and not stats.is_hft:
                wallets.append(stats)

        self._wallets = wallets
        self._wallets_fetched_at = now
        logger.info(
            "smart_wallets_refreshed",
            extra={"candidates": len(candidates), "qualified": len(wallets)},
        )
        return wallets

    async def _recent_fills(self, addresses: list[str]) -> list[dict]:
        now = self._clock()
        if self._fills_fetched_at is not None and now - self._fills_fetched_at < FILLS_CACHE_TTL:
            return self._fills
        since = int(time.time()) - SMART_LOOKBACK_HOURS * 3600
        self._fills = await self._goldsky.fetch_fills(addresses, since)
        self._fills_fetched_at = now
        return self._fills

    async def signals_for(self, market: MarketRecord) -> list[SmartMoneySignal]:
        """Large recent buys by qualified wallets on this market's tokens."""
        wallets = await self.smart_wallets()
        if not wallets:
            return []

        by_address = {w.address: w for w in wallets}
        outcome_by_token = {t.token_id: t.outcome for t in market.tokens if t.token_id}
        fills = await self._recent_fills(list(by_address))

        signals = []
        for fill in fills:
            wallet = by_address.get(str(fill.get("maker", "")).lower())
            if wallet is None:
                continue
            attributed = attribute_fill(fill)
            if attributed is None:
                continue
            token_id, usdc = attributed
            outcome = outcome_by_token.get(token_id)
            if outcome is None or usdc < SMART_MIN_FILL_USD:
                continue
            signals.append(
                SmartMoneySignal(
                    wallet=wallet,
                    market_id=market.market_id,
                    token_id=token_id,
                    side=outcome,
                    size_usdc=usdc,
                    timestamp=datetime.fromtimestamp(int(fill.get("timestamp", 0)), tz=timezone.utc),
                    tx_hash=str(fill.get("transactionHash", "")),
                )
            )
        return signals


def _usdc(raw) -> float:
    try:
        return float(raw) / USDC_SCALE
    except (TypeError, ValueError):
        return 0.0
