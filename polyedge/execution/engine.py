"""Order execution engine wrapping py-clob-client.

Handles order signing, submission and cancellation against the Polymarket
CLOB, plus the balance and order-book reads the decision path needs. All
order operations go through this single interface so that logging and
timeouts are centralized.

The engine operates in two modes:
- DRY_RUN: logs orders but doesn't submit them (paper trading, or no credentials)
- LIVE: submits signed orders to the CLOB

Every blocking SDK call runs in a worker thread and is bounded by
ORDER_TIMEOUT, so an order either resolves to a definite status or fails.
A post that stays unanswered is reconciled against the exchange (cancel
what rests, read back fills) before a status is reported.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from polyedge.api.clob_client import ClobClient, OrderBook
from polyedge.config import (
    CLOB_API_URL,
    EXECUTION_CHAIN_ID,
    EXECUTION_DRY_RUN,
    EXECUTION_SIGNATURE_TYPE,
    ORDER_TIMEOUT,
    POLY_API_KEY,
    POLY_API_PASSPHRASE,
    POLY_API_SECRET,
    POLY_FUNDER_ADDRESS,
    POLY_WALLET_KEY,
)

logger = logging.getLogger(__name__)

MIN_PRICE = 0.01
MAX_PRICE = 0.99


def clamp_price(price: float) -> float:
    """Snap a price onto the 0.01 tick grid inside the tradable range."""
    return round(min(max(price, MIN_PRICE), MAX_PRICE), 2)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OrderStatus(str, Enum):
    """Lifecycle status of an order."""

    SUBMITTED = "submitted"       # Accepted, not yet resting or matched
    LIVE = "live"                 # Resting on order book
    MATCHED = "matched"           # Fully filled
    CANCELLED = "cancelled"       # Cancelled by us
    REJECTED = "rejected"         # Rejected by CLOB
    FAILED = "failed"             # Submission error or timeout
    DRY_RUN = "dry_run"           # Paper trade (not submitted)


ENTRY_OK_STATUSES = frozenset({OrderStatus.MATCHED, OrderStatus.LIVE, OrderStatus.DRY_RUN})
FILLED_STATUSES = frozenset({OrderStatus.MATCHED, OrderStatus.DRY_RUN})


class OrderRequest(BaseModel):
    """Request to place a limit order on the CLOB."""

    market_id: str = Field(..., description="Market condition ID.")
    token_id: str = Field(..., description="Outcome token ID.")
    side: str = Field(..., description="BUY or SELL.")
    price: float = Field(..., ge=MIN_PRICE, le=MAX_PRICE, description="Limit price (0.01-0.99).")
    size: float = Field(..., gt=0, description="Size in outcome shares.")
    edge: float = Field(default=0.0, description="Edge at decision time, in points.")
    tick_size: str = Field(default="0.01", description="Market tick size.")
    neg_risk: bool = Field(default=False, description="True for grouped markets.")

    @classmethod
    def for_usdc(cls, market_id: str, token_id: str, side: str, price: float, usdc: float, **kw) -> "OrderRequest":
        price = clamp_price(price)
        return cls(
            market_id=market_id,
            token_id=token_id,
            side=side,
            price=price,
            size=round(usdc / price, 2),
            **kw,
        )


class OrderResult(BaseModel):
    """Result from order submission."""

    request: OrderRequest
    status: OrderStatus = OrderStatus.SUBMITTED
    order_id: str = ""
    error_msg: str = ""
    submitted_at: Optional[datetime] = None
    fill_price: Optional[float] = None
    filled_size: Optional[float] = None
    transaction_hashes: list[str] = Field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def entry_ok(self) -> bool:
        return self.status in ENTRY_OK_STATUSES

    @property
    def filled(self) -> bool:
        return self.status in FILLED_STATUSES

    @property
    def tx_hash(self) -> str:
        return self.transaction_hashes[0] if self.transaction_hashes else ""


# ---------------------------------------------------------------------------
# Execution Engine
# ---------------------------------------------------------------------------


class ExecutionEngine:
    """Centralized order execution against the Polymarket CLOB.

    Attributes:
        dry_run: If True, orders are logged but not submitted.
        books: Public order-book client used for reference prices.
        _client: py-clob-client ClobClient instance (lazy-initialized).
    """

    def __init__(
        self,
        books: ClobClient,
        private_key: str = POLY_WALLET_KEY,
        funder_address: str = POLY_FUNDER_ADDRESS,
        dry_run: bool = EXECUTION_DRY_RUN,
        timeout: float = ORDER_TIMEOUT,
    ) -> None:
        self.dry_run = dry_run
        self.books = books
        self.timeout = timeout
        self._private_key = private_key
        self._funder_address = funder_address
        self._client: Any = None
        self._initialized = False

    async def initialize(self) -> None:
        """Lazy-initialize the CLOB client and API credentials.

        Separated from __init__ so that the engine can be constructed
        without blocking and without requiring credentials in dry-run mode.
        """
        if self._initialized:
            return

        if self.dry_run:
            logger.info("execution_engine_init", extra={"mode": "DRY_RUN"})
            self._initialized = True
            return

        try:
            from py_clob_client.client import ClobClient as SdkClient
            from py_clob_client.clob_types import ApiCreds

            self._client = SdkClient(
                host=CLOB_API_URL,
                key=self._private_key,
                chain_id=EXECUTION_CHAIN_ID,
                signature_type=EXECUTION_SIGNATURE_TYPE,
                funder=self._funder_address or None,
            )

            if POLY_API_KEY and POLY_API_SECRET and POLY_API_PASSPHRASE:
                creds = ApiCreds(
                    api_key=POLY_API_KEY,
                    api_secret=POLY_API_SECRET,
                    api_passphrase=POLY_API_PASSPHRASE,
                )
            else:
                creds = await self._call(self._client.create_or_derive_api_creds)
            self._client.set_api_creds(creds)

            self._initialized = True
            logger.info("execution_engine_init", extra={"mode": "LIVE"})

        except ImportError:
            logger.error(
                "py-clob-client not installed. Install with: "
                "pip install py-clob-client"
            )
            raise
        except Exception:
            logger.error("execution_engine_init_failed", exc_info=True)
            raise

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking SDK call in a thread, bounded by the order timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order_book(self, token_id: str) -> Optional[OrderBook]:
        try:
            return await asyncio.wait_for(self.books.fetch_orderbook(token_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("order_book_timeout", extra={"token_id": token_id})
            return None

    async def get_balance(self) -> Optional[float]:
        """Collateral (USDC) balance, or None in dry-run / on failure."""
        if self.dry_run:
            return None
        try:
            await self.initialize()
            from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

            resp = await self._call(
                self._client.get_balance_allowance,
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
            )
            return float(resp.get("balance", 0)) / 1e6
        except Exception:
            logger.warning("get_balance_failed", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Order operations
    # ------------------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Place a GTC limit order on the CLOB.

        Args:
            request: Order parameters.

        Returns:
            OrderResult with a definite status. Never raises.
        """
        result = OrderResult(request=request, submitted_at=datetime.now(timezone.utc))

        if self.dry_run:
            result.status = OrderStatus.DRY_RUN
            result.order_id = f"dry_{int(time.time() * 1000)}"
            result.fill_price = request.price
            result.filled_size = request.size
            logger.info(
                "order_dry_run",
                extra={
                    "market_id": request.market_id,
                    "side": request.side,
                    "price": request.price,
                    "size": request.size,
                    "edge": request.edge,
                },
            )
            return result

        try:
            await self.initialize()
            from py_clob_client.clob_types import OrderArgs, OrderType

            start = time.monotonic()

            order_args = OrderArgs(
                token_id=request.token_id,
                price=request.price,
                size=request.size,
                side=request.side,
            )

            signed_order = await self._call(self._client.create_order, order_args)
            resp = await self._post(signed_order, OrderType.GTC)
            if resp is None:
                return await self._reconcile_timeout(result, start)

            result.latency_ms = (time.monotonic() - start) * 1000

            if isinstance(resp, dict):
                result.order_id = resp.get("orderID", "")
                result.error_msg = resp.get("errorMsg", "")
                result.transaction_hashes = resp.get("transactionsHashes", []) or []

                if resp.get("success"):
                    result.status = self._map_status(resp.get("status", ""))
                else:
                    result.status = OrderStatus.REJECTED
            else:
                result.status = OrderStatus.FAILED
                result.error_msg = f"Unexpected response type: {type(resp)}"

            if result.status == OrderStatus.MATCHED:
                result.fill_price = request.price
                result.filled_size = request.size

            logger.info(
                "order_placed",
                extra={
                    "order_id": result.order_id,
                    "status": result.status.value,
                    "market_id": request.market_id,
                    "side": request.side,
                    "price": request.price,
                    "size": request.size,
                    "edge": request.edge,
                    "latency_ms": result.latency_ms,
                },
            )

        except asyncio.TimeoutError:
            result.status = OrderStatus.FAILED
            result.error_msg = f"timed out after {self.timeout:.0f}s"
            logger.error(
                "order_timeout",
                extra={"market_id": request.market_id, "timeout": self.timeout},
            )
        except Exception as e:
            result.status = OrderStatus.FAILED
            result.error_msg = str(e)
            logger.error(
                "order_failed",
                extra={
                    "market_id": request.market_id,
                    "error": str(e),
                },
                exc_info=True,
            )

        return result

    async def _post(self, signed_order: Any, order_type: Any) -> Optional[Any]:
        """Post a signed order. None when it is still unanswered after the grace period.

        A timed-out worker thread keeps running and may still reach the
        exchange, so the post is shielded and given one more timeout to
        answer before the caller has to reconcile.
        """
        post = asyncio.ensure_future(
            asyncio.to_thread(self._client.post_order, signed_order, order_type)
        )
        try:
            return await asyncio.wait_for(asyncio.shield(post), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("order_post_slow", extra={"timeout": self.timeout})
        try:
            return await asyncio.wait_for(asyncio.shield(post), timeout=self.timeout)
        except asyncio.TimeoutError:
            return None

    async def _reconcile_timeout(self, result: OrderResult, start: float) -> OrderResult:
        """Settle an unanswered post against the exchange's own state.

        Whatever rests on the token is cancelled (the engine never leaves
        orders resting), then trades since submission decide whether the
        order filled before the cancel landed.
        """
        from py_clob_client.clob_types import TradeParams

        request = result.request
        result.latency_ms = (time.monotonic() - start) * 1000
        try:
            await self._call(self._client.cancel_market_orders, asset_id=request.token_id)
            trades = await self._call(
                self._client.get_trades,
                TradeParams(
                    asset_id=request.token_id,
                    after=int(result.submitted_at.timestamp()) - 1,
                ),
            )
        except Exception:
            result.status = OrderStatus.FAILED
            result.error_msg = "timed out; exchange state unknown"
            logger.error(
                "order_state_unknown",
                extra={"market_id": request.market_id, "token_id": request.token_id},
                exc_info=True,
            )
            return result

        ours = [
            t for t in trades or []
            if str(t.get("side", "")).upper() == request.side
        ]
        filled = sum(float(t.get("size", 0) or 0) for t in ours)
        if filled > 0:
            result.status = OrderStatus.MATCHED
            result.filled_size = round(filled, 2)
            result.fill_price = round(
                sum(float(t.get("price", 0) or 0) * float(t.get("size", 0) or 0) for t in ours) / filled,
                4,
            )
            result.order_id = str(ours[0].get("taker_order_id", "") or "")
        else:
            result.status = OrderStatus.FAILED
            result.error_msg = f"timed out after {self.timeout:.0f}s; cancelled on reconcile"

        logger.warning(
            "order_timeout_reconciled",
            extra={
                "market_id": request.market_id,
                "token_id": request.token_id,
                "status": result.status.value,
                "filled_size": result.filled_size,
            },
        )
        return result

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel a specific order.

        Args:
            order_id: CLOB order ID.

        Returns:
            True if cancellation succeeded.
        """
        if self.dry_run:
            logger.info("cancel_dry_run", extra={"order_id": order_id})
            return True

        try:
            await self.initialize()
            resp = await self._call(self._client.cancel, order_id)
            success = isinstance(resp, dict) and bool(resp.get("canceled"))
            logger.info(
                "order_cancelled",
                extra={"order_id": order_id, "success": success},
            )
            return success
        except Exception:
            logger.error("cancel_failed", extra={"order_id": order_id}, exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _map_status(status_str: str) -> OrderStatus:
        """Map CLOB status string to OrderStatus enum."""
        mapping = {
            "live": OrderStatus.LIVE,
            "matched": OrderStatus.MATCHED,
            "delayed": OrderStatus.SUBMITTED,
            "unmatched": OrderStatus.SUBMITTED,
        }
        return mapping.get(status_str, OrderStatus.SUBMITTED)

    @property
    def is_live(self) -> bool:
        """True if engine is in live trading mode."""
        return not self.dry_run and self._initialized

    async def close(self) -> None:
        await self.books.close()
        logger.info("execution_engine_closed")
