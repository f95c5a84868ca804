"""Half-Kelly position sizing."""

from __future__ import annotations

from polyedge.config import BANKROLL_USDC, MAX_POSITION_PCT


def kelly_fraction(fair: float, price: float) -> float:
    """Full Kelly fraction for a binary share costing ``price`` that pays 1.0.

    f = (p * (b + 1) - 1) / b, with net odds b = 1/price - 1.
    Returns 0 when there is no positive edge or the price is degenerate.
    """
    if not 0.0 < price < 1.0:
        return 0.0
    b = 1.0 / price - 1.0
    if b <= 0:
        return 0.0
    f = (fair * (b + 1.0) - 1.0) / b
    return f if f > 0 else 0.0


def kelly_size(
    fair: float,
    price: float,
    bankroll: float = BANKROLL_USDC,
    max_position_pct: float = MAX_POSITION_PCT,
) -> float:
    """Half-Kelly stake in USDC, capped at ``max_position_pct`` of bankroll.

    Pure: never touches the ledger. Risk headroom is applied later by the
    risk manager.
    """
    f = kelly_fraction(fair, price)
    if f <= 0 or bankroll <= 0:
        return 0.0
    return min(f * 0.5 * bankroll, bankroll * max_position_pct)
