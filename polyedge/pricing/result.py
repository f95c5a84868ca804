"""Pricing output model."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, computed_field

ARB_BOTH = "arb_both"


class PricingResult(BaseModel):
    """A model's view of one market: which side, and how mispriced it is."""

    market_id: str
    side: str = Field(..., description="Outcome label to buy, or arb_both.")
    fair_prob: float = Field(..., ge=0.0, le=1.0, description="Model probability.")
    implied_prob: float = Field(..., ge=0.0, le=1.0, description="Price of the chosen side.")
    confidence: float = Field(..., ge=0.0, le=100.0)
    size_usdc: float = Field(default=0.0, ge=0.0, description="Filled in by the sizer.")
    reasoning: str = ""
    risk_notes: str = ""
    reward_apr: Optional[float] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def edge(self) -> float:
        """Absolute gap between fair and implied, in percentage points."""
        return abs(self.fair_prob - self.implied_prob) * 100

    @property
    def is_arbitrage(self) -> bool:
        return self.side == ARB_BOTH
