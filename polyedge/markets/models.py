"""Market snapshot models shared by the classifier, pricers and executor."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MarketCategory(str, Enum):
    """Closed set of market categories. Category doubles as the risk bucket."""

    WEATHER = "weather"              # Temperature / precipitation thresholds
    CRYPTO_BINARY = "crypto_binary"  # Short-horizon crypto up/down binaries
    GROUPED = "grouped"              # Mutually exclusive grouped markets
    SPONSORED = "sponsored"          # Liquidity reward markets
    POLITICS = "politics"
    MACRO = "macro"
    ENTERTAINMENT = "entertainment"
    OTHER = "other"


class OutcomeToken(BaseModel):
    """A single tradable outcome of a market."""

    model_config = ConfigDict(frozen=True)

    outcome: str = Field(..., description="Outcome label (Yes, No, candidate name).")
    price: float = Field(default=0.0, ge=0.0, le=1.0, description="Current price (0-1).")
    token_id: str = Field(default="", description="CLOB token ID.")


class MarketRecord(BaseModel):
    """Immutable snapshot of one market as delivered by the feed."""

    model_config = ConfigDict(frozen=True)

    market_id: str = Field(..., description="Market condition ID.")
    question: str = Field(default="")
    category: MarketCategory = MarketCategory.OTHER
    end_date: datetime = Field(
        default_factory=lambda: datetime(2099, 1, 1, tzinfo=timezone.utc),
    )
    volume: float = Field(default=0.0, description="Lifetime volume in USD.")
    liquidity: float = Field(default=0.0, description="Resting liquidity in USD.")
    tokens: tuple[OutcomeToken, ...] = Field(..., min_length=2)
    group_id: Optional[str] = Field(default=None, description="negRisk group ID.")
    rewards_daily_rate: float = Field(default=0.0, description="USD/day reward pool.")

    @field_validator("end_date")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def price_sum(self) -> float:
        return sum(t.price for t in self.tokens)

    def token_for(self, outcome: str) -> Optional[OutcomeToken]:
        """Find a token by outcome label (case-insensitive)."""
        wanted = outcome.lower()
        for token in self.tokens:
            if token.outcome.lower() == wanted:
                return token
        return None

    @property
    def yes_token(self) -> Optional[OutcomeToken]:
        return self.token_for("yes")

    @property
    def no_token(self) -> Optional[OutcomeToken]:
        return self.token_for("no")

    def hours_to_expiry(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.end_date - now).total_seconds() / 3600.0
