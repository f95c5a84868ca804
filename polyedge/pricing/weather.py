"""Weather market pricer.

Handles the daily-high temperature question family:

    "Will the highest temperature in [City] be [X]°F or higher on [date]?"
    "Will the highest temperature in [City] be [X]°F or below on [date]?"
    "Will the highest temperature in [City] be between X-Y°F on [date]?"
    "Will the highest temperature in [City] be X°C on [date]?"   (exact = ±0.5)

The true daily high is modelled as N(forecast, sigma) where sigma grows with
lead time. Narrow threshold bands keep their sigma but lose confidence,
since a near-boundary reading is where station/rounding disputes happen.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from polyedge.api.open_meteo_client import OpenMeteoClient
from polyedge.config import (
    WEATHER_MIN_SIDE_LIQUIDITY,
    WEATHER_NARROW_BAND_C,
    WEATHER_NARROW_BAND_F,
    WEATHER_NARROW_BAND_PENALTY,
    WEATHER_SIGMA_C,
    WEATHER_SIGMA_F,
)
from polyedge.markets.models import MarketRecord
from polyedge.pricing.result import PricingResult
from polyedge.pricing.stats import mass_between, norm_cdf

logger = logging.getLogger(__name__)


class ThresholdKind(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    RANGE = "range"
    EXACT = "exact"


class TemperatureQuestion(BaseModel):
    city: str
    fahrenheit: bool
    kind: ThresholdKind
    low: Optional[float] = None     # RANGE lower bound / BELOW threshold
    high: Optional[float] = None    # RANGE upper bound / ABOVE threshold
    exact: Optional[float] = None
    target_date: date

    @property
    def unit(self) -> str:
        return "°F" if self.fahrenheit else "°C"

    @property
    def band_width(self) -> float:
        if self.kind == ThresholdKind.RANGE:
            return (self.high or 0.0) - (self.low or 0.0)
        if self.kind == ThresholdKind.EXACT:
            return 1.0
        return math.inf

    def describe(self) -> str:
        if self.kind == ThresholdKind.ABOVE:
            return f"≥{self.high:g}{self.unit}"
        if self.kind == ThresholdKind.BELOW:
            return f"≤{self.low:g}{self.unit}"
        if self.kind == ThresholdKind.RANGE:
            return f"{self.low:g}–{self.high:g}{self.unit}"
        return f"={self.exact:g}{self.unit}"


# ---------------------------------------------------------------------------
# Question parsing
# ---------------------------------------------------------------------------

_UNIT = re.compile(r"°\s*([fc])\b", re.IGNORECASE)
_CITY = re.compile(r"temperature\s+in\s+(.+?)\s+be\s", re.IGNORECASE)
# A minus sign only counts when it opens the token; "70-71" is a band.
_NUMBERS = re.compile(r"(?<![\w.-])(-?\d+(?:\.\d+)?)\s*°?\s*[fc]\b", re.IGNORECASE)
_RANGE = re.compile(
    r"between\s+(-?\d+(?:\.\d+)?)\s*(?:°\s*[fc])?\s*(?:-|–|to|and)\s*(-?\d+(?:\.\d+)?)",
    re.IGNORECASE,
)
_DASH_RANGE = re.compile(
    r"(?<![\w.-])(-?\d+(?:\.\d+)?)\s*[-–]\s*(\d+(?:\.\d+)?)\s*°\s*[fc]\b",
    re.IGNORECASE,
)
_ABOVE = re.compile(r"or (higher|above|more)")
_BELOW = re.compile(r"or (below|less|under|lower)")
_MONTHS = (
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
)
_DATE = re.compile(
    r"\bon\s+(" + "|".join(m[:3] for m in _MONTHS) + r")[a-z]*\.?\s+(\d{1,2})\b",
    re.IGNORECASE,
)


def parse_target_date(question: str, expiry: datetime) -> date:
    """Date named in the question ("on March 4"), else the expiry date."""
    match = _DATE.search(question)
    if not match:
        return expiry.date()

    month = [m[:3] for m in _MONTHS].index(match.group(1).lower()[:3]) + 1
    day = int(match.group(2))
    try:
        candidate = date(expiry.year, month, day)
    except ValueError:
        return expiry.date()

    # Questions near New Year name a date in the neighbouring year.
    if (candidate - expiry.date()).days > 180:
        candidate = candidate.replace(year=expiry.year - 1)
    elif (expiry.date() - candidate).days > 180:
        candidate = candidate.replace(year=expiry.year + 1)
    return candidate


def parse_temperature_question(question: str, expiry: datetime) -> Optional[TemperatureQuestion]:
    q = question.strip()

    unit_match = _UNIT.search(q)
    if not unit_match:
        return None
    fahrenheit = unit_match.group(1).lower() == "f"

    city_match = _CITY.search(q)
    if not city_match:
        return None
    city = city_match.group(1).strip()

    target = parse_target_date(q, expiry)
    base = {"city": city, "fahrenheit": fahrenheit, "target_date": target}

    range_match = _RANGE.search(q) or _DASH_RANGE.search(q)
    if range_match:
        low, high = float(range_match.group(1)), float(range_match.group(2))
        if low > high:
            low, high = high, low
        return TemperatureQuestion(kind=ThresholdKind.RANGE, low=low, high=high, **base)

    numbers = [float(n) for n in _NUMBERS.findall(q)]
    if not numbers:
        return None

    ql = q.lower()
    if _ABOVE.search(ql):
        return TemperatureQuestion(kind=ThresholdKind.ABOVE, high=numbers[0], **base)
    if _BELOW.search(ql):
        return TemperatureQuestion(kind=ThresholdKind.BELOW, low=numbers[0], **base)
    if len(numbers) == 1:
        return TemperatureQuestion(kind=ThresholdKind.EXACT, exact=numbers[0], **base)
    return None


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


def forecast_sigma(fahrenheit: bool, days_ahead: float) -> float:
    """Forecast error grows with lead time, in discrete tiers."""
    base = WEATHER_SIGMA_F if fahrenheit else WEATHER_SIGMA_C
    if days_ahead <= 1:
        return base * 0.6
    if days_ahead <= 2:
        return base * 0.8
    if days_ahead <= 3:
        return base * 1.0
    if days_ahead <= 5:
        return base * 1.4
    return base * 1.8


def threshold_probability(forecast_high: float, sigma: float, q: TemperatureQuestion) -> float:
    """Probability mass of N(forecast_high, sigma) that resolves the question Yes."""
    if q.kind == ThresholdKind.ABOVE:
        return 1.0 - norm_cdf(q.high, forecast_high, sigma)
    if q.kind == ThresholdKind.BELOW:
        return norm_cdf(q.low, forecast_high, sigma)
    if q.kind == ThresholdKind.RANGE:
        return mass_between(q.low, q.high, forecast_high, sigma)
    return mass_between(q.exact - 0.5, q.exact + 0.5, forecast_high, sigma)


def weather_confidence(days_ahead: float, q: TemperatureQuestion) -> float:
    conf = 80.0 if days_ahead <= 1 else 75.0 if days_ahead <= 2 else 65.0
    narrow = WEATHER_NARROW_BAND_F if q.fahrenheit else WEATHER_NARROW_BAND_C
    if q.band_width < narrow:
        conf -= WEATHER_NARROW_BAND_PENALTY
    return max(conf, 0.0)


class WeatherPricer:
    """Prices temperature markets against an Open-Meteo point forecast."""

    def __init__(self, forecasts: OpenMeteoClient) -> None:
        self._forecasts = forecasts

    async def price(
        self, market: MarketRecord, now: Optional[datetime] = None
    ) -> Optional[PricingResult]:
        now = now or datetime.now(timezone.utc)
        parsed = parse_temperature_question(market.question, market.end_date)
        if parsed is None:
            logger.info("weather_unparsed", extra={"question": market.question[:80]})
            return None

        coords = await self._forecasts.geocode(parsed.city)
        if coords is None:
            logger.info("weather_geocode_miss", extra={"city": parsed.city})
            return None

        forecast = await self._forecasts.fetch_daily_forecast(coords, parsed.fahrenheit)
        if forecast is None:
            return None

        date_str = parsed.target_date.isoformat()
        forecast_high = forecast.high_for(date_str)
        if forecast_high is None:
            logger.info("weather_no_forecast_day", extra={"date": date_str, "city": parsed.city})
            return None

        target_midnight = datetime.combine(parsed.target_date, datetime.min.time(), tzinfo=timezone.utc)
        days_ahead = (target_midnight - now) / timedelta(days=1)
        sigma = forecast_sigma(parsed.fahrenheit, days_ahead)
        fair_yes = threshold_probability(forecast_high, sigma, parsed)

        yes = market.yes_token
        if yes is None:
            return None
        no = market.no_token
        no_price = no.price if no is not None else 1.0 - yes.price

        if fair_yes > yes.price:
            side, fair, implied = yes.outcome, fair_yes, yes.price
        else:
            side, fair, implied = (no.outcome if no else "No"), 1.0 - fair_yes, no_price

        side_liquidity = market.liquidity * implied
        if side_liquidity < WEATHER_MIN_SIDE_LIQUIDITY:
            logger.info(
                "weather_thin_side",
                extra={"market_id": market.market_id, "side": side, "liquidity": side_liquidity},
            )
            return None

        confidence = weather_confidence(days_ahead, parsed)
        edge = abs(fair - implied) * 100
        threshold = parsed.describe()

        return PricingResult(
            market_id=market.market_id,
            side=side,
            fair_prob=min(max(fair, 0.0), 1.0),
            implied_prob=implied,
            confidence=confidence,
            reasoning=(
                f"Open-Meteo forecast {parsed.city}: {forecast_high:.1f}{parsed.unit} high "
                f"(±{sigma:.1f}{parsed.unit} σ, {days_ahead:.1f}d ahead). "
                f"Fair {fair_yes * 100:.1f}% for {threshold} vs market {yes.price * 100:.1f}%. "
                f"{edge:.1f}% edge → {side}."
            ),
            risk_notes=(
                f"Forecast σ ±{sigma:.1f}{parsed.unit}. Resolution uses an official station "
                f"reading; verify which. Target date {date_str}."
                + (" Narrow band: boundary resolution risk." if parsed.band_width < (
                    WEATHER_NARROW_BAND_F if parsed.fahrenheit else WEATHER_NARROW_BAND_C
                ) else "")
            ),
        )
