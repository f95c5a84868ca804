"""Tests for the pricing models and the pricing engine.

Tests cover:
  - erf approximation accuracy
  - Temperature question parsing (above, below, range, exact, date rollover)
  - Weather pricer side selection, liquidity floor, confidence tiers
  - Binary and grouped arbitrage
  - Sponsored reward pricing
  - Smart-money fill attribution, boost, and wallet qualification
  - Engine routing, floors, boost and sizing
"""

import asyncio
import math
import pathlib
import sys
from datetime import date, datetime, timedelta, timezone

import pytest

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent.parent))

from polyedge.api.open_meteo_client import Coordinates, DailyForecast
from polyedge.markets.models import MarketCategory, MarketRecord, OutcomeToken
from polyedge.pricing.arbitrage import price_binary_arbitrage, price_grouped
from polyedge.pricing.engine import PricingEngine
from polyedge.pricing.result import ARB_BOTH
from polyedge.pricing.smart_money import (
    SmartMoneySignal,
    SmartMoneyTracker,
    WalletStats,
    attribute_fill,
    confidence_boost,
)
from polyedge.pricing.sponsored import price_sponsored, reward_apr
from polyedge.pricing.stats import erf, mass_between, norm_cdf
from polyedge.pricing.weather import (
    ThresholdKind,
    WeatherPricer,
    forecast_sigma,
    parse_target_date,
    parse_temperature_question,
    threshold_probability,
)

EXPIRY = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)
CHICAGO_ABOVE = "Will the highest temperature in Chicago be 60°F or higher on October 20?"


def binary(
    market_id="m1",
    yes=0.5,
    no=0.5,
    question="Will it happen?",
    category=MarketCategory.OTHER,
    liquidity=5_000.0,
    end_date=EXPIRY,
    group_id=None,
    rewards=0.0,
):
    return MarketRecord(
        market_id=market_id,
        question=question,
        category=category,
        end_date=end_date,
        volume=50_000.0,
        liquidity=liquidity,
        tokens=(
            OutcomeToken(outcome="Yes", price=yes, token_id=f"{market_id}-yes"),
            OutcomeToken(outcome="No", price=no, token_id=f"{market_id}-no"),
        ),
        group_id=group_id,
        rewards_daily_rate=rewards,
    )


class FakeMeteo:
    def __init__(self, highs=None, coords=Coordinates(latitude=41.88, longitude=-87.63)):
        self.highs = highs or {}
        self.coords = coords
        self.units = []

    async def geocode(self, city):
        return self.coords

    async def fetch_daily_forecast(self, coords, fahrenheit):
        self.units.append(fahrenheit)
        return DailyForecast(
            time=list(self.highs),
            temperature_2m_max=list(self.highs.values()),
        )


class FakeSmartMoney:
    def __init__(self, signals=()):
        self.signals = list(signals)
        self.calls = 0

    async def signals_for(self, market):
        self.calls += 1
        return self.signals


def signal(side="Yes", win_rate=1.0):
    return SmartMoneySignal(
        wallet=WalletStats(address="0xabc", realized_pnl=80_000, trade_count=40, win_rate=win_rate),
        market_id="m1",
        token_id="m1-yes",
        side=side,
        size_usdc=7_500.0,
        timestamp=datetime(2026, 10, 18, tzinfo=timezone.utc),
    )


# ============================================================
# Normal distribution helpers
# ============================================================

class TestStats:
    def test_erf_matches_math(self):
        for i in range(-500, 501):
            x = i / 100
            assert abs(erf(x) - math.erf(x)) < 1e-6

    def test_norm_cdf_symmetry(self):
        assert norm_cdf(0.0) == pytest.approx(0.5, abs=1e-7)
        assert norm_cdf(64, 60, 2) + norm_cdf(56, 60, 2) == pytest.approx(1.0, abs=1e-6)

    def test_norm_cdf_rejects_zero_sigma(self):
        with pytest.raises(ValueError):
            norm_cdf(1.0, 0.0, 0.0)

    def test_mass_between_inverted_bounds(self):
        assert mass_between(5, 3, 4, 1) == 0.0


# ============================================================
# Question parsing
# ============================================================

class TestTemperatureParsing:
    """Question text into a typed threshold."""

    def test_above(self):
        q = parse_temperature_question(CHICAGO_ABOVE, EXPIRY)
        assert q.city == "Chicago"
        assert q.fahrenheit
        assert q.kind == ThresholdKind.ABOVE
        assert q.high == 60
        assert q.target_date == date(2026, 10, 20)

    def test_below(self):
        q = parse_temperature_question(
            "Will the highest temperature in Denver be 50°F or below on October 21?", EXPIRY
        )
        assert q.kind == ThresholdKind.BELOW
        assert q.low == 50
        assert q.target_date == date(2026, 10, 21)

    def test_range(self):
        q = parse_temperature_question(
            "Will the highest temperature in Miami be between 70-71°F on October 20?", EXPIRY
        )
        assert q.kind == ThresholdKind.RANGE
        assert (q.low, q.high) == (70, 71)
        assert q.band_width == 1

    def test_dash_range_without_between(self):
        q = parse_temperature_question(
            "Will the highest temperature in Miami be 70-71°F on October 20?", EXPIRY
        )
        assert q.kind == ThresholdKind.RANGE
        assert (q.low, q.high) == (70, 71)

    def test_negative_threshold(self):
        q = parse_temperature_question(
            "Will the highest temperature in Moscow be -5°C or below on October 20?", EXPIRY
        )
        assert q.kind == ThresholdKind.BELOW
        assert q.low == -5

    def test_exact_celsius(self):
        q = parse_temperature_question(
            "Will the highest temperature in London be 14°C on October 20?", EXPIRY
        )
        assert q.kind == ThresholdKind.EXACT
        assert q.exact == 14
        assert not q.fahrenheit
        assert q.city == "London"

    def test_not_a_temperature_question(self):
        assert parse_temperature_question("Will it rain in Seattle tomorrow?", EXPIRY) is None

    def test_date_falls_back_to_expiry(self):
        assert parse_target_date("Will it be hot?", EXPIRY) == date(2026, 10, 20)

    def test_date_rolls_into_next_year(self):
        expiry = datetime(2026, 12, 30, tzinfo=timezone.utc)
        assert parse_target_date("high on January 2?", expiry) == date(2027, 1, 2)


# ============================================================
# Weather model
# ============================================================

class TestWeatherModel:
    def test_sigma_grows_with_lead_time(self):
        sigmas = [forecast_sigma(True, d) for d in (0.5, 1.5, 2.5, 4, 6)]
        assert sigmas == sorted(sigmas)
        assert len(set(sigmas)) == 5
        assert forecast_sigma(False, 1) < forecast_sigma(True, 1)

    def test_threshold_probability_exact_band(self):
        q = parse_temperature_question(
            "Will the highest temperature in London be 14°C on October 20?", EXPIRY
        )
        centred = threshold_probability(14.0, 1.0, q)
        off = threshold_probability(17.0, 1.0, q)
        assert 0 < off < centred < 1


class TestWeatherPricer:
    """End-to-end pricing against a canned forecast."""

    def setup_method(self):
        self.now = datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)

    def test_yes_side_when_forecast_above(self):
        meteo = FakeMeteo({"2026-10-20": 64.0})
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        result = asyncio.run(WeatherPricer(meteo).price(market, self.now))
        assert result.side == "Yes"
        assert result.implied_prob == 0.70
        assert result.fair_prob > 0.97
        assert result.edge > 25
        assert result.confidence == 80
        assert meteo.units == [True]

    def test_no_side_uses_no_price(self):
        meteo = FakeMeteo({"2026-10-20": 55.0})
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        result = asyncio.run(WeatherPricer(meteo).price(market, self.now))
        assert result.side == "No"
        assert result.implied_prob == 0.30
        assert result.fair_prob > 0.99

    def test_thin_side_rejected(self):
        meteo = FakeMeteo({"2026-10-20": 64.0})
        market = binary(
            yes=0.70, no=0.30, question=CHICAGO_ABOVE,
            category=MarketCategory.WEATHER, liquidity=100.0,
        )
        assert asyncio.run(WeatherPricer(meteo).price(market, self.now)) is None

    def test_missing_forecast_day(self):
        meteo = FakeMeteo({"2026-10-25": 64.0})
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        assert asyncio.run(WeatherPricer(meteo).price(market, self.now)) is None

    def test_geocode_miss(self):
        meteo = FakeMeteo({"2026-10-20": 64.0}, coords=None)
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        assert asyncio.run(WeatherPricer(meteo).price(market, self.now)) is None

    def test_far_dated_loses_confidence(self):
        meteo = FakeMeteo({"2026-10-20": 64.0})
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        early = self.now - timedelta(days=4)
        result = asyncio.run(WeatherPricer(meteo).price(market, early))
        assert result.confidence == 65


# ============================================================
# Arbitrage
# ============================================================

class TestBinaryArbitrage:
    def test_underpriced_bundle(self):
        result = price_binary_arbitrage(binary(yes=0.45, no=0.45))
        assert result.side == ARB_BOTH
        assert result.is_arbitrage
        assert result.fair_prob == 1.0
        assert result.implied_prob == pytest.approx(0.90)
        assert result.edge == pytest.approx(10.0)

    def test_inside_band(self):
        assert price_binary_arbitrage(binary(yes=0.49, no=0.50)) is None

    def test_overpriced_bundle_not_tradable(self):
        assert price_binary_arbitrage(binary(yes=0.55, no=0.55)) is None


class TestGroupedArbitrage:
    """Cheapest member of a drifting mutually-exclusive group."""

    def setup_method(self):
        prices = {"a": 0.10, "b": 0.30, "c": 0.30, "d": 0.15}
        self.group = [
            binary(market_id=k, yes=p, no=round(1 - p, 2), category=MarketCategory.GROUPED, group_id="G")
            for k, p in prices.items()
        ]

    def test_cheapest_member_priced(self):
        result = price_grouped(self.group[0], self.group)
        assert result.side == "Yes"
        assert result.fair_prob == pytest.approx(0.25)
        assert result.implied_prob == 0.10
        assert result.edge == pytest.approx(15.0)

    def test_other_underpriced_member_skipped(self):
        assert price_grouped(self.group[3], self.group) is None

    def test_balanced_group(self):
        group = [
            binary(market_id=k, yes=0.25, no=0.75, category=MarketCategory.GROUPED, group_id="G")
            for k in "abcd"
        ]
        assert price_grouped(group[0], group) is None

    def test_singleton_group(self):
        assert price_grouped(self.group[0], self.group[:1]) is None


# ============================================================
# Sponsored
# ============================================================

class TestSponsored:
    def setup_method(self):
        self.now = EXPIRY - timedelta(days=10)

    def test_reward_apr(self):
        assert reward_apr(10.0, 10.0, 1000.0) == pytest.approx(365.0)
        assert reward_apr(10.0, 0.0, 1000.0) == 0.0

    def test_cheap_yes(self):
        market = binary(yes=0.40, no=0.60, category=MarketCategory.SPONSORED, rewards=10.0)
        result = price_sponsored(market, self.now, bankroll=1000.0)
        assert result.side == "Yes"
        assert result.fair_prob == 0.5
        assert result.edge == pytest.approx(10.0)
        assert result.reward_apr == pytest.approx(365.0)

    def test_expensive_yes_buys_no(self):
        market = binary(yes=0.60, no=0.40, category=MarketCategory.SPONSORED, rewards=10.0)
        result = price_sponsored(market, self.now, bankroll=1000.0)
        assert result.side == "No"
        assert result.implied_prob == 0.40

    def test_no_rewards(self):
        assert price_sponsored(binary(yes=0.4, no=0.6), self.now) is None


# ============================================================
# Smart money
# ============================================================

class FakeGoldsky:
    def __init__(self):
        self.fill_calls = 0
        self.top = [{"user": "0xAAA", "realizedPnl": str(int(60_000 * 1e6))},
                    {"user": "0xBBB", "realizedPnl": str(int(1_000 * 1e6))}]
        self.history = [
            {"user": "0xaaa", "realizedPnl": "1000000"},
            {"user": "0xaaa", "realizedPnl": "2000000"},
            {"user": "0xaaa", "realizedPnl": "3000000"},
            {"user": "0xaaa", "realizedPnl": "-1000000"},
            {"user": "0xaaa", "realizedPnl": "0"},
        ]
        self.fills = [
            {"maker": "0xAAA", "makerAssetId": "0", "takerAssetId": "m1-yes",
             "makerAmountFilled": str(int(6_000 * 1e6)), "timestamp": "1792000000",
             "transactionHash": "0xtx1"},
            {"maker": "0xAAA", "makerAssetId": "0", "takerAssetId": "m1-no",
             "makerAmountFilled": str(int(100 * 1e6)), "timestamp": "1792000000"},
            {"maker": "0xAAA", "makerAssetId": "m1-no", "takerAssetId": "0",
             "makerAmountFilled": str(int(9_000 * 1e6)), "timestamp": "1792000000"},
            {"maker": "0xCCC", "makerAssetId": "0", "takerAssetId": "m1-yes",
             "makerAmountFilled": str(int(9_000 * 1e6)), "timestamp": "1792000000"},
        ]

    async def fetch_top_positions(self, min_pnl):
        return self.top

    async def fetch_wallet_positions(self, addresses):
        return [r for r in self.history if r["user"] in addresses]

    async def fetch_fills(self, addresses, since):
        self.fill_calls += 1
        return self.fills


class TestSmartMoney:
    def test_attribute_buy(self):
        fill = {"makerAssetId": "0", "takerAssetId": "123", "makerAmountFilled": "7500000000"}
        assert attribute_fill(fill) == ("123", 7500.0)

    def test_attribute_sell_ignored(self):
        fill = {"makerAssetId": "123", "takerAssetId": "0", "makerAmountFilled": "7500000000"}
        assert attribute_fill(fill) is None

    def test_boost_scales_with_win_rate(self):
        assert confidence_boost([signal(win_rate=1.0)], "Yes") == 15
        assert confidence_boost([signal(win_rate=0.65)], "Yes") == 0
        assert confidence_boost([signal(win_rate=0.79)], "yes") == 6

    def test_boost_ignores_other_side(self):
        assert confidence_boost([signal(side="No")], "Yes") == 0

    def test_tracker_signals(self):
        clock = [0.0]
        goldsky = FakeGoldsky()
        tracker = SmartMoneyTracker(goldsky, clock=lambda: clock[0])
        market = binary(market_id="m1")

        wallets = asyncio.run(tracker.smart_wallets())
        assert [w.address for w in wallets] == ["0xaaa"]
        assert wallets[0].win_rate == pytest.approx(0.75)
        assert wallets[0].trade_count == 5

        signals = asyncio.run(tracker.signals_for(market))
        assert len(signals) == 1
        assert signals[0].side == "Yes"
        assert signals[0].size_usdc == pytest.approx(6_000.0)
        assert signals[0].tx_hash == "0xtx1"

        asyncio.run(tracker.signals_for(market))
        assert goldsky.fill_calls == 1
        clock[0] = 120.0
        asyncio.run(tracker.signals_for(market))
        assert goldsky.fill_calls == 2


# ============================================================
# Engine
# ============================================================

class TestPricingEngine:
    """Routing, floors, boost and sizing."""

    def setup_method(self):
        self.meteo = FakeMeteo({"2026-10-20": 64.0})
        self.now = datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)

    def engine(self, smart_money=None, min_confidence_sponsored=55.0):
        return PricingEngine(
            WeatherPricer(self.meteo), smart_money,
            bankroll=1000.0, max_position_pct=0.02,
            min_edge=7.0, min_edge_sponsored=4.0, min_confidence=70.0,
            min_confidence_sponsored=min_confidence_sponsored,
        )

    def test_arbitrage_sized(self):
        market = binary(yes=0.45, no=0.45, category=MarketCategory.CRYPTO_BINARY)
        result = asyncio.run(self.engine().price(market, now=self.now))
        assert result.size_usdc == 20.0

    def test_unpriced_category(self):
        market = binary(yes=0.10, no=0.10, category=MarketCategory.POLITICS)
        assert asyncio.run(self.engine().price(market, now=self.now)) is None

    def test_edge_floor(self):
        market = binary(yes=0.47, no=0.47, category=MarketCategory.CRYPTO_BINARY)
        assert asyncio.run(self.engine().price(market, now=self.now)) is None

    def sponsored_market(self):
        return binary(
            yes=0.45, no=0.55, category=MarketCategory.SPONSORED,
            rewards=10.0, end_date=self.now + timedelta(days=10),
        )

    def test_confidence_floor(self):
        engine = self.engine(min_confidence_sponsored=65.0)
        assert asyncio.run(engine.price(self.sponsored_market(), now=self.now)) is None

    def test_sponsored_confidence_floor(self):
        engine = self.engine()
        assert engine.min_confidence_for(MarketCategory.SPONSORED) == 55.0
        assert engine.min_confidence_for(MarketCategory.WEATHER) == 70.0
        result = asyncio.run(engine.price(self.sponsored_market(), now=self.now))
        assert result is not None
        assert result.confidence == 60
        assert result.side == "Yes"

    def test_sponsored_edge_floor(self):
        engine = self.engine()
        assert engine.min_edge_for(MarketCategory.SPONSORED) == 4.0
        assert engine.min_edge_for(MarketCategory.WEATHER) == 7.0

    def test_smart_money_boost(self):
        tracker = FakeSmartMoney([signal(side="Yes", win_rate=1.0)])
        market = binary(yes=0.70, no=0.30, question=CHICAGO_ABOVE, category=MarketCategory.WEATHER)
        result = asyncio.run(self.engine(tracker).price(market, now=self.now))
        assert result.confidence == 95
        assert result.size_usdc == 20.0

    def test_boost_skipped_for_arbitrage(self):
        tracker = FakeSmartMoney([signal()])
        market = binary(yes=0.45, no=0.45, category=MarketCategory.CRYPTO_BINARY)
        result = asyncio.run(self.engine(tracker).price(market, now=self.now))
        assert result.confidence == 95
        assert tracker.calls == 0
