"""End-to-end tests for one scan cycle and the scheduler control surface.

Tests cover:
  - Feed -> filter -> price -> risk -> gate routing
  - Held markets skipped on the next cycle
  - Per-market failure boundary
  - Circuit breaker refusals
  - Graceful stop between markets
  - Health and shutdown handlers
"""

import asyncio
import json
import pathlib
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent.parent))

from polyedge.api.open_meteo_client import Coordinates, DailyForecast
from polyedge.context import EngineContext
from polyedge.execution.approval_queue import ApprovalQueue
from polyedge.execution.decision_gate import DecisionGate
from polyedge.execution.ledger import LedgerStore, RiskLedger
from polyedge.execution.lifecycle import PositionLifecycleManager
from polyedge.execution.risk_manager import RiskLimits, RiskManager
from polyedge.jobs.scan_cycle import run_scan_cycle
from polyedge.markets.classifier import classify
from polyedge.markets.models import MarketRecord, OutcomeToken
from polyedge.pricing.engine import PricingEngine
from polyedge.pricing.weather import WeatherPricer
from polyedge.scheduler import EdgeScheduler
from polyedge.tests.fakes import FakeBooks, FakeGamma, FakeNotifier, ScriptedEngine


class FakeMeteo:
    """Forecast of 64°F for every city except ``broken_city``."""

    def __init__(self, target, broken_city="Atlantis"):
        self.target = target
        self.broken_city = broken_city

    async def geocode(self, city):
        if city == self.broken_city:
            raise RuntimeError("geocoder exploded")
        return Coordinates(latitude=41.88, longitude=-87.63)

    async def fetch_daily_forecast(self, coords, fahrenheit):
        return DailyForecast(time=[self.target.isoformat()], temperature_2m_max=[64.0])


def make_market(market_id, question, prices, end_date, volume=50_000.0):
    return MarketRecord(
        market_id=market_id,
        question=question,
        category=classify(question),
        end_date=end_date,
        volume=volume,
        liquidity=5_000.0,
        tokens=(
            OutcomeToken(outcome="Yes", price=prices[0], token_id=f"{market_id}-yes"),
            OutcomeToken(outcome="No", price=prices[1], token_id=f"{market_id}-no"),
        ),
    )


class TestScanCycle:
    """A full cycle over a canned feed with a dry-run engine."""

    def setup_method(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.ledger_path = pathlib.Path(self._tmp.name) / "positions.json"

        now = datetime.now(timezone.utc)
        self.target = (now + timedelta(days=1)).date()
        day = f"{self.target:%B} {self.target.day}"
        settle = datetime.combine(self.target, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=12)

        self.arb = make_market(
            "arb", f"Will Bitcoin be above $100,000 on {day}?", (0.40, 0.40), settle
        )
        self.weather = make_market(
            "wx", f"Will the highest temperature in Chicago be 60°F or higher on {day}?",
            (0.70, 0.30), settle,
        )
        self.politics = make_market(
            "pol", "Will the president resign before 2027?", (0.10, 0.90), settle
        )
        self.expiring = make_market(
            "exp", f"Will Ethereum be above $5,000 on {day}?", (0.30, 0.30), now + timedelta(minutes=5)
        )

    def teardown_method(self):
        self._tmp.cleanup()

    def build(self, markets, meteo=None):
        risk = RiskManager(LedgerStore(self.ledger_path), RiskLimits(bankroll=1000.0))
        books = FakeBooks()
        engine = ScriptedEngine(books)
        notifier = FakeNotifier()
        gamma = FakeGamma(markets)
        queue = ApprovalQueue()
        gate = DecisionGate(risk, engine, queue, notifier, auto_max_size=25.0)
        lifecycle = PositionLifecycleManager(risk, engine, gamma, notifier)
        pricing = PricingEngine(
            WeatherPricer(meteo or FakeMeteo(self.target)),
            bankroll=1000.0, max_position_pct=0.02,
        )
        return EngineContext(gamma, notifier, engine, risk, pricing, queue, gate, lifecycle)

    def test_routes_each_market(self):
        ctx = self.build([self.arb, self.weather, self.politics, self.expiring])
        summary = asyncio.run(run_scan_cycle(ctx, delay=0))

        assert summary.fetched == 4
        assert summary.eligible == 2
        assert summary.priced == 2
        assert summary.executed == 1
        assert summary.queued == 1
        assert summary.failed == 0

        ledger = asyncio.run(ctx.risk.snapshot())
        assert {p.side for p in ledger.open_positions()} == {"Yes", "No"}
        assert ledger.total_exposure == 20.0
        assert [p.market_id for p in ledger.pending_positions()] == ["wx"]
        assert len(ctx.queue) == 1

    def test_held_markets_skipped(self):
        ctx = self.build([self.arb, self.weather])
        asyncio.run(run_scan_cycle(ctx, delay=0))
        summary = asyncio.run(run_scan_cycle(ctx, delay=0))
        assert summary.skipped_held == 2
        assert summary.executed == summary.queued == 0
        assert len(ctx.engine.orders) == 2

    def test_failing_market_is_isolated(self):
        broken = make_market(
            "boom", self.weather.question.replace("Chicago", "Atlantis"), (0.70, 0.30),
            self.weather.end_date,
        )
        ctx = self.build([broken, self.arb])
        summary = asyncio.run(run_scan_cycle(ctx, delay=0))
        assert summary.failed == 1
        assert summary.executed == 1

    def test_circuit_breaker_refuses(self):
        LedgerStore(self.ledger_path).save(
            RiskLedger(paused_until=datetime.now(timezone.utc) + timedelta(hours=6))
        )
        ctx = self.build([self.arb, self.weather])
        summary = asyncio.run(run_scan_cycle(ctx, delay=0))
        assert summary.refused == 2
        assert ctx.engine.orders == []

    def test_stops_between_markets(self):
        ctx = self.build([self.arb, self.weather])
        ctx.stopping.set()
        summary = asyncio.run(run_scan_cycle(ctx, delay=0))
        assert summary.interrupted
        assert summary.priced == 0


# ============================================================
# Scheduler control surface
# ============================================================

class TestControlServer:
    def setup_method(self):
        self._tmp = tempfile.TemporaryDirectory()
        risk = RiskManager(LedgerStore(pathlib.Path(self._tmp.name) / "positions.json"))
        engine = ScriptedEngine(FakeBooks())
        notifier = FakeNotifier()
        gamma = FakeGamma()
        queue = ApprovalQueue()
        self.ctx = EngineContext(
            gamma, notifier, engine, risk,
            PricingEngine(WeatherPricer(None)),
            queue,
            DecisionGate(risk, engine, queue, notifier),
            PositionLifecycleManager(risk, engine, gamma, notifier),
        )
        self.scheduler = EdgeScheduler(self.ctx, control_port=0)

    def teardown_method(self):
        self._tmp.cleanup()

    def test_health(self):
        resp = asyncio.run(self.scheduler._health_handler(None))
        body = json.loads(resp.text)
        assert body["status"] == "ok"
        assert body["dry_run"] is True
        assert body["pending_approvals"] == 0
        assert body["risk"]["n_positions"] == 0
        assert body["last_scan"] is None

    def test_shutdown_request(self):
        request = SimpleNamespace(remote="127.0.0.1")
        resp = asyncio.run(self.scheduler._shutdown_handler(request))
        assert json.loads(resp.text)["ok"] is True
        assert self.scheduler._shutdown_event.is_set()
