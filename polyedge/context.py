"""Engine context: every long-lived component, built once at startup.

Jobs receive the context instead of reaching for module-level singletons,
so the scan loop and the command poller share exactly one risk manager,
one approval queue and one set of HTTP clients.
"""

from __future__ import annotations

import asyncio
import logging

from polyedge.api.clob_client import ClobClient
from polyedge.api.gamma_client import GammaClient
from polyedge.api.goldsky_client import GoldskyClient
from polyedge.api.open_meteo_client import OpenMeteoClient
from polyedge.api.telegram_client import TelegramClient
from polyedge.config import LEDGER_PATH
from polyedge.execution.approval_queue import ApprovalQueue
from polyedge.execution.decision_gate import DecisionGate
from polyedge.execution.engine import ExecutionEngine
from polyedge.execution.ledger import LedgerStore
from polyedge.execution.lifecycle import PositionLifecycleManager
from polyedge.execution.risk_manager import RiskLimits, RiskManager
from polyedge.jobs.command_poller import CommandDispatcher, CommandPoller
from polyedge.pricing.engine import PricingEngine
from polyedge.pricing.smart_money import SmartMoneyTracker
from polyedge.pricing.weather import WeatherPricer

logger = logging.getLogger(__name__)


class EngineContext:
    """Owns the components and the shared ``stopping`` event."""

    def __init__(
        self,
        gamma: GammaClient,
        telegram: TelegramClient,
        engine: ExecutionEngine,
        risk: RiskManager,
        pricing: PricingEngine,
        queue: ApprovalQueue,
        gate: DecisionGate,
        lifecycle: PositionLifecycleManager,
        closers: tuple = (),
    ) -> None:
        self.gamma = gamma
        self.telegram = telegram
        self.engine = engine
        self.risk = risk
        self.pricing = pricing
        self.queue = queue
        self.gate = gate
        self.lifecycle = lifecycle
        self.dispatcher = CommandDispatcher(queue, gate, lifecycle, risk, engine, telegram)
        self.poller = CommandPoller(telegram, self.dispatcher)
        self.stopping = asyncio.Event()
        self._closers = closers

    @classmethod
    def from_config(cls) -> "EngineContext":
        limits = RiskLimits.from_config()
        gamma = GammaClient()
        books = ClobClient()
        meteo = OpenMeteoClient()
        goldsky = GoldskyClient()
        telegram = TelegramClient()

        engine = ExecutionEngine(books)
        risk = RiskManager(LedgerStore(LEDGER_PATH), limits)
        pricing = PricingEngine(
            WeatherPricer(meteo),
            SmartMoneyTracker(goldsky),
            bankroll=limits.bankroll,
            max_position_pct=limits.max_position_pct,
        )
        queue = ApprovalQueue()
        gate = DecisionGate(risk, engine, queue, telegram)
        lifecycle = PositionLifecycleManager(risk, engine, gamma, telegram)

        logger.info(
            "engine_context_built",
            extra={
                "dry_run": engine.dry_run,
                "bankroll": limits.bankroll,
                "telegram": telegram.enabled,
                "ledger": LEDGER_PATH,
            },
        )
        return cls(
            gamma, telegram, engine, risk, pricing, queue, gate, lifecycle,
            closers=(meteo, goldsky),
        )

    async def close(self) -> None:
        for client in (self.gamma, self.telegram, self.engine, *self._closers):
            try:
                await client.close()
            except Exception:
                logger.warning("client_close_failed", extra={"client": type(client).__name__}, exc_info=True)
