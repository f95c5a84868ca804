"""Tests for command parsing, dispatch and the Telegram poller.

Tests cover:
  - Text command and inline callback parsing
  - One handler per command type
  - Approval queue commands end to end
  - Position menu callbacks (close, increase, refresh, balance)
  - Chat allowlist, offset tracking, per-command failure boundary
"""

import asyncio
import pathlib
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from typing import get_args

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent.parent.parent))

from polyedge.execution.approval_queue import ApprovalQueue
from polyedge.execution.decision_gate import DecisionGate
from polyedge.execution.ledger import LedgerStore, Position, PositionStatus
from polyedge.execution.lifecycle import PositionLifecycleManager
from polyedge.execution.risk_manager import RiskLimits, RiskManager
from polyedge.jobs.command_poller import (
    AnyCommand,
    ApproveCommand,
    BalanceCommand,
    ClosePositionCommand,
    CommandDispatcher,
    CommandPoller,
    DecreasePositionCommand,
    IncreasePositionCommand,
    MenuCommand,
    PendingCommand,
    RefreshMenuCommand,
    RejectAllCommand,
    RejectCommand,
    UnrecognizedCommand,
    parse_callback,
    parse_command,
)
from polyedge.markets.models import MarketCategory, MarketRecord, OutcomeToken
from polyedge.pricing.result import PricingResult
from polyedge.tests.fakes import FakeBooks, FakeGamma, FakeNotifier, ScriptedEngine, book

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def weather_market(market_id="w1"):
    return MarketRecord(
        market_id=market_id,
        question=f"Will the highest temperature in Chicago be 60°F or higher on October 20? ({market_id})",
        category=MarketCategory.WEATHER,
        end_date=T0 + timedelta(days=2),
        volume=50_000.0,
        liquidity=5_000.0,
        tokens=(
            OutcomeToken(outcome="Yes", price=0.60, token_id=f"{market_id}-yes"),
            OutcomeToken(outcome="No", price=0.40, token_id=f"{market_id}-no"),
        ),
    )


def weather_result(market_id="w1"):
    return PricingResult(
        market_id=market_id, side="Yes", fair_prob=0.80,
        implied_prob=0.60, confidence=80.0, reasoning="forecast 64°F",
    )


def update(update_id, text=None, chat_id=42, callback=None):
    if callback is not None:
        return {
            "update_id": update_id,
            "callback_query": {
                "id": f"cb{update_id}",
                "data": callback,
                "message": {"message_id": 900, "chat": {"id": chat_id}},
            },
        }
    return {"update_id": update_id, "message": {"text": text, "chat": {"id": chat_id}}}


# ============================================================
# Parsing
# ============================================================

class TestParseCommand:
    def test_approve(self):
        assert parse_command("approve") == ApproveCommand()
        assert parse_command("  Approve   15 ").size == 15.0
        assert parse_command("approve $7.5").size == 7.5

    def test_size_means_approve_at_size(self):
        cmd = parse_command("size 5")
        assert isinstance(cmd, ApproveCommand)
        assert cmd.size == 5.0

    def test_size_zero_parses_as_approve(self):
        cmd = parse_command("size 0")
        assert isinstance(cmd, ApproveCommand)
        assert cmd.size == 0.0

    def test_simple_words(self):
        assert isinstance(parse_command("reject"), RejectCommand)
        assert isinstance(parse_command("REJECT ALL"), RejectAllCommand)
        assert isinstance(parse_command("pending"), PendingCommand)
        assert isinstance(parse_command("/menu"), MenuCommand)
        assert isinstance(parse_command("menu"), MenuCommand)

    def test_unrecognized_keeps_raw(self):
        cmd = parse_command("buy everything")
        assert isinstance(cmd, UnrecognizedCommand)
        assert cmd.raw == "buy everything"


class TestParseCallback:
    def test_position_actions(self):
        assert parse_callback("cl:2") == ClosePositionCommand(index=2)
        inc = parse_callback("ad:0:10")
        assert isinstance(inc, IncreasePositionCommand)
        assert (inc.index, inc.amount) == (0, 10.0)
        dec = parse_callback("rd:1:5")
        assert isinstance(dec, DecreasePositionCommand)
        assert (dec.index, dec.amount) == (1, 5.0)

    def test_menu_buttons(self):
        assert isinstance(parse_callback("rf"), RefreshMenuCommand)
        assert isinstance(parse_callback("pd"), PendingCommand)
        assert isinstance(parse_callback("bl"), BalanceCommand)

    def test_origin_carried(self):
        cmd = parse_callback("rf", callback_id="abc", message_id=900)
        assert cmd.callback_id == "abc"
        assert cmd.message_id == 900

    def test_malformed(self):
        assert isinstance(parse_callback("cl:1:5"), UnrecognizedCommand)
        assert isinstance(parse_callback("ad:1"), UnrecognizedCommand)
        assert isinstance(parse_callback("zz"), UnrecognizedCommand)


# ============================================================
# Dispatcher
# ============================================================

class DispatchTestBase:
    def setup_method(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.now = T0
        clock = lambda: self.now  # noqa: E731
        self.risk = RiskManager(
            LedgerStore(pathlib.Path(self._tmp.name) / "positions.json"),
            RiskLimits(bankroll=1000.0),
            clock=clock,
        )
        self.books = FakeBooks()
        self.engine = ScriptedEngine(self.books)
        self.queue = ApprovalQueue(ttl=7200, clock=clock)
        self.notifier = FakeNotifier()
        self.gate = DecisionGate(self.risk, self.engine, self.queue, self.notifier)
        self.lifecycle = PositionLifecycleManager(self.risk, self.engine, FakeGamma(), self.notifier)
        self.dispatcher = CommandDispatcher(
            self.queue, self.gate, self.lifecycle, self.risk, self.engine, self.notifier
        )

    def teardown_method(self):
        self._tmp.cleanup()

    def run(self, coro):
        return asyncio.run(coro)

    def queue_trade(self, market_id="w1", size=20.0):
        return self.run(self.gate.enqueue(weather_market(market_id), weather_result(market_id), size))

    def open_position(self, market_id="p1"):
        position = Position(
            market_id=market_id, question=f"Position {market_id}", side="Yes",
            token_id=f"{market_id}-yes", category=MarketCategory.WEATHER,
            size=10.0, entry_price=0.5, fair_prob=0.6,
        )
        self.books.books[position.token_id] = book(position.token_id, bid=0.49, ask=0.51)
        return self.run(self.risk.open(position))


class TestDispatcher(DispatchTestBase):
    """Each command type reaches exactly one handler."""

    def test_every_command_has_a_handler(self):
        assert set(get_args(AnyCommand)) == set(self.dispatcher.handlers)

    def test_approve_empty_queue(self):
        reply = self.run(self.dispatcher.dispatch(ApproveCommand()))
        assert "No pending trades" in reply
        assert self.notifier.texts[-1] == reply

    def test_approve_opens_position(self):
        self.queue_trade()
        reply = self.run(self.dispatcher.dispatch(parse_command("approve")))
        assert "Approved $20.00" in reply
        ledger = self.run(self.risk.snapshot())
        assert ledger.open_positions()[0].size == 20.0

    def test_size_approves_at_amount(self):
        self.queue_trade()
        self.run(self.dispatcher.dispatch(parse_command("size 5")))
        assert self.run(self.risk.snapshot()).open_positions()[0].size == 5.0

    def test_approve_below_minimum_keeps_trade_pending(self):
        self.queue_trade()
        for text in ("approve 0", "size 0.5"):
            reply = self.run(self.dispatcher.dispatch(parse_command(text)))
            assert "at least $1.00" in reply
        assert len(self.queue) == 1
        assert self.engine.orders == []
        ledger = self.run(self.risk.snapshot())
        assert [p.status for p in ledger.positions] == [PositionStatus.PENDING_APPROVAL]

        self.run(self.dispatcher.dispatch(parse_command("approve 2")))
        assert self.run(self.risk.snapshot()).open_positions()[0].size == 2.0

    def test_reject(self):
        self.queue_trade()
        reply = self.run(self.dispatcher.dispatch(RejectCommand()))
        assert "Rejected" in reply
        assert self.run(self.risk.snapshot()).positions[0].status == PositionStatus.REJECTED

    def test_reject_all(self):
        self.queue_trade("w1")
        self.queue_trade("w2")
        reply = self.run(self.dispatcher.dispatch(RejectAllCommand()))
        assert "Rejected 2" in reply
        assert len(self.queue) == 0

    def test_pending_lists_queue(self):
        self.queue_trade()
        reply = self.run(self.dispatcher.dispatch(PendingCommand()))
        assert "Pending trades (1)" in reply

    def test_expired_trades_purged_before_dispatch(self):
        self.queue_trade()
        self.now = T0 + timedelta(hours=3)
        reply = self.run(self.dispatcher.dispatch(PendingCommand()))
        assert "No pending trades" in reply
        assert self.run(self.risk.snapshot()).positions[0].status == PositionStatus.REJECTED

    def test_menu_sends_keyboard(self):
        self.open_position()
        reply = self.run(self.dispatcher.dispatch(MenuCommand()))
        assert reply == ""
        text, markup = self.notifier.sent[-1]
        assert "Position Manager" in text
        buttons = [b["callback_data"] for row in markup["inline_keyboard"] for b in row]
        assert buttons == ["cl:0", "ad:0:10", "rd:0:5", "rf", "pd", "bl"]

    def test_refresh_edits_in_place(self):
        self.open_position()
        self.run(self.dispatcher.dispatch(parse_callback("rf", callback_id="cb", message_id=900)))
        assert self.notifier.edited[0][0] == 900
        assert self.notifier.answered == [("cb", "🔄 Refreshed")]

    def test_close_callback_answers_plain_text(self):
        self.open_position()
        self.run(self.dispatcher.dispatch(parse_callback("cl:0", callback_id="cb")))
        callback_id, text = self.notifier.answered[0]
        assert callback_id == "cb"
        assert text.startswith("✅ Closed")
        assert "<" not in text
        assert self.run(self.risk.snapshot()).open_positions() == []

    def test_increase_callback(self):
        self.open_position()
        self.run(self.dispatcher.dispatch(parse_callback("ad:0:10", callback_id="cb")))
        assert self.run(self.risk.snapshot()).open_positions()[0].size == 20.0

    def test_decrease_callback(self):
        self.open_position()
        self.run(self.dispatcher.dispatch(parse_callback("rd:0:5", callback_id="cb")))
        assert self.run(self.risk.snapshot()).open_positions()[0].size == 5.0

    def test_stale_index(self):
        reply = self.run(self.dispatcher.dispatch(parse_callback("cl:3", callback_id="cb")))
        assert "not found" in reply

    def test_balance_dry_run(self):
        reply = self.run(self.dispatcher.dispatch(BalanceCommand()))
        assert "unavailable" in reply

    def test_balance_live(self):
        self.engine.balance = 123.45
        reply = self.run(self.dispatcher.dispatch(BalanceCommand()))
        assert "$123.45" in reply

    def test_unrecognized_gets_reply(self):
        reply = self.run(self.dispatcher.dispatch(parse_command("<b>hi</b>")))
        assert "Unrecognized" in reply
        assert "&lt;b&gt;" in reply


# ============================================================
# Poller
# ============================================================

class TestCommandPoller(DispatchTestBase):
    def test_allowlist_and_offset(self):
        self.notifier.batches = [[
            update(10, "pending"),
            update(11, "approve", chat_id=99),
            update(12, callback="bl"),
        ]]
        poller = CommandPoller(self.notifier, self.dispatcher)

        assert self.run(poller.poll_once()) == 2
        assert poller.offset == 13
        assert self.run(poller.poll_once()) == 0
        assert self.notifier.offsets == [0, 13]

    def test_text_less_message_ignored(self):
        poller = CommandPoller(self.notifier, self.dispatcher)
        assert poller.to_command({"update_id": 1, "message": {"chat": {"id": 42}}}) is None

    def test_failure_boundary(self):
        async def boom(cmd):
            raise RuntimeError("handler failed")

        self.dispatcher.handlers[PendingCommand] = boom
        self.queue_trade()
        self.notifier.batches = [[update(1, "pending"), update(2, "reject")]]
        poller = CommandPoller(self.notifier, self.dispatcher)

        assert self.run(poller.poll_once()) == 1
        assert poller.offset == 3
        assert self.run(self.risk.snapshot()).positions[0].status == PositionStatus.REJECTED
