"""Job: drain inbound Telegram commands and dispatch them one at a time.

Text commands:
    approve [size]   accept the oldest pending trade (optionally resized)
    size <n>         accept the oldest pending trade at exactly n USDC
    reject           reject the oldest pending trade
    reject all       reject every pending trade
    pending          list pending trades
    menu | /menu     open the position manager

Inline-button callbacks (64-byte limit keeps them short):
    cl:<i>           close open position i
    ad:<i>:<amt>     add amt USDC to position i
    rd:<i>:<amt>     reduce position i by amt USDC
    rf | pd | bl     refresh menu | pending list | CLOB balance

Anything else parses to UnrecognizedCommand and gets an explicit reply.
"""

from __future__ import annotations

import logging
import re
from html import escape
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from polyedge.api.telegram_client import TelegramClient
from polyedge.execution.approval_queue import ApprovalQueue
from polyedge.execution.decision_gate import DecisionGate
from polyedge.execution.engine import ExecutionEngine
from polyedge.execution.lifecycle import PositionLifecycleManager
from polyedge.execution.risk_manager import RiskManager
from polyedge.notifications.alerts import build_menu_payload, format_pending_list

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class Command(BaseModel):
    """Base for every inbound command. Callback commands carry their origin."""

    callback_id: Optional[str] = None
    message_id: Optional[int] = None


class ApproveCommand(Command):
    size: Optional[float] = None


class RejectCommand(Command):
    pass


class RejectAllCommand(Command):
    pass


class PendingCommand(Command):
    pass


class MenuCommand(Command):
    pass


class ClosePositionCommand(Command):
    index: int


class IncreasePositionCommand(Command):
    index: int
    amount: float


class DecreasePositionCommand(Command):
    index: int
    amount: float


class RefreshMenuCommand(Command):
    pass


class BalanceCommand(Command):
    pass


class UnrecognizedCommand(Command):
    raw: str = ""


AnyCommand = Union[
    ApproveCommand,
    RejectCommand,
    RejectAllCommand,
    PendingCommand,
    MenuCommand,
    ClosePositionCommand,
    IncreasePositionCommand,
    DecreasePositionCommand,
    RefreshMenuCommand,
    BalanceCommand,
    UnrecognizedCommand,
]

_APPROVE = re.compile(r"^approve(?:\s+\$?(\d+(?:\.\d+)?))?$")
_SIZE = re.compile(r"^size\s+\$?(\d+(?:\.\d+)?)$")
_POSITION_CB = re.compile(r"^(cl|ad|rd):(\d+)(?::(\d+(?:\.\d+)?))?$")


def parse_command(text: str) -> AnyCommand:
    t = " ".join(text.strip().lower().split())

    match = _APPROVE.match(t)
    if match:
        return ApproveCommand(size=float(match.group(1)) if match.group(1) else None)
    match = _SIZE.match(t)
    if match:
        return ApproveCommand(size=float(match.group(1)))
    if t == "reject":
        return RejectCommand()
    if t == "reject all":
        return RejectAllCommand()
    if t == "pending":
        return PendingCommand()
    if t in ("menu", "/menu"):
        return MenuCommand()
    return UnrecognizedCommand(raw=text)


def parse_callback(data: str, callback_id: str = "", message_id: Optional[int] = None) -> AnyCommand:
    origin = {"callback_id": callback_id or None, "message_id": message_id}
    if data == "rf":
        return RefreshMenuCommand(**origin)
    if data == "pd":
        return PendingCommand(**origin)
    if data == "bl":
        return BalanceCommand(**origin)

    match = _POSITION_CB.match(data)
    if match:
        code, index, amount = match.group(1), int(match.group(2)), match.group(3)
        if code == "cl" and amount is None:
            return ClosePositionCommand(index=index, **origin)
        if code == "ad" and amount is not None:
            return IncreasePositionCommand(index=index, amount=float(amount), **origin)
        if code == "rd" and amount is not None:
            return DecreasePositionCommand(index=index, amount=float(amount), **origin)
    return UnrecognizedCommand(raw=data, **origin)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class CommandDispatcher:
    """Maps each command type to exactly one handler; handlers return the reply."""

    def __init__(
        self,
        queue: ApprovalQueue,
        gate: DecisionGate,
        lifecycle: PositionLifecycleManager,
        risk: RiskManager,
        engine: ExecutionEngine,
        notifier: TelegramClient,
    ) -> None:
        self.queue = queue
        self.gate = gate
        self.lifecycle = lifecycle
        self.risk = risk
        self.engine = engine
        self.notifier = notifier
        self.handlers: dict[type, Callable[..., Awaitable[str]]] = {
            ApproveCommand: self._approve,
            RejectCommand: self._reject,
            RejectAllCommand: self._reject_all,
            PendingCommand: self._pending,
            MenuCommand: self._menu,
            ClosePositionCommand: self._close,
            IncreasePositionCommand: self._increase,
            DecreasePositionCommand: self._decrease,
            RefreshMenuCommand: self._refresh,
            BalanceCommand: self._balance,
            UnrecognizedCommand: self._unrecognized,
        }

    async def dispatch(self, command: Command) -> str:
        await self.gate.expire_pending()
        handler = self.handlers[type(command)]
        reply = await handler(command)
        logger.info("command_handled", extra={"command": type(command).__name__})
        if command.callback_id:
            await self.notifier.answer_callback(command.callback_id, _plain(reply)[:190])
        elif reply:
            await self.notifier.send_message(reply)
        return reply

    # -- approval queue ------------------------------------------------

    async def _approve(self, cmd: ApproveCommand) -> str:
        minimum = self.risk.limits.min_order_usdc
        if cmd.size is not None and cmd.size < minimum:
            return f"⚠️ Size must be at least ${minimum:.2f}. The trade is still pending."
        trade = self.queue.accept_oldest(cmd.size)
        if trade is None:
            return "📭 No pending trades."
        ok = await self.gate.accept(trade)
        if ok:
            return f"✅ Approved ${trade.size:.2f} on {escape(trade.market.question[:60])}"
        return f"❌ Approval failed for {escape(trade.market.question[:60])}"

    async def _reject(self, cmd: RejectCommand) -> str:
        trade = self.queue.reject_oldest()
        if trade is None:
            return "📭 No pending trades."
        await self.gate.reject(trade)
        return f"🚫 Rejected {escape(trade.market.question[:60])}"

    async def _reject_all(self, cmd: RejectAllCommand) -> str:
        trades = self.queue.reject_all()
        for trade in trades:
            await self.gate.reject(trade)
        return f"🚫 Rejected {len(trades)} pending trade(s)."

    async def _pending(self, cmd: PendingCommand) -> str:
        text = format_pending_list(self.queue.list(), self.queue.now())
        if cmd.callback_id:
            await self.notifier.send_message(text)
            return f"{len(self.queue)} pending"
        return text

    # -- position menu -------------------------------------------------

    async def _menu_payload(self) -> tuple[str, dict]:
        ledger = await self.risk.snapshot()
        positions = ledger.open_positions()
        prices = {p.id: await self.lifecycle.reference_price(p) for p in positions}
        return build_menu_payload(positions, prices, ledger.daily_pnl)

    async def _menu(self, cmd: MenuCommand) -> str:
        text, markup = await self._menu_payload()
        await self.notifier.send_message(text, reply_markup=markup)
        return ""

    async def _refresh(self, cmd: RefreshMenuCommand) -> str:
        text, markup = await self._menu_payload()
        if cmd.message_id is not None:
            await self.notifier.edit_message(cmd.message_id, text, reply_markup=markup)
        else:
            await self.notifier.send_message(text, reply_markup=markup)
        return "🔄 Refreshed"

    async def _position_id(self, index: int) -> Optional[str]:
        positions = (await self.risk.snapshot()).open_positions()
        if 0 <= index < len(positions):
            return positions[index].id
        return None

    async def _close(self, cmd: ClosePositionCommand) -> str:
        position_id = await self._position_id(cmd.index)
        if position_id is None:
            return "⚠️ Position not found. Try refreshing."
        outcome = await self.lifecycle.close_position(position_id)
        return ("✅ " if outcome.ok else "❌ ") + outcome.message

    async def _increase(self, cmd: IncreasePositionCommand) -> str:
        position_id = await self._position_id(cmd.index)
        if position_id is None:
            return "⚠️ Position not found. Try refreshing."
        outcome = await self.lifecycle.increase_position(position_id, cmd.amount)
        return ("✅ " if outcome.ok else "❌ ") + outcome.message

    async def _decrease(self, cmd: DecreasePositionCommand) -> str:
        position_id = await self._position_id(cmd.index)
        if position_id is None:
            return "⚠️ Position not found. Try refreshing."
        outcome = await self.lifecycle.decrease_position(position_id, cmd.amount)
        return ("✅ " if outcome.ok else "❌ ") + outcome.message

    async def _balance(self, cmd: BalanceCommand) -> str:
        balance = await self.engine.get_balance()
        if balance is None:
            return "💰 Balance unavailable (dry run or CLOB error)"
        return f"💰 CLOB Balance: ${balance:.2f} USDC"

    async def _unrecognized(self, cmd: UnrecognizedCommand) -> str:
        logger.info("command_unrecognized", extra={"raw": cmd.raw[:80]})
        return (
            f"❓ Unrecognized command: <code>{escape(cmd.raw[:40])}</code>\n"
            "Try <code>approve</code>, <code>reject</code>, <code>reject all</code>, "
            "<code>pending</code> or <code>/menu</code>."
        )


def _plain(text: str) -> str:
    return re.sub(r"<[^>]+>", "", text)


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


class CommandPoller:
    """Long-polls Telegram and feeds each update through the dispatcher."""

    def __init__(self, telegram: TelegramClient, dispatcher: CommandDispatcher) -> None:
        self.telegram = telegram
        self.dispatcher = dispatcher
        self.offset = 0

    def to_command(self, update: dict) -> Optional[AnyCommand]:
        """Translate one update; None for updates from other chats or without content."""
        callback = update.get("callback_query")
        if callback:
            chat_id = str(((callback.get("message") or {}).get("chat") or {}).get("id", ""))
            if chat_id != self.telegram.chat_id:
                return None
            return parse_callback(
                callback.get("data", ""),
                callback_id=str(callback.get("id", "")),
                message_id=(callback.get("message") or {}).get("message_id"),
            )

        message = update.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        text = message.get("text")
        if chat_id != self.telegram.chat_id or not text:
            return None
        return parse_command(text)

    async def poll_once(self) -> int:
        """Drain one batch of updates. Returns how many commands were handled."""
        updates = await self.telegram.get_updates(self.offset)
        handled = 0
        for update in updates:
            self.offset = max(self.offset, int(update.get("update_id", 0)) + 1)
            command = self.to_command(update)
            if command is None:
                logger.debug("update_ignored", extra={"update_id": update.get("update_id")})
                continue
            try:
                await self.dispatcher.dispatch(command)
                handled += 1
            except Exception:
                logger.error(
                    "command_failed",
                    extra={"command": type(command).__name__},
                    exc_info=True,
                )
        return handled
