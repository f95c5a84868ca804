"""Sizing, risk, order execution, approval routing and position lifecycle."""

from polyedge.execution.approval_queue import ApprovalQueue, PendingTrade
from polyedge.execution.decision_gate import DecisionGate, GateOutcome
from polyedge.execution.engine import ExecutionEngine, OrderRequest, OrderResult, OrderStatus
from polyedge.execution.ledger import (
    InvalidTransitionError,
    LedgerStore,
    Position,
    PositionNotFoundError,
    PositionStatus,
    RiskLedger,
)
from polyedge.execution.lifecycle import ExitReason, PositionLifecycleManager
from polyedge.execution.risk_manager import RiskDecision, RiskLimits, RiskManager
from polyedge.execution.sizer import kelly_size

__all__ = [
    "ApprovalQueue",
    "DecisionGate",
    "ExecutionEngine",
    "ExitReason",
    "GateOutcome",
    "InvalidTransitionError",
    "LedgerStore",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "PendingTrade",
    "Position",
    "PositionLifecycleManager",
    "PositionNotFoundError",
    "PositionStatus",
    "RiskDecision",
    "RiskLedger",
    "RiskLimits",
    "RiskManager",
    "kelly_size",
]
