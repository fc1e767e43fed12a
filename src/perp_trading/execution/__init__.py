"""Execution package exports."""

from perp_trading.execution.actions import (
    ActionDescriptor,
    ClosePositionAction,
    EmergencyCloseAllAction,
    HoldAction,
    OpenPositionAction,
    PartialTakeProfitAction,
    ReversePositionAction,
    SetBreakEvenAction,
    TrailTakeProfitAction,
    WaitAction,
    action_payload,
)
from perp_trading.execution.dispatcher import DispatchResult, OrderDispatcher
from perp_trading.execution.features import (
    FeatureHealthConfig,
    FeaturePerformance,
    FeaturePerformanceTracker,
    feature_key,
)
from perp_trading.execution.idempotency import (
    IdempotencyGuard,
    manual_order_key,
    signal_order_key,
)
from perp_trading.execution.machine import DecisionContext, ExecutionConfig, ExecutionStateMachine
from perp_trading.execution.policy import SymbolPolicy, canonicalize_symbol

__all__ = [
    "ActionDescriptor",
    "ClosePositionAction",
    "DecisionContext",
    "DispatchResult",
    "EmergencyCloseAllAction",
    "ExecutionConfig",
    "ExecutionStateMachine",
    "FeatureHealthConfig",
    "FeaturePerformance",
    "FeaturePerformanceTracker",
    "HoldAction",
    "IdempotencyGuard",
    "OpenPositionAction",
    "OrderDispatcher",
    "PartialTakeProfitAction",
    "ReversePositionAction",
    "SetBreakEvenAction",
    "SymbolPolicy",
    "TrailTakeProfitAction",
    "WaitAction",
    "action_payload",
    "canonicalize_symbol",
    "feature_key",
    "manual_order_key",
    "signal_order_key",
]
