"""Pure domain types for the costing kernel (no I/O)."""

from costing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import (
    ActionType,
    AllocationMethod,
    BackfillItemStatus,
    DateRange,
    GapKind,
    OrderLineStatus,
    RefType,
    ReturnType,
    ShipmentStatus,
    ZeroCostPolicy,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "ActorContext",
    "DateRange",
    "RefType",
    "AllocationMethod",
    "ReturnType",
    "ActionType",
    "OrderLineStatus",
    "ZeroCostPolicy",
    "ShipmentStatus",
    "BackfillItemStatus",
    "GapKind",
]
