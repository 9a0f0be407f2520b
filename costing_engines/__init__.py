"""
Costing engines - pure calculators for FIFO planning and cost basis.

Zero I/O.  The stateful allocator that locks and mutates layers lives in
costing_services.fifo_allocator.
"""

from costing_engines.cost_basis import (
    DailyCOGS,
    daily_cogs,
    return_cost_basis,
)
from costing_engines.fifo import (
    AllocationPlan,
    LayerSnapshot,
    PlanLine,
    check_pick_total,
    plan_fifo,
    plan_specific,
)

__all__ = [
    "AllocationPlan",
    "LayerSnapshot",
    "PlanLine",
    "check_pick_total",
    "plan_fifo",
    "plan_specific",
    "DailyCOGS",
    "daily_cogs",
    "return_cost_basis",
]
