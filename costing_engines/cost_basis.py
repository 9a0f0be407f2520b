"""
costing_engines.cost_basis -- cost basis and reporting calculators.

Pure functions over ledger figures:

* ``return_cost_basis`` -- weighted original cost of the units a customer
  sends back: total amount / total qty of the order line's active
  shipment rows.
* ``daily_cogs`` -- per-day COGS with reversals netted and each day floored
  at zero.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from costing_kernel.db.types import ZERO, round_cost, round_money


def return_cost_basis(rows: Iterable[tuple[Decimal, Decimal]]) -> Decimal | None:
    """
    Weighted unit cost from (qty, amount) pairs.

    Returns None when the rows carry no quantity (the order was never
    costed), so the caller can apply its fallback.
    """
    total_qty = ZERO
    total_amount = ZERO
    for qty, amount in rows:
        total_qty += qty
        total_amount += amount
    if total_qty <= 0:
        return None
    return round_cost(total_amount / total_qty)


@dataclass(frozen=True, slots=True)
class DailyCOGS:
    day: date
    amount: Decimal
    row_count: int


def daily_cogs(rows: Iterable[tuple[datetime, Decimal]]) -> list[DailyCOGS]:
    """
    Sum signed amounts by calendar day (UTC) in ascending day order.

    Reversal rows already carry negative amounts.  A day whose net is
    negative (more reversed than shipped) reports 0.
    """
    totals: dict[date, Decimal] = defaultdict(lambda: ZERO)
    counts: dict[date, int] = defaultdict(int)
    for shipped_at, amount in rows:
        day = shipped_at.date()
        totals[day] += amount
        counts[day] += 1
    return [
        DailyCOGS(day=day, amount=round_money(max(totals[day], ZERO)), row_count=counts[day])
        for day in sorted(totals)
    ]
