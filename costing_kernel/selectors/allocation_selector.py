"""
AllocationSelector -- read view over the COGS allocation ledger.

Serves ``cogsAllocations(order_id?, sku?, date_range?)`` and the per-line
cost summary used by reports.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from costing_kernel.domain.values import DateRange
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class COGSAllocationDTO:
    """Data transfer object for one COGS ledger row."""

    id: UUID
    order_id: str
    sku: str
    shipped_at: datetime
    method: str
    qty: Decimal
    unit_cost_used: Decimal
    amount: Decimal
    is_reversal: bool
    layer_id: UUID | None
    group_id: UUID
    reversal_of_id: UUID | None
    return_id: UUID | None
    reason: str | None


@dataclass(frozen=True)
class OrderLineCostDTO:
    """Net COGS position of one order line."""

    order_id: str
    sku: str
    net_qty: Decimal
    net_amount: Decimal
    row_count: int

    @property
    def unit_cost(self) -> Decimal | None:
        if self.net_qty == 0:
            return None
        return self.net_amount / self.net_qty


class AllocationSelector(BaseSelector):
    """Read-only queries over cogs_allocations."""

    @staticmethod
    def _to_dto(row: COGSAllocation) -> COGSAllocationDTO:
        return COGSAllocationDTO(
            id=row.id,
            order_id=row.order_id,
            sku=row.sku,
            shipped_at=row.shipped_at,
            method=row.method,
            qty=row.qty,
            unit_cost_used=row.unit_cost_used,
            amount=row.amount,
            is_reversal=row.is_reversal,
            layer_id=row.layer_id,
            group_id=row.group_id,
            reversal_of_id=row.reversal_of_id,
            return_id=row.return_id,
            reason=row.reason,
        )

    def cogs_allocations(
        self,
        order_id: str | None = None,
        sku: str | None = None,
        date_range: DateRange | None = None,
    ) -> list[COGSAllocationDTO]:
        stmt = select(COGSAllocation).order_by(
            COGSAllocation.shipped_at, COGSAllocation.created_at, COGSAllocation.id
        )
        if order_id is not None:
            stmt = stmt.where(COGSAllocation.order_id == order_id)
        if sku is not None:
            stmt = stmt.where(COGSAllocation.sku == sku)
        if date_range is not None:
            stmt = stmt.where(
                COGSAllocation.shipped_at >= date_range.start,
                COGSAllocation.shipped_at < date_range.end,
            )
        return [self._to_dto(row) for row in self.session.execute(stmt).scalars()]

    def group(self, group_id: UUID) -> list[COGSAllocationDTO]:
        stmt = (
            select(COGSAllocation)
            .where(COGSAllocation.group_id == group_id)
            .order_by(COGSAllocation.created_at, COGSAllocation.id)
        )
        return [self._to_dto(row) for row in self.session.execute(stmt).scalars()]

    def order_line_cost(self, order_id: str, sku: str) -> OrderLineCostDTO:
        """
        Net cost of an order line.

        Quantity nets shipment rows against their reversals; amount also
        nets return credits, since those reduce recognized COGS.
        """
        rows = self.cogs_allocations(order_id=order_id, sku=sku)
        net_qty = Decimal("0")
        net_amount = Decimal("0")
        for row in rows:
            net_amount += row.amount
            if row.layer_id is not None and row.return_id is None:
                net_qty += -row.qty if row.is_reversal else row.qty
        return OrderLineCostDTO(
            order_id=order_id,
            sku=sku,
            net_qty=net_qty,
            net_amount=net_amount,
            row_count=len(rows),
        )
