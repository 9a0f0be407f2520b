"""
ShipmentService -- shipment registration, costing and cancellation.

Responsibility:
    Record that an order line shipped, cost it through the FIFO allocator
    (idempotently per order/sku), and cancel a shipment by routing its
    allocation groups through the single reversal engine.

Architecture position:
    Services.  Composes CatalogService (bundle expansion), FifoAllocator,
    CogsLedger and ReversalService.  Transaction boundaries belong to the
    caller (CostingService).

Invariants enforced:
    - Idempotent costing: a line with any net allocated quantity is
      reported ``already_allocated`` and left untouched.
    - Cancellation never writes compensating rows by hand; every re-credit
      goes through ReversalService.
    - A line with returns that have not been undone cannot be cancelled;
      the returned units would otherwise come back twice.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_engines.fifo import check_pick_total
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import AllocationMethod, OrderLineStatus, ShipmentStatus
from costing_kernel.exceptions import (
    InvalidQuantityError,
    OrderLineCancelledError,
    OrderLineHasReturnsError,
    OrderLineNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.sales_order_line import SalesOrderLine
from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.reversal_service import ReversalResult, ReversalService
from costing_services.catalog_service import CatalogService
from costing_services.fifo_allocator import FifoAllocator
from costing_services.return_service import ReturnService

logger = get_logger("services.shipment")


@dataclass(frozen=True)
class LineCosting:
    """Costing outcome for one (order, sku) line."""

    order_id: str
    sku: str
    status: ShipmentStatus
    group_id: UUID | None = None
    allocated_qty: Decimal = Decimal("0")
    shortfall: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    blended_unit_cost: Decimal | None = None


class ShipmentService(BaseService):
    """Registers, costs and cancels shipments."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        allocator: FifoAllocator | None = None,
        reversal: ReversalService | None = None,
        catalog: CatalogService | None = None,
        ledger: CogsLedger | None = None,
        returns: ReturnService | None = None,
        respect_as_of: bool = True,
    ):
        super().__init__(session, clock)
        self._ledger = ledger or CogsLedger(session, self.clock)
        self._allocator = allocator or FifoAllocator(
            session, self.clock, ledger=self._ledger, respect_as_of=respect_as_of
        )
        self._reversal = reversal or ReversalService(session, self.clock, ledger=self._ledger)
        self._catalog = catalog or CatalogService(session, self.clock)
        self._returns = returns or ReturnService(
            session, self.clock, ledger=self._ledger, reversal=self._reversal, catalog=self._catalog
        )

    # -------------------------------------------------------------------------
    # Order lines
    # -------------------------------------------------------------------------

    def get_line(self, order_id: str, sku: str, lock: bool = False) -> SalesOrderLine | None:
        stmt = select(SalesOrderLine).where(
            SalesOrderLine.order_id == order_id,
            SalesOrderLine.sku == sku,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def lines_for(self, order_id: str, sku: str) -> list[SalesOrderLine]:
        """The line for ``sku``, or the component lines if ``sku`` shipped as a bundle."""
        line = self.get_line(order_id, sku)
        if line is not None:
            return [line]
        return list(self.session.execute(
            select(SalesOrderLine)
            .where(SalesOrderLine.order_id == order_id, SalesOrderLine.bundle_sku == sku)
            .order_by(SalesOrderLine.sku)
        ).scalars())

    def register_order(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        actor: ActorContext,
    ) -> list[SalesOrderLine]:
        """Record an OPEN (not yet shipped) order line."""
        return self._upsert_lines(order_id, sku, qty, actor, shipped_at=None)

    def register_shipment(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        shipped_at: datetime,
        actor: ActorContext,
    ) -> list[SalesOrderLine]:
        """
        Mark the line(s) SHIPPED.  Bundles expand into component lines.

        Re-registering an already shipped line is a no-op.
        """
        return self._upsert_lines(order_id, sku, qty, actor, shipped_at=shipped_at)

    def validate_layer_picks(
        self,
        sku: str,
        qty: Decimal,
        layer_picks: Sequence[tuple[UUID, Decimal]],
    ) -> None:
        """Reject picks for a bundle or picks that do not cover ``qty`` exactly."""
        if self._catalog.expand(sku, qty) != [(sku, qty)]:
            raise InvalidQuantityError(
                sku,
                field="layer_picks",
                reason="bundle components are always allocated FIFO",
            )
        check_pick_total(layer_picks, qty)

    def _upsert_lines(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        actor: ActorContext,
        shipped_at: datetime | None,
    ) -> list[SalesOrderLine]:
        if not isinstance(qty, Decimal) or qty <= 0:
            raise InvalidQuantityError(qty)

        expanded = self._catalog.expand(sku, qty)
        is_bundle = len(expanded) > 1 or expanded[0][0] != sku
        lines = []
        for line_sku, line_qty in expanded:
            line = self.get_line(order_id, line_sku, lock=True)
            if line is None:
                line = SalesOrderLine(
                    order_id=order_id,
                    sku=line_sku,
                    qty=line_qty,
                    status=OrderLineStatus.OPEN.value,
                    bundle_sku=sku if is_bundle else None,
                    created_at=self.clock.now(),
                    created_by=actor.actor_id,
                )
                self.session.add(line)
            elif line.status == OrderLineStatus.CANCELLED.value:
                raise OrderLineCancelledError(order_id, line_sku)
            elif line.qty != line_qty:
                logger.warning("order_line_qty_mismatch", extra={
                    "order_id": order_id,
                    "sku": line_sku,
                    "registered_qty": str(line.qty),
                    "requested_qty": str(line_qty),
                })
            if shipped_at is not None and line.status == OrderLineStatus.OPEN.value:
                line.status = OrderLineStatus.SHIPPED.value
                line.shipped_at = shipped_at
            lines.append(line)
        self._flush("sales_order_line")
        return lines

    # -------------------------------------------------------------------------
    # Costing
    # -------------------------------------------------------------------------

    def cost_line(
        self,
        order_id: str,
        sku: str,
        actor: ActorContext,
        allow_partial: bool = False,
        layer_picks: Sequence[tuple[UUID, Decimal]] | None = None,
    ) -> LineCosting:
        """
        Allocate COGS for a SHIPPED line unless it already carries allocations.

        Raises:
            OrderLineNotFoundError, OrderLineCancelledError,
            InsufficientStockError (no partial mode).
        """
        line = self.get_line(order_id, sku, lock=True)
        if line is None or line.shipped_at is None:
            raise OrderLineNotFoundError(order_id, sku)
        if line.status == OrderLineStatus.CANCELLED.value:
            raise OrderLineCancelledError(order_id, sku)

        if self._ledger.net_allocated_qty(order_id, sku) > 0:
            logger.info("shipment_already_allocated", extra={"order_id": order_id, "sku": sku})
            return LineCosting(order_id, sku, ShipmentStatus.ALREADY_ALLOCATED)

        if layer_picks:
            check_pick_total(layer_picks, line.qty)
            outcome = self._allocator.allocate_specific(
                order_id, sku, layer_picks, line.shipped_at, actor
            )
        else:
            outcome = self._allocator.allocate_and_record(
                order_id=order_id,
                sku=sku,
                qty=line.qty,
                shipped_at=line.shipped_at,
                actor=actor,
                method=AllocationMethod.FIFO,
                allow_partial=allow_partial,
            )
        plan = outcome.plan
        return LineCosting(
            order_id=order_id,
            sku=sku,
            status=ShipmentStatus.PARTIAL if plan.is_partial else ShipmentStatus.SUCCESS,
            group_id=outcome.group_id,
            allocated_qty=plan.total_qty,
            shortfall=plan.shortfall,
            total_cost=plan.total_cost,
            blended_unit_cost=plan.blended_unit_cost,
        )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel_shipment(
        self,
        order_id: str,
        sku: str,
        actor: ActorContext,
        reason: str = "order cancelled",
    ) -> list[ReversalResult]:
        """Reverse every active shipment group of the line(s) and cancel them."""
        lines = self.lines_for(order_id, sku)
        if not lines:
            raise OrderLineNotFoundError(order_id, sku)

        results: list[ReversalResult] = []
        for line in lines:
            if line.status == OrderLineStatus.CANCELLED.value:
                raise OrderLineCancelledError(order_id, line.sku)
            returned = self._returns.net_returned_qty(order_id, line.sku)
            if returned > 0:
                raise OrderLineHasReturnsError(order_id, line.sku, returned)
            for group_id in self._ledger.active_shipment_groups(order_id, line.sku):
                results.append(self._reversal.reverse(group_id, reason, actor))
            line.status = OrderLineStatus.CANCELLED.value
            line.cancelled_at = self.clock.now()
        self._flush("sales_order_line")

        logger.info("shipment_cancelled", extra={
            "order_id": order_id,
            "sku": sku,
            "lines": len(lines),
            "groups_reversed": len(results),
        })
        return results
