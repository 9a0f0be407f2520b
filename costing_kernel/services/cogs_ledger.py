"""
CogsLedger -- append-only writer and group reader for COGS allocation rows.

Responsibility:
    Record the rows describing an applied allocation plan (one row per layer
    touched, at that layer's own unit cost), record return credits, and
    answer group-level questions the reversal, return and backfill flows
    need: which groups are active, what is net allocated, what was credited.

Architecture position:
    Kernel > Services.  Writes COGSAllocation rows only; layer mutation is
    done by LayerStore inside the same transaction.

Invariants enforced:
    APPEND_ONLY_LEDGER -- no method updates or deletes a row.
    unit_cost_used is copied from the plan line (the layer's cost), never
    blended, so a mirror can restore exactly what was taken.

Failure modes:
    - InvalidQuantityError if a plan line or credit has qty <= 0.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID, uuid4

from sqlalchemy import case, func, select
from sqlalchemy.orm import aliased

from costing_kernel.db.types import ZERO
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import AllocationMethod
from costing_kernel.exceptions import InvalidQuantityError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.services.base import BaseService

logger = get_logger("services.cogs_ledger")


class PlanLineLike(Protocol):
    layer_id: UUID
    qty_taken: Decimal
    unit_cost: Decimal


class PlanLike(Protocol):
    lines: tuple[PlanLineLike, ...]


class CogsLedger(BaseService):
    """
    Append-only COGS allocation ledger.

    Guarantees:
        - Every row written by one call shares one ``group_id``.
        - Net cost of an order/sku is the plain sum of ``amount``
          (mirror and credit rows carry negative amounts).
    """

    def record_allocation(
        self,
        order_id: str,
        sku: str,
        shipped_at: datetime,
        plan: PlanLike,
        method: AllocationMethod,
        actor: ActorContext,
        group_id: UUID | None = None,
    ) -> list[COGSAllocation]:
        """One immutable row per plan line, at that layer's unit cost."""
        group_id = group_id or uuid4()
        now = self.clock.now()
        rows: list[COGSAllocation] = []
        for line in plan.lines:
            if line.qty_taken <= 0:
                raise InvalidQuantityError(line.qty_taken, field="qty_taken")
            row = COGSAllocation(
                order_id=order_id,
                sku=sku,
                shipped_at=shipped_at,
                method=method.value,
                qty=line.qty_taken,
                unit_cost_used=line.unit_cost,
                amount=line.qty_taken * line.unit_cost,
                is_reversal=False,
                layer_id=line.layer_id,
                group_id=group_id,
                created_at=now,
                created_by=actor.actor_id,
            )
            self.session.add(row)
            rows.append(row)
        self._flush()

        logger.info("cogs_allocation_recorded", extra={
            "order_id": order_id,
            "sku": sku,
            "group_id": str(group_id),
            "method": method.value,
            "rows": len(rows),
            "total_amount": str(sum((r.amount for r in rows), ZERO)),
        })
        return rows

    def record_return_credit(
        self,
        order_id: str,
        sku: str,
        returned_at: datetime,
        qty: Decimal,
        unit_cost: Decimal,
        return_id: UUID,
        method: AllocationMethod,
        actor: ActorContext,
    ) -> COGSAllocation:
        """
        Credit COGS for returned units.

        The credit carries no layer: the stock itself re-enters inventory
        through the return's own receipt layer.
        """
        if qty <= 0:
            raise InvalidQuantityError(qty)
        row = COGSAllocation(
            order_id=order_id,
            sku=sku,
            shipped_at=returned_at,
            method=method.value,
            qty=qty,
            unit_cost_used=unit_cost,
            amount=-(qty * unit_cost),
            is_reversal=True,
            layer_id=None,
            group_id=uuid4(),
            return_id=return_id,
            reason="return received",
            created_at=self.clock.now(),
            created_by=actor.actor_id,
        )
        self.session.add(row)
        self._flush()
        logger.info("cogs_return_credit_recorded", extra={
            "order_id": order_id,
            "sku": sku,
            "return_id": str(return_id),
            "qty": str(qty),
            "unit_cost": str(unit_cost),
        })
        return row

    # -------------------------------------------------------------------------
    # Group queries
    # -------------------------------------------------------------------------

    def rows_for_group(self, group_id: UUID, lock: bool = False) -> list[COGSAllocation]:
        stmt = (
            select(COGSAllocation)
            .where(COGSAllocation.group_id == group_id)
            .order_by(COGSAllocation.created_at, COGSAllocation.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars())

    def mirrored_row_ids(self, row_ids: Iterable[UUID]) -> set[UUID]:
        """Subset of ``row_ids`` that already have a mirror row."""
        ids = list(row_ids)
        if not ids:
            return set()
        return set(self.session.execute(
            select(COGSAllocation.reversal_of_id).where(COGSAllocation.reversal_of_id.in_(ids))
        ).scalars())

    def _active_originals(self):
        """Rows that are not mirrors and have not been mirrored."""
        mirror = aliased(COGSAllocation)
        return (
            select(COGSAllocation)
            .outerjoin(mirror, mirror.reversal_of_id == COGSAllocation.id)
            .where(mirror.id.is_(None), COGSAllocation.reversal_of_id.is_(None))
        )

    def active_shipment_groups(self, order_id: str, sku: str) -> list[UUID]:
        """Un-reversed shipment groups of an order line, oldest first."""
        stmt = self._active_originals().where(
            COGSAllocation.order_id == order_id,
            COGSAllocation.sku == sku,
            COGSAllocation.is_reversal.is_(False),
            COGSAllocation.return_id.is_(None),
        ).order_by(COGSAllocation.created_at, COGSAllocation.id)
        seen: dict[UUID, None] = {}
        for row in self.session.execute(stmt).scalars():
            seen.setdefault(row.group_id, None)
        return list(seen)

    def active_shipment_rows(self, order_id: str, sku: str) -> list[COGSAllocation]:
        stmt = self._active_originals().where(
            COGSAllocation.order_id == order_id,
            COGSAllocation.sku == sku,
            COGSAllocation.is_reversal.is_(False),
            COGSAllocation.return_id.is_(None),
        ).order_by(COGSAllocation.created_at, COGSAllocation.id)
        return list(self.session.execute(stmt).scalars())

    def active_credit_rows(self, return_id: UUID) -> list[COGSAllocation]:
        stmt = self._active_originals().where(
            COGSAllocation.return_id == return_id,
            COGSAllocation.is_reversal.is_(True),
        )
        return list(self.session.execute(stmt).scalars())

    def net_allocated_qty(self, order_id: str, sku: str) -> Decimal:
        """Shipped quantity currently carried by layer-backed rows."""
        signed = case(
            (COGSAllocation.is_reversal.is_(True), -COGSAllocation.qty),
            else_=COGSAllocation.qty,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                COGSAllocation.order_id == order_id,
                COGSAllocation.sku == sku,
                COGSAllocation.layer_id.is_not(None),
                COGSAllocation.return_id.is_(None),
            )
        ).scalar_one()
        return _as_decimal(total)

    def credited_qty(self, order_id: str, sku: str) -> Decimal:
        """Quantity of active (un-mirrored) return credits on an order line."""
        rows = self.session.execute(
            self._active_originals().where(
                COGSAllocation.order_id == order_id,
                COGSAllocation.sku == sku,
                COGSAllocation.return_id.is_not(None),
                COGSAllocation.is_reversal.is_(True),
            )
        ).scalars()
        return sum((row.qty for row in rows), ZERO)

    def consumer_groups_of_layer(self, layer_id: UUID) -> list[UUID]:
        """Active shipment groups that drew stock from ``layer_id``."""
        stmt = self._active_originals().where(
            COGSAllocation.layer_id == layer_id,
            COGSAllocation.is_reversal.is_(False),
        ).order_by(COGSAllocation.created_at, COGSAllocation.id)
        seen: dict[UUID, None] = {}
        for row in self.session.execute(stmt).scalars():
            seen.setdefault(row.group_id, None)
        return list(seen)

    def layer_ledger_net(self, layer_id: UUID) -> Decimal:
        """Σ qty of debiting rows minus Σ qty of crediting rows on a layer."""
        signed = case(
            (COGSAllocation.is_reversal.is_(True), -COGSAllocation.qty),
            else_=COGSAllocation.qty,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                COGSAllocation.layer_id == layer_id
            )
        ).scalar_one()
        return _as_decimal(total)


def _as_decimal(value: object) -> Decimal:
    # Aggregates come back as Decimal, int or (on SQLite) float
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
