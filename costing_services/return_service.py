"""
ReturnService -- customer returns and their undo.

Responsibility:
    ``submit_return`` validates a return against the order line, records it
    and, for RETURN_RECEIVED, puts the units back on a RETURN layer and
    credits COGS for the part of the line that had been costed.
    ``undo_return`` takes all of that back through the reversal engine.

Architecture position:
    Services.  Composes LayerStore, CogsLedger, ReversalService,
    FifoAllocator and CatalogService.  The caller owns the transaction.

Invariants enforced:
    - Only RETURN_RECEIVED moves inventory.  REFUND_ONLY and
      CANCEL_BEFORE_SHIP are financial records only.
    - A RETURN is undone at most once (pre-check plus
      UNIQUE(reversed_return_id)).
    - Undo never edits a row: every re-credit and debit is a mirror row
      written by ReversalService.

Failure modes:
    - InvalidQuantityError, InvalidReturnError, ReturnExceedsShippedError
      on validation.
    - ReturnNotFoundError, UndoOfUndoError, AlreadyReversedError on undo.
    - InsufficientStockError if displaced shipments cannot be re-allocated
      once the return layer is gone; the whole undo rolls back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from costing_engines.cost_basis import return_cost_basis
from costing_kernel.db.types import ZERO
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import (
    ActionType,
    AllocationMethod,
    OrderLineStatus,
    RefType,
    ReturnType,
)
from costing_kernel.exceptions import (
    AlreadyReversedError,
    InvalidQuantityError,
    InvalidReturnError,
    ReturnExceedsShippedError,
    ReturnNotFoundError,
    UndoOfUndoError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.return_record import ReturnRecord
from costing_kernel.models.sales_order_line import SalesOrderLine
from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore
from costing_kernel.services.reversal_service import ReversalResult, ReversalService
from costing_services.catalog_service import CatalogService
from costing_services.fifo_allocator import FifoAllocator

logger = get_logger("services.returns")


@dataclass(frozen=True)
class CostBasis:
    """Unit cost for returned units and where it came from."""

    unit_cost: Decimal
    source: str  # weighted_original | latest_layer | item_base_cost | zero
    warning: str | None = None


@dataclass(frozen=True)
class ReturnOutcome:
    return_id: UUID
    layer_id: UUID | None = None
    credit_row_id: UUID | None = None
    credited_qty: Decimal = ZERO
    unit_cost: Decimal | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UndoOutcome:
    return_id: UUID
    undo_id: UUID
    reversals: tuple[ReversalResult, ...] = ()
    voided_layer_id: UUID | None = None
    reallocated_group_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class _Displaced:
    order_id: str
    sku: str
    shipped_at: datetime
    qty: Decimal


class ReturnService(BaseService):
    """
    Submits and undoes customer returns.

    Contract:
        Flushes into the caller's transaction; never commits.

    Guarantees:
        - A RETURN_RECEIVED return has exactly one RETURN layer whose
          ``ref_id`` is the return id.
        - After a successful undo the return layer is voided and full, and
          every layer touched by the return's side effects is back where it
          would be had the return never happened (modulo FIFO re-allocation
          of displaced shipments).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        layer_store: LayerStore | None = None,
        ledger: CogsLedger | None = None,
        reversal: ReversalService | None = None,
        allocator: FifoAllocator | None = None,
        catalog: CatalogService | None = None,
    ):
        super().__init__(session, clock)
        self._layers = layer_store or LayerStore(session, self.clock)
        self._ledger = ledger or CogsLedger(session, self.clock)
        self._reversal = reversal or ReversalService(
            session, self.clock, layer_store=self._layers, ledger=self._ledger
        )
        self._allocator = allocator or FifoAllocator(
            session, self.clock, layer_store=self._layers, ledger=self._ledger
        )
        self._catalog = catalog or CatalogService(session, self.clock)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get(self, return_id: UUID, lock: bool = False) -> ReturnRecord:
        stmt = select(ReturnRecord).where(ReturnRecord.id == return_id)
        if lock:
            stmt = stmt.with_for_update()
        record = self.session.execute(stmt).scalar_one_or_none()
        if record is None:
            raise ReturnNotFoundError(str(return_id))
        return record

    def undo_of(self, return_id: UUID) -> ReturnRecord | None:
        return self.session.execute(
            select(ReturnRecord).where(ReturnRecord.reversed_return_id == return_id)
        ).scalar_one_or_none()

    def net_returned_qty(self, order_id: str, sku: str) -> Decimal:
        """Quantity of RETURN records on the line that have not been undone."""
        undo = aliased(ReturnRecord)
        rows = self.session.execute(
            select(ReturnRecord.qty)
            .outerjoin(undo, undo.reversed_return_id == ReturnRecord.id)
            .where(
                ReturnRecord.order_id == order_id,
                ReturnRecord.sku == sku,
                ReturnRecord.action_type == ActionType.RETURN.value,
                undo.id.is_(None),
            )
        ).scalars()
        return sum(rows, ZERO)

    def active_received_returns(
        self, start: datetime, end: datetime
    ) -> list[ReturnRecord]:
        """RETURN_RECEIVED returns in ``[start, end)`` that have not been undone."""
        undo = aliased(ReturnRecord)
        return list(self.session.execute(
            select(ReturnRecord)
            .outerjoin(undo, undo.reversed_return_id == ReturnRecord.id)
            .where(
                ReturnRecord.action_type == ActionType.RETURN.value,
                ReturnRecord.return_type == ReturnType.RETURN_RECEIVED.value,
                ReturnRecord.returned_at >= start,
                ReturnRecord.returned_at < end,
                undo.id.is_(None),
            )
            .order_by(ReturnRecord.returned_at, ReturnRecord.id)
        ).scalars())

    # -------------------------------------------------------------------------
    # Cost basis
    # -------------------------------------------------------------------------

    def cost_basis(self, order_id: str, sku: str, as_of: datetime | None = None) -> CostBasis:
        """
        Weighted original cost of the line's active shipment rows, falling
        back to the latest layer cost, then the item base cost, then zero.
        """
        rows = self._ledger.active_shipment_rows(order_id, sku)
        weighted = return_cost_basis((row.qty, row.amount) for row in rows)
        if weighted is not None:
            return CostBasis(weighted, "weighted_original")
        latest = self._layers.latest_unit_cost(sku, as_of=as_of)
        if latest is not None:
            return CostBasis(latest, "latest_layer")
        base = self._catalog.base_cost(sku)
        if base is not None:
            return CostBasis(base, "item_base_cost")
        warning = f"No cost history for {sku}; returned units valued at 0"
        logger.warning("return_cost_basis_zero", extra={"order_id": order_id, "sku": sku})
        return CostBasis(ZERO, "zero", warning)

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def _line(self, order_id: str, sku: str) -> SalesOrderLine | None:
        return self.session.execute(
            select(SalesOrderLine)
            .where(SalesOrderLine.order_id == order_id, SalesOrderLine.sku == sku)
            .with_for_update()
        ).scalar_one_or_none()

    def _validate(
        self, order_id: str, sku: str, qty: Decimal, return_type: ReturnType
    ) -> None:
        if not isinstance(qty, Decimal) or qty <= 0:
            raise InvalidQuantityError(qty)
        line = self._line(order_id, sku)
        if line is None:
            raise InvalidReturnError(order_id, sku, "no such order line")
        if line.status == OrderLineStatus.CANCELLED.value:
            raise InvalidReturnError(order_id, sku, "order line is cancelled")
        if return_type is ReturnType.CANCEL_BEFORE_SHIP:
            if line.shipped_at is not None:
                raise InvalidReturnError(order_id, sku, "line has already shipped")
        elif line.shipped_at is None:
            raise InvalidReturnError(order_id, sku, "line has not shipped")
        returnable = line.qty - self.net_returned_qty(order_id, sku)
        if qty > returnable:
            raise ReturnExceedsShippedError(order_id, sku, qty, returnable)

    def submit_return(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        return_type: ReturnType,
        actor: ActorContext,
        note: str | None = None,
        returned_at: datetime | None = None,
    ) -> ReturnOutcome:
        """
        Record a return.  RETURN_RECEIVED also creates the RETURN layer and
        a COGS credit for the costed, not yet credited part of the line.
        """
        t0 = time.monotonic()
        self._validate(order_id, sku, qty, return_type)
        returned_at = returned_at or self.clock.now()

        record = ReturnRecord(
            order_id=order_id,
            sku=sku,
            qty=qty,
            return_type=return_type.value,
            action_type=ActionType.RETURN.value,
            returned_at=returned_at,
            note=note,
            created_at=self.clock.now(),
            created_by=actor.actor_id,
        )
        self.session.add(record)
        self._flush("return_record")

        if not return_type.moves_inventory:
            logger.info("return_recorded", extra={
                "return_id": str(record.id),
                "order_id": order_id,
                "sku": sku,
                "qty": str(qty),
                "return_type": return_type.value,
            })
            return ReturnOutcome(return_id=record.id)

        basis = self.cost_basis(order_id, sku, as_of=returned_at)
        record.unit_cost = basis.unit_cost
        layer = self._layers.create_layer(
            sku=sku,
            qty=qty,
            unit_cost=basis.unit_cost,
            received_at=returned_at,
            ref_type=RefType.RETURN,
            actor=actor,
            ref_id=str(record.id),
            note=note,
        )
        credit = self.credit_costed_units(record, basis.unit_cost, actor)

        warnings = (basis.warning,) if basis.warning else ()
        logger.info("return_received", extra={
            "return_id": str(record.id),
            "order_id": order_id,
            "sku": sku,
            "qty": str(qty),
            "layer_id": str(layer.id),
            "unit_cost": str(basis.unit_cost),
            "cost_source": basis.source,
            "credited_qty": str(credit.qty) if credit else "0",
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return ReturnOutcome(
            return_id=record.id,
            layer_id=layer.id,
            credit_row_id=credit.id if credit else None,
            credited_qty=credit.qty if credit else ZERO,
            unit_cost=basis.unit_cost,
            warnings=warnings,
        )

    def credit_costed_units(
        self, record: ReturnRecord, unit_cost: Decimal, actor: ActorContext
    ):
        """
        Credit COGS for min(return qty, net costed qty - already credited).

        Returns the credit row, or None when nothing on the line was costed
        (or everything costed was already credited).
        """
        if self._ledger.active_credit_rows(record.id):
            return None
        costed = self._ledger.net_allocated_qty(record.order_id, record.sku)
        uncredited = costed - self._ledger.credited_qty(record.order_id, record.sku)
        credit_qty = min(record.qty, uncredited)
        if credit_qty <= 0:
            return None
        return self._ledger.record_return_credit(
            order_id=record.order_id,
            sku=record.sku,
            returned_at=record.returned_at,
            qty=credit_qty,
            unit_cost=unit_cost,
            return_id=record.id,
            method=AllocationMethod.FIFO,
            actor=actor,
        )

    # -------------------------------------------------------------------------
    # Undo
    # -------------------------------------------------------------------------

    def undo_return(
        self,
        return_id: UUID,
        actor: ActorContext,
        note: str | None = None,
    ) -> UndoOutcome:
        """
        Undo a RETURN.

        Order of work:
            1. reverse shipment groups that consumed the return layer,
            2. mirror the return's COGS credit,
            3. void the (now full) return layer,
            4. re-allocate the displaced shipments FIFO as of their ship date,
            5. append the UNDO record.
        """
        t0 = time.monotonic()
        record = self.get(return_id, lock=True)
        if record.action_type == ActionType.UNDO.value:
            raise UndoOfUndoError(str(return_id))
        if self.undo_of(return_id) is not None:
            raise AlreadyReversedError(str(return_id), target_type="return_record")

        reason = f"undo of return {return_id}"
        reversals: list[ReversalResult] = []
        voided_layer_id = None
        reallocated: list[UUID] = []

        if ReturnType(record.return_type).moves_inventory:
            layer = self._layers.find_return_layer(return_id)
            displaced: list[_Displaced] = []
            if layer is not None:
                for group_id in self._ledger.consumer_groups_of_layer(layer.id):
                    displaced.append(self._displaced(group_id))
                    reversals.append(self._reversal.reverse(group_id, reason, actor))

            credits = self._ledger.active_credit_rows(return_id)
            for group_id in dict.fromkeys(row.group_id for row in credits):
                reversals.append(self._reversal.reverse(group_id, reason, actor))

            if layer is not None and not layer.is_voided:
                self._layers.mark_voided(layer, reason, actor)
                voided_layer_id = layer.id

            for item in sorted(displaced, key=lambda d: (d.shipped_at, d.order_id, d.sku)):
                outcome = self._allocator.allocate_and_record(
                    order_id=item.order_id,
                    sku=item.sku,
                    qty=item.qty,
                    shipped_at=item.shipped_at,
                    actor=actor,
                )
                reallocated.append(outcome.group_id)

        undo = ReturnRecord(
            order_id=record.order_id,
            sku=record.sku,
            qty=record.qty,
            return_type=record.return_type,
            action_type=ActionType.UNDO.value,
            reversed_return_id=record.id,
            returned_at=self.clock.now(),
            note=note,
            unit_cost=record.unit_cost,
            created_at=self.clock.now(),
            created_by=actor.actor_id,
        )
        self.session.add(undo)
        try:
            self._flush("return_record")
        except IntegrityError as exc:
            if "reversed_return" in str(exc.orig):
                raise AlreadyReversedError(str(return_id), target_type="return_record") from exc
            raise

        logger.info("return_undone", extra={
            "return_id": str(return_id),
            "undo_id": str(undo.id),
            "order_id": record.order_id,
            "sku": record.sku,
            "groups_reversed": len(reversals),
            "voided_layer_id": voided_layer_id,
            "reallocated_groups": len(reallocated),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return UndoOutcome(
            return_id=return_id,
            undo_id=undo.id,
            reversals=tuple(reversals),
            voided_layer_id=voided_layer_id,
            reallocated_group_ids=tuple(reallocated),
        )

    def _displaced(self, group_id: UUID) -> _Displaced:
        rows = self._ledger.rows_for_group(group_id)
        first = rows[0]
        return _Displaced(
            order_id=first.order_id,
            sku=first.sku,
            shipped_at=first.shipped_at,
            qty=sum((row.qty for row in rows), ZERO),
        )
