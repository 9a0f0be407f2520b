"""
FifoAllocator -- plan, apply and record a FIFO allocation in one transaction.

Responsibility:
    ``allocate`` reads the SKU's candidate layers under row locks, builds a
    plan with the pure FIFO engine and enforces the partial-coverage policy.
    ``allocate_and_record`` then applies the plan to the locked layers and
    writes the ledger rows, all inside the caller's transaction.

Architecture position:
    Services -- imperative shell around ``costing_engines.fifo``.  Uses
    LayerStore for every layer mutation and CogsLedger for every row.

Invariants enforced:
    ATOMIC_APPLY -- select candidates, compute plan, decrement layers and
        insert rows happen in one transaction; the plan is computed only
        from rows locked by that same transaction.
    FIFO_ORDER -- delegated to ``plan_fifo``.
    Optimistic check -- every decremented layer carries a version; a
        concurrent writer makes the flush fail with OptimisticLockError and
        the whole operation is retried by the caller.

Failure modes:
    - InvalidQuantityError before any read when qty <= 0.
    - InsufficientStockError (no partial mode) with zero rows written and
      zero layers touched.
    - OptimisticLockError on a lost compare-and-swap.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from costing_engines.fifo import AllocationPlan, LayerSnapshot, plan_fifo, plan_specific
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import AllocationMethod
from costing_kernel.exceptions import InvalidQuantityError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.models.receipt_layer import ReceiptLayer
from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore

logger = get_logger("services.fifo_allocator")


@dataclass(frozen=True)
class AllocationOutcome:
    """Applied plan plus the ledger rows that record it."""

    plan: AllocationPlan
    group_id: UUID | None
    rows: tuple[COGSAllocation, ...]

    @property
    def shortfall(self) -> Decimal:
        return self.plan.shortfall


def _snapshot(layer: ReceiptLayer) -> LayerSnapshot:
    return LayerSnapshot(
        layer_id=layer.id,
        sku=layer.sku,
        received_at=layer.received_at,
        qty_remaining=layer.qty_remaining,
        unit_cost=layer.unit_cost,
    )


class FifoAllocator(BaseService):
    """
    Stateful FIFO allocator over persisted receipt layers.

    Contract:
        Callers own the transaction.  Nothing here commits.

    Guarantees:
        - No layer is decremented unless its ledger row is written in the
          same flush sequence.
        - A raised InsufficientStockError leaves the session untouched.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        layer_store: LayerStore | None = None,
        ledger: CogsLedger | None = None,
        respect_as_of: bool = True,
    ):
        super().__init__(session, clock)
        self._layers = layer_store or LayerStore(session, self.clock)
        self._ledger = ledger or CogsLedger(session, self.clock)
        self._respect_as_of = respect_as_of
        self._locked: dict[UUID, ReceiptLayer] = {}

    def allocate(
        self,
        sku: str,
        qty_needed: Decimal,
        as_of: datetime | None = None,
        allow_partial: bool = False,
    ) -> AllocationPlan:
        """
        Build a FIFO plan from row-locked candidates.

        Raises:
            InvalidQuantityError: qty_needed <= 0.
            InsufficientStockError: shortfall and not ``allow_partial``.
        """
        if not isinstance(qty_needed, Decimal) or qty_needed <= 0:
            raise InvalidQuantityError(qty_needed, field="qty_needed")

        cutoff = as_of if self._respect_as_of else None
        candidates = self._layers.lock_candidates(sku, as_of=cutoff)
        self._locked.update({layer.id: layer for layer in candidates})

        plan = plan_fifo(sku, qty_needed, [_snapshot(layer) for layer in candidates], cutoff)
        logger.info("allocation_planned", extra={
            "sku": sku,
            "requested_qty": str(qty_needed),
            "candidate_layers": len(candidates),
            "layers_touched": len(plan.lines),
            "shortfall": str(plan.shortfall),
            "as_of": cutoff,
        })
        if plan.is_partial and not allow_partial:
            logger.warning("allocation_insufficient_stock", extra={
                "sku": sku,
                "requested_qty": str(qty_needed),
                "available_qty": str(plan.total_qty),
                "shortfall": str(plan.shortfall),
            })
            plan.require_full()
        return plan

    def apply(self, plan: AllocationPlan) -> None:
        """Decrement every layer named by ``plan`` (locked by ``allocate``)."""
        layers = self._locked_layers(line.layer_id for line in plan.lines)
        for line in plan.lines:
            self._layers.decrement(layers[line.layer_id], line.qty_taken)
        logger.debug("layers_decremented", extra={
            "sku": plan.sku,
            "layers": [str(line.layer_id) for line in plan.lines],
        })

    def allocate_and_record(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        shipped_at: datetime,
        actor: ActorContext,
        method: AllocationMethod = AllocationMethod.FIFO,
        allow_partial: bool = False,
    ) -> AllocationOutcome:
        """
        Allocate ``qty`` as of ``shipped_at`` and record the rows.

        With ``allow_partial`` an uncovered remainder is reported as the
        outcome's shortfall; an empty plan writes no rows.
        """
        t0 = time.monotonic()
        plan = self.allocate(sku, qty, as_of=shipped_at, allow_partial=allow_partial)
        outcome = self._apply_and_record(order_id, sku, shipped_at, plan, method, actor)
        logger.info("allocation_recorded", extra={
            "order_id": order_id,
            "sku": sku,
            "method": method.value,
            "qty": str(plan.total_qty),
            "shortfall": str(plan.shortfall),
            "blended_unit_cost": plan.blended_unit_cost,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return outcome

    def allocate_specific(
        self,
        order_id: str,
        sku: str,
        picks: Sequence[tuple[UUID, Decimal]],
        shipped_at: datetime,
        actor: ActorContext,
    ) -> AllocationOutcome:
        """Consume exactly the named layers and record MANUAL rows."""
        layers = self._layers.lock_layers(layer_id for layer_id, _ in picks)
        usable = [layer for layer in layers.values() if not layer.is_voided]
        self._locked.update({layer.id: layer for layer in usable})
        plan = plan_specific(sku, picks, [_snapshot(layer) for layer in usable])
        return self._apply_and_record(
            order_id, sku, shipped_at, plan, AllocationMethod.MANUAL, actor
        )

    def _apply_and_record(
        self,
        order_id: str,
        sku: str,
        shipped_at: datetime,
        plan: AllocationPlan,
        method: AllocationMethod,
        actor: ActorContext,
    ) -> AllocationOutcome:
        if plan.is_empty:
            return AllocationOutcome(plan=plan, group_id=None, rows=())
        self.apply(plan)
        group_id = uuid4()
        rows = self._ledger.record_allocation(
            order_id=order_id,
            sku=sku,
            shipped_at=shipped_at,
            plan=plan,
            method=method,
            actor=actor,
            group_id=group_id,
        )
        return AllocationOutcome(plan=plan, group_id=group_id, rows=tuple(rows))

    def _locked_layers(self, layer_ids) -> dict[UUID, ReceiptLayer]:
        ids = set(layer_ids)
        missing = ids - self._locked.keys()
        if missing:
            # Plans built elsewhere are re-validated against fresh locks
            self._locked.update(self._layers.lock_layers(missing))
        return {layer_id: self._locked[layer_id] for layer_id in ids}
