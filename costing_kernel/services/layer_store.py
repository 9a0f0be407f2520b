"""
LayerStore -- the only writer of receipt layers.

Responsibility:
    Create receipt layers, read them under row locks in FIFO order, apply
    quantity deltas with bound checks, and void untouched layers.

Architecture position:
    Kernel > Services.  Used by FifoAllocator (decrement), ReversalService
    (increment / decrement for mirrors) and the return and backfill flows
    (layer creation).

Invariants enforced:
    LAYER_BOUND -- every delta is checked before it is written: a decrement
        below zero or an increment above qty_received raises ConsistencyError,
        logged with the layer id and attempted delta.  Nothing is clamped.
    FIFO_ORDER -- lock_candidates() orders by (received_at, id).

Failure modes:
    - InvalidQuantityError for non-positive qty or negative unit cost.
    - LayerNotFoundError for an unknown id.
    - LayerNotVoidableError when a void is requested on a consumed or
      referenced layer.
    - ConsistencyError on a bound violation (defect, never retried).
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import RefType
from costing_kernel.exceptions import (
    ConsistencyError,
    InvalidQuantityError,
    LayerNotFoundError,
    LayerNotVoidableError,
    LayerVoidedError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.models.receipt_layer import ReceiptLayer
from costing_kernel.services.base import BaseService

logger = get_logger("services.layer_store")


class LayerStore(BaseService):
    """
    Append-only store of receipt layers with guarded quantity mutation.

    Contract:
        qty_remaining changes only through ``decrement`` / ``increment``.

    Guarantees:
        - 0 <= qty_remaining <= qty_received after every call.
        - Candidate reads take SELECT ... FOR UPDATE row locks.
    """

    def create_layer(
        self,
        sku: str,
        qty: Decimal,
        unit_cost: Decimal,
        received_at: datetime,
        ref_type: RefType,
        actor: ActorContext,
        ref_id: str | None = None,
        note: str | None = None,
    ) -> ReceiptLayer:
        """Insert a new, full layer (qty_remaining == qty_received)."""
        if qty <= 0:
            raise InvalidQuantityError(qty)
        if unit_cost < 0:
            raise InvalidQuantityError(unit_cost, field="unit_cost")

        layer = ReceiptLayer(
            sku=sku,
            received_at=received_at,
            qty_received=qty,
            qty_remaining=qty,
            unit_cost=unit_cost,
            ref_type=ref_type.value,
            ref_id=ref_id,
            note=note,
            is_voided=False,
            created_at=self.clock.now(),
            created_by=actor.actor_id,
        )
        self.session.add(layer)
        self._flush()

        logger.info("receipt_layer_created", extra={
            "layer_id": str(layer.id),
            "sku": sku,
            "qty": str(qty),
            "unit_cost": str(unit_cost),
            "ref_type": ref_type.value,
            "ref_id": ref_id,
        })
        return layer

    def get(self, layer_id: UUID, lock: bool = False) -> ReceiptLayer:
        stmt = select(ReceiptLayer).where(ReceiptLayer.id == layer_id)
        if lock:
            stmt = stmt.with_for_update()
        layer = self.session.execute(stmt).scalar_one_or_none()
        if layer is None:
            raise LayerNotFoundError(str(layer_id))
        return layer

    def lock_candidates(self, sku: str, as_of: datetime | None = None) -> list[ReceiptLayer]:
        """Non-voided layers of ``sku`` with stock, oldest first, row-locked."""
        stmt = (
            select(ReceiptLayer)
            .where(
                ReceiptLayer.sku == sku,
                ReceiptLayer.is_voided.is_(False),
                ReceiptLayer.qty_remaining > 0,
            )
            .order_by(ReceiptLayer.received_at, ReceiptLayer.id)
            .with_for_update()
        )
        if as_of is not None:
            stmt = stmt.where(ReceiptLayer.received_at <= as_of)
        return list(self.session.execute(stmt).scalars())

    def lock_layers(self, layer_ids: Iterable[UUID]) -> dict[UUID, ReceiptLayer]:
        """Row-lock a set of layers by id (ordered by id to avoid deadlocks)."""
        ids = sorted(set(layer_ids), key=str)
        if not ids:
            return {}
        stmt = (
            select(ReceiptLayer)
            .where(ReceiptLayer.id.in_(ids))
            .order_by(ReceiptLayer.id)
            .with_for_update()
        )
        layers = {layer.id: layer for layer in self.session.execute(stmt).scalars()}
        missing = [i for i in ids if i not in layers]
        if missing:
            raise LayerNotFoundError(str(missing[0]))
        return layers

    def decrement(self, layer: ReceiptLayer, qty: Decimal) -> None:
        if layer.is_voided:
            raise LayerVoidedError(str(layer.id))
        new_remaining = layer.qty_remaining - qty
        if qty <= 0 or new_remaining < 0:
            self._violation(layer, -qty, "decrement would drive qty_remaining below zero")
        layer.qty_remaining = new_remaining

    def increment(self, layer: ReceiptLayer, qty: Decimal) -> None:
        new_remaining = layer.qty_remaining + qty
        if qty <= 0 or new_remaining > layer.qty_received:
            self._violation(layer, qty, "increment would exceed qty_received")
        layer.qty_remaining = new_remaining

    def apply_delta(self, layer: ReceiptLayer, delta: Decimal) -> None:
        if delta > 0:
            self.increment(layer, delta)
        elif delta < 0:
            self.decrement(layer, -delta)

    def _violation(self, layer: ReceiptLayer, delta: Decimal, message: str) -> None:
        logger.error("consistency_violation", extra={
            "layer_id": str(layer.id),
            "sku": layer.sku,
            "attempted_delta": str(delta),
            "qty_remaining": str(layer.qty_remaining),
            "qty_received": str(layer.qty_received),
            "reason": message,
        })
        raise ConsistencyError(
            f"Layer {layer.id}: {message} "
            f"(remaining={layer.qty_remaining}, received={layer.qty_received}, delta={delta})",
            layer_id=str(layer.id),
            attempted_delta=delta,
            qty_remaining=layer.qty_remaining,
            qty_received=layer.qty_received,
        )

    def void(self, layer_id: UUID, reason: str, actor: ActorContext) -> ReceiptLayer:
        """
        Void an untouched layer.

        Allowed only while qty_remaining == qty_received and no ledger row
        references the layer.  A voided layer keeps its quantities and is
        excluded from every future allocation.
        """
        layer = self.get(layer_id, lock=True)
        if layer.is_voided:
            raise LayerNotVoidableError(str(layer_id), "already voided")
        if not layer.is_untouched:
            raise LayerNotVoidableError(
                str(layer_id),
                f"{layer.qty_consumed} of {layer.qty_received} already consumed",
            )
        if self.reference_count(layer_id) > 0:
            raise LayerNotVoidableError(str(layer_id), "referenced by COGS allocations")
        self.mark_voided(layer, reason, actor)
        return layer

    def mark_voided(self, layer: ReceiptLayer, reason: str, actor: ActorContext) -> None:
        """Flag a full layer as voided without the reference check."""
        if not layer.is_untouched:
            self._violation(layer, Decimal("0"), "cannot void a layer with consumed stock")
        layer.is_voided = True
        layer.voided_at = self.clock.now()
        layer.voided_by = actor.actor_id
        layer.void_reason = reason
        self._flush()
        logger.info("receipt_layer_voided", extra={
            "layer_id": str(layer.id),
            "sku": layer.sku,
            "reason": reason,
        })

    def reference_count(self, layer_id: UUID) -> int:
        return self.session.execute(
            select(func.count(COGSAllocation.id)).where(COGSAllocation.layer_id == layer_id)
        ).scalar_one()

    def find_return_layer(self, return_id: UUID) -> ReceiptLayer | None:
        """The RETURN or BACKFILL layer created for a return, if any."""
        return self.session.execute(
            select(ReceiptLayer)
            .where(
                ReceiptLayer.ref_id == str(return_id),
                ReceiptLayer.ref_type.in_([RefType.RETURN.value, RefType.BACKFILL.value]),
            )
            .order_by(ReceiptLayer.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def latest_unit_cost(self, sku: str, as_of: datetime | None = None) -> Decimal | None:
        """Unit cost of the most recently received non-voided layer of ``sku``."""
        stmt = (
            select(ReceiptLayer.unit_cost)
            .where(ReceiptLayer.sku == sku, ReceiptLayer.is_voided.is_(False))
            .order_by(ReceiptLayer.received_at.desc(), ReceiptLayer.id.desc())
            .limit(1)
        )
        if as_of is not None:
            stmt = stmt.where(ReceiptLayer.received_at <= as_of)
        return self.session.execute(stmt).scalar_one_or_none()
