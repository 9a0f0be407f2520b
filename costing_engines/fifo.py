"""
costing_engines.fifo -- FIFO allocation planning.

Responsibility:
    Turn a set of candidate layer snapshots and a requested quantity into an
    ordered allocation plan: which layers to draw from, how much from each,
    at what per-layer cost, and how much could not be covered.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  May import
    costing_kernel.exceptions, costing_kernel.db.types and the kernel
    logger only.  Locking, re-validation and applying the plan are done by
    costing_services.fifo_allocator.

Invariants enforced:
    - FIFO_ORDER: layers are consumed by (received_at, id) ascending and a
      younger layer is touched only once every older eligible layer is
      exhausted.
    - Never over-draw: qty_taken <= layer.qty_remaining for every line.
    - Shortfall is reported, never silently absorbed.

Failure modes:
    - InvalidQuantityError if qty_needed <= 0.
    - LayerNotFoundError / InsufficientStockError from plan_specific when a
      named layer is missing or too small.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.types import ZERO, round_cost, round_money
from costing_kernel.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    LayerNotFoundError,
)
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.fifo")


@dataclass(frozen=True, slots=True)
class LayerSnapshot:
    """Point-in-time view of a receipt layer, as read under lock."""

    layer_id: UUID
    sku: str
    received_at: datetime
    qty_remaining: Decimal
    unit_cost: Decimal

    @property
    def sort_key(self) -> tuple[datetime, str]:
        # String form matches the DB ordering of the String(36) id column
        return (self.received_at, str(self.layer_id))


@dataclass(frozen=True, slots=True)
class PlanLine:
    """Quantity drawn from one layer at that layer's own unit cost."""

    layer_id: UUID
    qty_taken: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.qty_taken * self.unit_cost


@dataclass(frozen=True, slots=True)
class AllocationPlan:
    """
    Ordered result of a FIFO (or specific-identification) plan.

    Contract:
        ``lines`` is in consumption order.  ``shortfall`` is the part of
        ``requested_qty`` no eligible layer could cover.

    Guarantees:
        - total_qty + shortfall == requested_qty.
        - blended_unit_cost == total_cost / total_qty (None when empty).
    """

    sku: str
    requested_qty: Decimal
    lines: tuple[PlanLine, ...]
    shortfall: Decimal

    @property
    def total_qty(self) -> Decimal:
        return sum((line.qty_taken for line in self.lines), ZERO)

    @property
    def total_cost(self) -> Decimal:
        return sum((line.cost for line in self.lines), ZERO)

    @property
    def blended_unit_cost(self) -> Decimal | None:
        total_qty = self.total_qty
        if total_qty == 0:
            return None
        return round_cost(self.total_cost / total_qty)

    @property
    def blended_unit_cost_display(self) -> Decimal | None:
        """Blended cost rounded to cents for presentation."""
        blended = self.blended_unit_cost
        return None if blended is None else round_money(blended)

    @property
    def is_partial(self) -> bool:
        return self.shortfall > 0

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def available_qty(self) -> Decimal:
        return self.total_qty

    def require_full(self) -> AllocationPlan:
        """Return self, or raise InsufficientStockError if there is a shortfall."""
        if self.is_partial:
            raise InsufficientStockError(
                sku=self.sku,
                requested=self.requested_qty,
                available=self.total_qty,
            )
        return self


def _check_qty(qty: Decimal, field: str = "qty") -> None:
    if not isinstance(qty, Decimal) or not qty.is_finite() or qty <= 0:
        raise InvalidQuantityError(qty, field=field)


def check_pick_total(picks: Sequence[tuple[UUID, Decimal]], qty: Decimal) -> Decimal:
    """Total of ``picks``; they must be positive and add up to ``qty`` exactly."""
    if not picks:
        raise InvalidQuantityError(
            "[]", field="layer_picks", reason="at least one layer pick is required"
        )
    for _, pick_qty in picks:
        _check_qty(pick_qty, "layer_pick_qty")
    picked = sum((pick_qty for _, pick_qty in picks), Decimal("0"))
    if picked != qty:
        raise InvalidQuantityError(
            picked,
            field="layer_picks",
            reason=f"picks must add up to the line quantity {qty}",
        )
    return picked


def eligible_layers(
    layers: Iterable[LayerSnapshot],
    as_of: datetime | None = None,
) -> list[LayerSnapshot]:
    """Filter to layers with stock (and received by ``as_of``) in FIFO order."""
    candidates = [
        layer for layer in layers
        if layer.qty_remaining > 0 and (as_of is None or layer.received_at <= as_of)
    ]
    return sorted(candidates, key=lambda layer: layer.sort_key)


def plan_fifo(
    sku: str,
    qty_needed: Decimal,
    layers: Iterable[LayerSnapshot],
    as_of: datetime | None = None,
) -> AllocationPlan:
    """
    Greedy oldest-first plan for ``qty_needed`` units of ``sku``.

    Zero eligible layers is not an error here; the plan comes back empty
    with the full request as shortfall, and the caller decides.
    """
    _check_qty(qty_needed, "qty_needed")

    remaining = qty_needed
    lines: list[PlanLine] = []
    for layer in eligible_layers(layers, as_of):
        if remaining <= 0:
            break
        if layer.sku != sku:
            continue
        take = min(layer.qty_remaining, remaining)
        lines.append(PlanLine(layer.layer_id, take, layer.unit_cost))
        remaining -= take

    plan = AllocationPlan(
        sku=sku,
        requested_qty=qty_needed,
        lines=tuple(lines),
        shortfall=remaining,
    )
    logger.debug("fifo_plan_computed", extra={
        "sku": sku,
        "requested_qty": str(qty_needed),
        "layers_touched": len(lines),
        "shortfall": str(remaining),
    })
    return plan


def plan_specific(
    sku: str,
    picks: Sequence[tuple[UUID, Decimal]],
    layers: Iterable[LayerSnapshot],
) -> AllocationPlan:
    """
    Plan for explicitly named layers (specific identification).

    Unlike FIFO there is no partial mode: every pick must be fully
    coverable by its layer.
    """
    if not picks:
        raise InvalidQuantityError(
            "[]", field="layer_picks", reason="at least one layer pick is required"
        )

    by_id = {layer.layer_id: layer for layer in layers if layer.sku == sku}
    taken: dict[UUID, Decimal] = {}
    lines: list[PlanLine] = []
    for layer_id, qty in picks:
        _check_qty(qty, "layer_pick_qty")
        layer = by_id.get(layer_id)
        if layer is None:
            raise LayerNotFoundError(str(layer_id))
        already = taken.get(layer_id, ZERO)
        if already + qty > layer.qty_remaining:
            raise InsufficientStockError(
                sku=sku,
                requested=already + qty,
                available=layer.qty_remaining,
            )
        taken[layer_id] = already + qty
        lines.append(PlanLine(layer_id, qty, layer.unit_cost))

    total = sum((qty for _, qty in picks), ZERO)
    return AllocationPlan(sku=sku, requested_qty=total, lines=tuple(lines), shortfall=ZERO)
