"""
LayerSelector -- read view over receipt layers.

Serves ``receiptLayers(sku?, date_range?)`` for audit and reporting, plus
the per-layer ledger consistency check used by integrity verification.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select

from costing_kernel.domain.values import DateRange
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.models.receipt_layer import ReceiptLayer
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ReceiptLayerDTO:
    """Data transfer object for a receipt layer."""

    id: UUID
    sku: str
    received_at: datetime
    qty_received: Decimal
    qty_remaining: Decimal
    unit_cost: Decimal
    ref_type: str
    ref_id: str | None
    is_voided: bool
    void_reason: str | None
    version: int

    @property
    def qty_consumed(self) -> Decimal:
        return self.qty_received - self.qty_remaining

    @property
    def remaining_value(self) -> Decimal:
        return self.qty_remaining * self.unit_cost


@dataclass(frozen=True)
class LayerConsistencyDTO:
    """Layer quantity movement compared with the ledger rows that explain it."""

    layer_id: UUID
    sku: str
    qty_consumed: Decimal
    ledger_net_qty: Decimal

    @property
    def is_consistent(self) -> bool:
        return self.qty_consumed == self.ledger_net_qty

    @property
    def discrepancy(self) -> Decimal:
        return self.qty_consumed - self.ledger_net_qty


class LayerSelector(BaseSelector):
    """Read-only queries over receipt_layers."""

    @staticmethod
    def _to_dto(layer: ReceiptLayer) -> ReceiptLayerDTO:
        return ReceiptLayerDTO(
            id=layer.id,
            sku=layer.sku,
            received_at=layer.received_at,
            qty_received=layer.qty_received,
            qty_remaining=layer.qty_remaining,
            unit_cost=layer.unit_cost,
            ref_type=layer.ref_type,
            ref_id=layer.ref_id,
            is_voided=layer.is_voided,
            void_reason=layer.void_reason,
            version=layer.version,
        )

    def get(self, layer_id: UUID) -> ReceiptLayerDTO | None:
        layer = self.session.get(ReceiptLayer, layer_id)
        return None if layer is None else self._to_dto(layer)

    def receipt_layers(
        self,
        sku: str | None = None,
        date_range: DateRange | None = None,
        include_voided: bool = True,
    ) -> list[ReceiptLayerDTO]:
        """Layers filtered by SKU and receipt window, in FIFO order."""
        stmt = select(ReceiptLayer).order_by(
            ReceiptLayer.sku, ReceiptLayer.received_at, ReceiptLayer.id
        )
        if sku is not None:
            stmt = stmt.where(ReceiptLayer.sku == sku)
        if date_range is not None:
            stmt = stmt.where(
                ReceiptLayer.received_at >= date_range.start,
                ReceiptLayer.received_at < date_range.end,
            )
        if not include_voided:
            stmt = stmt.where(ReceiptLayer.is_voided.is_(False))
        return [self._to_dto(layer) for layer in self.session.execute(stmt).scalars()]

    def available_qty(self, sku: str, as_of: datetime | None = None) -> Decimal:
        stmt = select(func.coalesce(func.sum(ReceiptLayer.qty_remaining), 0)).where(
            ReceiptLayer.sku == sku,
            ReceiptLayer.is_voided.is_(False),
        )
        if as_of is not None:
            stmt = stmt.where(ReceiptLayer.received_at <= as_of)
        value = self.session.execute(stmt).scalar_one()
        return value if isinstance(value, Decimal) else Decimal(str(value))

    def consistency_report(self, sku: str | None = None) -> list[LayerConsistencyDTO]:
        """
        Compare each layer's consumed quantity with its ledger rows.

        qty_received - qty_remaining must equal the qty of debiting rows
        minus the qty of crediting rows.  Returned for every layer so
        callers can filter on ``is_consistent``.
        """
        signed = case(
            (COGSAllocation.is_reversal.is_(True), -COGSAllocation.qty),
            else_=COGSAllocation.qty,
        )
        net = (
            select(
                COGSAllocation.layer_id.label("layer_id"),
                func.sum(signed).label("net_qty"),
            )
            .where(COGSAllocation.layer_id.is_not(None))
            .group_by(COGSAllocation.layer_id)
            .subquery()
        )
        stmt = (
            select(ReceiptLayer, net.c.net_qty)
            .outerjoin(net, net.c.layer_id == ReceiptLayer.id)
            .order_by(ReceiptLayer.sku, ReceiptLayer.received_at, ReceiptLayer.id)
        )
        if sku is not None:
            stmt = stmt.where(ReceiptLayer.sku == sku)

        report = []
        for layer, net_qty in self.session.execute(stmt):
            ledger_net = Decimal("0") if net_qty is None else Decimal(str(net_qty))
            report.append(LayerConsistencyDTO(
                layer_id=layer.id,
                sku=layer.sku,
                qty_consumed=layer.qty_received - layer.qty_remaining,
                ledger_net_qty=ledger_net,
            ))
        return report
