"""
Module: costing_kernel.models.cogs_allocation
Responsibility: ORM persistence for the append-only COGS allocation ledger.
    One row per (order, sku, layer) touched by a shipment, plus credit rows
    for returns and mirror rows for reversals.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    APPEND_ONLY_LEDGER -- rows are written once; no service updates them.
    SINGLE_REVERSAL    -- UNIQUE(reversal_of_id): a row can be mirrored at
                          most once, even under concurrent reversal attempts.
    qty > 0 and unit_cost_used >= 0 (CHECK).  The direction of a row is
    carried by ``is_reversal`` and the sign of ``amount``.

Failure modes:
    - IntegrityError on a second mirror of the same row; ReversalService
      maps it to AlreadyReversedError.

Audit relevance:
    ``group_id`` ties together every row written by one operation, so a
    shipment, a return credit or a reversal can be read (and reversed) as a
    unit.  ``unit_cost_used`` is the consumed layer's own cost, never a
    blended figure, so a mirror can restore exactly what was taken.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString


class COGSAllocation(Base):
    """
    One immutable COGS ledger row.

    Contract:
        Non-reversal rows with a layer debit that layer; reversal rows with a
        layer credit it.  Rows without a layer (return credits and their
        mirrors) move cost only.

    Guarantees:
        - amount == +qty * unit_cost_used for non-reversal rows and
          -qty * unit_cost_used for reversal rows.
        - reversal_of_id is unique.
    """

    __tablename__ = "cogs_allocations"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_cogs_allocations_qty_positive"),
        CheckConstraint("unit_cost_used >= 0", name="ck_cogs_allocations_unit_cost"),
        CheckConstraint(
            "method IN ('FIFO', 'MANUAL', 'BACKFILL')",
            name="ck_cogs_allocations_method",
        ),
        UniqueConstraint("reversal_of_id", name="uq_cogs_allocations_reversal_of"),
        Index("idx_cogs_allocations_order_sku", "order_id", "sku"),
        Index("idx_cogs_allocations_layer", "layer_id"),
        Index("idx_cogs_allocations_group", "group_id"),
        Index("idx_cogs_allocations_shipped_at", "shipped_at"),
        Index("idx_cogs_allocations_return", "return_id"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    shipped_at: Mapped[datetime] = mapped_column(nullable=False)

    method: Mapped[str] = mapped_column(String(20), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost_used: Mapped[Decimal] = mapped_column(nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    is_reversal: Mapped[bool] = mapped_column(default=False, nullable=False)

    layer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("receipt_layers.id"),
        nullable=True,
    )

    group_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cogs_allocations.id"),
        nullable=True,
    )

    return_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("return_records.id"),
        nullable=True,
    )

    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    @property
    def is_mirror(self) -> bool:
        return self.reversal_of_id is not None

    @property
    def layer_delta(self) -> Decimal:
        """Signed effect on the referenced layer's qty_remaining."""
        if self.layer_id is None:
            return Decimal("0")
        return self.qty if self.is_reversal else -self.qty

    def __repr__(self) -> str:
        kind = "REV" if self.is_reversal else "ALLOC"
        return (
            f"<COGSAllocation {self.id} {kind}: {self.order_id}/{self.sku} "
            f"{self.qty} @ {self.unit_cost_used} layer={self.layer_id}>"
        )
