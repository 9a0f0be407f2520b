"""
Module: costing_kernel.models.receipt_layer
Responsibility: ORM persistence for FIFO receipt layers -- one inbound batch
    of stock for one SKU with its remaining quantity.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    LAYER_BOUND -- CHECK constraints keep 0 <= qty_remaining <= qty_received
                   and unit_cost >= 0 at the database level.
    FIFO_ORDER  -- (sku, received_at, id) index serves the oldest-first scan.
    Optimistic concurrency -- ``version`` is SQLAlchemy's version_id_col; an
                   UPDATE against a stale version matches zero rows and
                   raises StaleDataError at flush.

Failure modes:
    - IntegrityError if a write would break a CHECK constraint (the services
      raise ConsistencyError before this is ever reached).
    - StaleDataError on a concurrent modification of the same layer.

Audit relevance:
    Layers are never deleted.  A fully consumed layer stays with
    qty_remaining = 0; a voided layer keeps its quantities and is only
    excluded from allocation.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString


class ReceiptLayer(Base):
    """
    One inbound batch of stock for one SKU.

    Contract:
        qty_received, unit_cost, received_at and ref_type are fixed at
        creation.  qty_remaining is mutated only by LayerStore on behalf of
        the allocator (decrement) and the reversal engine (increment).

    Guarantees:
        - 0 <= qty_remaining <= qty_received (DB CHECK).
        - ref_id links RETURN / BACKFILL layers to the return that created them.
        - version increments on every UPDATE.

    Non-goals:
        - Does NOT compute FIFO order itself; see FifoAllocator.
    """

    __tablename__ = "receipt_layers"

    __table_args__ = (
        CheckConstraint("qty_received >= 0", name="ck_receipt_layers_qty_received"),
        CheckConstraint("qty_remaining >= 0", name="ck_receipt_layers_qty_remaining_nonneg"),
        CheckConstraint(
            "qty_remaining <= qty_received",
            name="ck_receipt_layers_qty_remaining_bound",
        ),
        CheckConstraint("unit_cost >= 0", name="ck_receipt_layers_unit_cost"),
        CheckConstraint(
            "ref_type IN ('PURCHASE', 'RETURN', 'ADJUSTMENT', 'BACKFILL', 'OPENING_BALANCE')",
            name="ck_receipt_layers_ref_type",
        ),
        # Query: oldest-first scan for a SKU
        Index("idx_receipt_layers_sku_received", "sku", "received_at", "id"),
        # Query: layer created for a given return
        Index("idx_receipt_layers_ref", "ref_type", "ref_id"),
        Index("idx_receipt_layers_received_at", "received_at"),
    )

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    received_at: Mapped[datetime] = mapped_column(nullable=False)

    qty_received: Mapped[Decimal] = mapped_column(nullable=False)

    qty_remaining: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    ref_type: Mapped[str] = mapped_column(String(20), nullable=False)

    ref_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    is_voided: Mapped[bool] = mapped_column(default=False, nullable=False)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def qty_consumed(self) -> Decimal:
        return self.qty_received - self.qty_remaining

    @property
    def is_untouched(self) -> bool:
        return self.qty_remaining == self.qty_received

    def __repr__(self) -> str:
        return (
            f"<ReceiptLayer {self.id}: sku={self.sku} "
            f"{self.qty_remaining}/{self.qty_received} @ {self.unit_cost} ({self.ref_type})>"
        )
