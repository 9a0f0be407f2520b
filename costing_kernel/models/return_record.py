"""
Module: costing_kernel.models.return_record
Responsibility: ORM persistence for customer return events and their undo
    records.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - An UNDO row references the RETURN it reverses (CHECK on action_type /
      reversed_return_id pairing).
    - UNIQUE(reversed_return_id): a RETURN is undone at most once.
    - qty > 0 (CHECK).

Audit relevance:
    Undo never mutates the original row; it appends an UNDO row.  The
    ``backfilled_at`` marker records that the coverage auditor synthesized
    the return's layer.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString


class ReturnRecord(Base):
    """
    A customer return (RETURN) or the reversal of one (UNDO).

    Guarantees:
        - action_type = UNDO  <=>  reversed_return_id IS NOT NULL.
        - At most one UNDO per RETURN.
    """

    __tablename__ = "return_records"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_return_records_qty_positive"),
        CheckConstraint(
            "return_type IN ('RETURN_RECEIVED', 'REFUND_ONLY', 'CANCEL_BEFORE_SHIP')",
            name="ck_return_records_return_type",
        ),
        CheckConstraint(
            "(action_type = 'RETURN' AND reversed_return_id IS NULL) OR "
            "(action_type = 'UNDO' AND reversed_return_id IS NOT NULL)",
            name="ck_return_records_undo_link",
        ),
        UniqueConstraint("reversed_return_id", name="uq_return_records_reversed_return"),
        Index("idx_return_records_order_sku", "order_id", "sku"),
        Index("idx_return_records_returned_at", "returned_at"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    return_type: Mapped[str] = mapped_column(String(30), nullable=False)

    action_type: Mapped[str] = mapped_column(String(10), nullable=False)

    reversed_return_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("return_records.id"),
        nullable=True,
    )

    returned_at: Mapped[datetime] = mapped_column(nullable=False)

    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Cost basis used for the RETURN / BACKFILL layer
    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)

    backfilled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ReturnRecord {self.id} {self.action_type}/{self.return_type}: "
            f"{self.order_id}/{self.sku} qty={self.qty}>"
        )
