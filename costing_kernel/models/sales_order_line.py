"""
Module: costing_kernel.models.sales_order_line
Responsibility: The shipped-quantity facts the costing engine needs about
    sales orders: one row per (order, sku) with its quantity, shipment time
    and status.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - UNIQUE(order_id, sku): shipment registration is idempotent.
    - qty > 0 (CHECK).

Audit relevance:
    A SHIPPED line whose net allocated quantity is below ``qty`` is a
    coverage gap.  ``backfilled_at`` marks lines the auditor has repaired.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString


class SalesOrderLine(Base):
    """One SKU line of a sales order, as seen by costing."""

    __tablename__ = "sales_order_lines"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_sales_order_lines_qty_positive"),
        CheckConstraint(
            "status IN ('OPEN', 'SHIPPED', 'CANCELLED')",
            name="ck_sales_order_lines_status",
        ),
        UniqueConstraint("order_id", "sku", name="uq_sales_order_lines_order_sku"),
        Index("idx_sales_order_lines_shipped_at", "shipped_at"),
        Index("idx_sales_order_lines_status", "status"),
    )

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")

    shipped_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Set when the line was produced by expanding a bundle
    bundle_sku: Mapped[str | None] = mapped_column(String(100), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    backfilled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return f"<SalesOrderLine {self.order_id}/{self.sku} qty={self.qty} {self.status}>"
