"""
Module: costing_kernel.models.inventory_item
Responsibility: Item master rows (fallback base cost, bundle flag) and the
    bundle bill of materials used to expand bundle shipments.
Architecture position: Kernel > Models.  May import from db/ only.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import Base


class InventoryItem(Base):
    """SKU master record."""

    __tablename__ = "inventory_items"

    __table_args__ = (
        CheckConstraint(
            "base_cost_per_unit IS NULL OR base_cost_per_unit >= 0",
            name="ck_inventory_items_base_cost",
        ),
    )

    sku: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    name: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # Last-resort cost when no layer or allocation history exists
    base_cost_per_unit: Mapped[Decimal | None] = mapped_column(nullable=True)

    is_bundle: Mapped[bool] = mapped_column(default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    components: Mapped[list[BundleComponent]] = relationship(
        "BundleComponent",
        primaryjoin="InventoryItem.sku == BundleComponent.bundle_sku",
        foreign_keys="BundleComponent.bundle_sku",
        order_by="BundleComponent.component_sku",
        lazy="selectin",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<InventoryItem {self.sku} bundle={self.is_bundle}>"


class BundleComponent(Base):
    """One component line of a bundle SKU."""

    __tablename__ = "bundle_components"

    __table_args__ = (
        CheckConstraint("qty_per_bundle > 0", name="ck_bundle_components_qty"),
        UniqueConstraint("bundle_sku", "component_sku", name="uq_bundle_components_pair"),
        Index("idx_bundle_components_bundle", "bundle_sku"),
    )

    bundle_sku: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("inventory_items.sku"),
        nullable=False,
    )

    component_sku: Mapped[str] = mapped_column(String(100), nullable=False)

    qty_per_bundle: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<BundleComponent {self.bundle_sku} -> {self.component_sku} x{self.qty_per_bundle}>"
