"""
CatalogService -- item master and bundle bill of materials.

Provides the fallback base cost for SKUs without cost history and the
component expansion used when a bundle SKU ships.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from sqlalchemy import delete, select

from costing_kernel.exceptions import InvalidQuantityError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.inventory_item import BundleComponent, InventoryItem
from costing_kernel.services.base import BaseService

logger = get_logger("services.catalog")


class CatalogService(BaseService):
    """Upserts and lookups over inventory_items / bundle_components."""

    def get_item(self, sku: str) -> InventoryItem | None:
        return self.session.execute(
            select(InventoryItem).where(InventoryItem.sku == sku)
        ).scalar_one_or_none()

    def upsert_item(
        self,
        sku: str,
        name: str | None = None,
        base_cost_per_unit: Decimal | None = None,
        is_bundle: bool | None = None,
    ) -> InventoryItem:
        """Create or update an item; arguments left as None keep their value."""
        if base_cost_per_unit is not None and base_cost_per_unit < 0:
            raise InvalidQuantityError(base_cost_per_unit, field="base_cost_per_unit")
        item = self.get_item(sku)
        if item is None:
            item = InventoryItem(sku=sku, is_bundle=False, created_at=self.clock.now())
            self.session.add(item)
        if name is not None:
            item.name = name
        if base_cost_per_unit is not None:
            item.base_cost_per_unit = base_cost_per_unit
        if is_bundle is not None:
            item.is_bundle = is_bundle
        self._flush("inventory_item")
        return item

    def set_bundle_components(
        self,
        bundle_sku: str,
        components: Sequence[tuple[str, Decimal]],
    ) -> list[BundleComponent]:
        """Replace the bill of materials of ``bundle_sku``."""
        item = self.get_item(bundle_sku)
        if item is None:
            item = self.upsert_item(bundle_sku, is_bundle=True)
        item.is_bundle = True
        self.session.execute(delete(BundleComponent).where(BundleComponent.bundle_sku == bundle_sku))
        rows = []
        for component_sku, qty_per_bundle in components:
            if qty_per_bundle <= 0:
                raise InvalidQuantityError(qty_per_bundle, field="qty_per_bundle")
            row = BundleComponent(
                bundle_sku=bundle_sku,
                component_sku=component_sku,
                qty_per_bundle=qty_per_bundle,
            )
            self.session.add(row)
            rows.append(row)
        self._flush("bundle_component")
        logger.info("bundle_components_set", extra={
            "bundle_sku": bundle_sku,
            "components": len(rows),
        })
        return rows

    def expand(self, sku: str, qty: Decimal) -> list[tuple[str, Decimal]]:
        """
        (sku, qty) pairs to allocate for a shipment of ``qty`` x ``sku``.

        A non-bundle (or a bundle with no components) expands to itself.
        """
        item = self.get_item(sku)
        if item is None or not item.is_bundle:
            return [(sku, qty)]
        components = self.session.execute(
            select(BundleComponent)
            .where(BundleComponent.bundle_sku == sku)
            .order_by(BundleComponent.component_sku)
        ).scalars().all()
        if not components:
            logger.warning("bundle_without_components", extra={"bundle_sku": sku})
            return [(sku, qty)]
        return [(c.component_sku, qty * c.qty_per_bundle) for c in components]

    def base_cost(self, sku: str) -> Decimal | None:
        item = self.get_item(sku)
        return None if item is None else item.base_cost_per_unit
