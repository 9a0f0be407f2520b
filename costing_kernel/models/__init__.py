"""ORM models for the costing kernel."""

from costing_kernel.models.backfill_run import BackfillRun, BackfillRunItem
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.models.inventory_item import BundleComponent, InventoryItem
from costing_kernel.models.receipt_layer import ReceiptLayer
from costing_kernel.models.return_record import ReturnRecord
from costing_kernel.models.sales_order_line import SalesOrderLine

__all__ = [
    "ReceiptLayer",
    "COGSAllocation",
    "ReturnRecord",
    "InventoryItem",
    "BundleComponent",
    "SalesOrderLine",
    "BackfillRun",
    "BackfillRunItem",
]
