"""Read-only selectors returning DTOs."""

from costing_kernel.selectors.allocation_selector import (
    AllocationSelector,
    COGSAllocationDTO,
    OrderLineCostDTO,
)
from costing_kernel.selectors.layer_selector import (
    LayerConsistencyDTO,
    LayerSelector,
    ReceiptLayerDTO,
)
from costing_kernel.selectors.return_selector import (
    BackfillRunDTO,
    ReturnRecordDTO,
    ReturnSelector,
)

__all__ = [
    "LayerSelector",
    "ReceiptLayerDTO",
    "LayerConsistencyDTO",
    "AllocationSelector",
    "COGSAllocationDTO",
    "OrderLineCostDTO",
    "ReturnSelector",
    "ReturnRecordDTO",
    "BackfillRunDTO",
]
