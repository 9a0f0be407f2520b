"""
costing_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the kernel's layer store, ledger and
    reversal engine: the FIFO allocator, shipments, returns, the backfill
    auditor and the ``CostingService`` request boundary.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_kernel_boundary.py):
        costing_services/ -> costing_engines/  (allowed)
        costing_services/ -> costing_kernel/   (allowed)
        costing_engines/  -> costing_services/ (FORBIDDEN)
        costing_kernel/   -> costing_services/ (FORBIDDEN)
"""

from costing_services.backfill_auditor import (
    BackfillAuditor,
    BackfillResult,
    BackfillSummary,
    MissingAllocationGap,
    MissingReturnLayerGap,
)
from costing_services.catalog_service import CatalogService
from costing_services.costing_service import CostingService
from costing_services.fifo_allocator import AllocationOutcome, FifoAllocator
from costing_services.results import OperationResult
from costing_services.retry import run_with_retry
from costing_services.return_service import CostBasis, ReturnOutcome, ReturnService, UndoOutcome
from costing_services.shipment_service import LineCosting, ShipmentService

__all__ = [
    "CostingService",
    "OperationResult",
    "run_with_retry",
    "FifoAllocator",
    "AllocationOutcome",
    "CatalogService",
    "ShipmentService",
    "LineCosting",
    "ReturnService",
    "ReturnOutcome",
    "UndoOutcome",
    "CostBasis",
    "BackfillAuditor",
    "BackfillResult",
    "BackfillSummary",
    "MissingAllocationGap",
    "MissingReturnLayerGap",
]
