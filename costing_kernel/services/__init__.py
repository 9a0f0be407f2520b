"""Kernel services: the write side of the layer ledger."""

from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore
from costing_kernel.services.reversal_service import ReversalResult, ReversalService

__all__ = [
    "BaseService",
    "LayerStore",
    "CogsLedger",
    "ReversalService",
    "ReversalResult",
]
