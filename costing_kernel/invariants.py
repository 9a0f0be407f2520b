"""
Costing Invariants Contract.

These invariants are structural law for the layer ledger. No configuration
value may switch them off.

This module declares them explicitly. Enforcement is distributed across
the DB check constraints in ``models/``, ``LayerStore``, ``FifoAllocator``,
``ReversalService`` and the unique constraints on reversal linkage.
"""

from enum import Enum, unique


@unique
class CostingInvariant(str, Enum):
    """Non-configurable invariants enforced by the costing kernel."""

    LAYER_BOUND = "layer_bound"
    """0 <= qty_remaining <= qty_received for every receipt layer.
    Enforced by CHECK constraints and by LayerStore before every write."""

    LEDGER_CONSISTENCY = "ledger_consistency"
    """qty_received - qty_remaining equals the qty of non-reversal rows on the
    layer minus the qty of reversal rows on the layer."""

    FIFO_ORDER = "fifo_order"
    """A younger layer is never touched while an older eligible layer of the
    same SKU still has stock (received_at, then id)."""

    APPEND_ONLY_LEDGER = "append_only_ledger"
    """COGS allocation rows are never updated or deleted; a reversal appends
    mirror rows."""

    SINGLE_REVERSAL = "single_reversal"
    """A ledger row is mirrored at most once (UNIQUE reversal_of_id) and a
    return is undone at most once (UNIQUE reversed_return_id)."""

    ATOMIC_APPLY = "atomic_apply"
    """Layer mutation and the ledger rows describing it commit together or
    not at all."""


ALL_COSTING_INVARIANTS: frozenset[CostingInvariant] = frozenset(CostingInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "costing_engines",
    "costing_services",
    "costing_config",
)
