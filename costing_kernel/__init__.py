"""
Costing Kernel - inventory cost-layer ledger.

A transactional FIFO costing core with:
- Append-only receipt layers and COGS allocation rows
- Exact, single-path reversal of allocation groups
- Return / undo bookkeeping with linkage
- Optimistic and pessimistic concurrency guards on layer mutation
"""

__version__ = "0.1.0"
