"""
Typed Exception Hierarchy for the Costing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Costing errors fall into two very different families that callers must be
able to tell apart without parsing message strings:

  - Operational conditions (not enough stock, quantity out of range, return
    already undone). These are expected and surface to the user verbatim.
  - Defects (a reversal would push a layer above what it received). These
    abort the operation and need an administrator.

Every exception therefore carries:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. A ``kind`` class attribute (the failure family shown to callers)
  3. Structured attributes (ids, quantities) set in ``__init__``

Example:
    try:
        allocator.allocate(sku, qty, as_of)
    except InsufficientStockError as e:
        api_response(kind=e.kind, code=e.code, shortfall=str(e.shortfall))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CostingError (base)
    |
    +-- InvalidQuantityError
    |
    +-- InsufficientStockError
    |
    +-- ReversalError
    |   +-- AlreadyReversedError
    |   +-- ReversalOfReversalError
    |
    +-- ConsistencyError
    |
    +-- NotFoundError
    |   +-- LayerNotFoundError
    |   +-- ReturnNotFoundError
    |   +-- AllocationGroupNotFoundError
    |   +-- OrderLineNotFoundError
    |
    +-- ReturnError
    |   +-- InvalidReturnError
    |   +-- ReturnExceedsShippedError
    |   +-- UndoOfUndoError
    |
    +-- LayerError
    |   +-- LayerNotVoidableError
    |   +-- LayerVoidedError
    |
    +-- OrderLineError
    |   +-- OrderLineCancelledError
    |   +-- OrderLineHasReturnsError
    |
    +-- ZeroCostRejectedError
    |
    +-- PermissionDeniedError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- LockTimeoutError
    |
    +-- ConfigurationError

===============================================================================
"""

from decimal import Decimal


class CostingError(Exception):
    """
    Base exception for all costing kernel errors.

    All subclasses must define a ``code`` class attribute for
    machine-readable identification and a ``kind`` naming the
    failure family reported at the transaction boundary.
    """

    code: str = "COSTING_ERROR"
    kind: str = "costing_error"


# Quantity / stock


class InvalidQuantityError(CostingError):
    """Quantity is non-positive or malformed."""

    code: str = "INVALID_QUANTITY"
    kind: str = "invalid_quantity"

    def __init__(
        self,
        quantity: object,
        field: str = "qty",
        reason: str = "must be a positive decimal",
    ):
        self.quantity = str(quantity)
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {quantity!r} ({reason})")


class InsufficientStockError(CostingError):
    """FIFO allocation cannot fully cover the requested quantity."""

    code: str = "INSUFFICIENT_STOCK"
    kind: str = "insufficient_stock"

    def __init__(
        self,
        sku: str,
        requested: Decimal,
        available: Decimal,
    ):
        self.sku = sku
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for {sku}: requested {requested}, "
            f"available {available}, shortfall {self.shortfall}"
        )


# Reversal


class ReversalError(CostingError):
    """Base exception for reversal-related errors."""

    code: str = "REVERSAL_ERROR"
    kind: str = "reversal_error"


class AlreadyReversedError(ReversalError):
    """Allocation group (or return) has already been reversed."""

    code: str = "ALREADY_REVERSED"
    kind: str = "already_reversed"

    def __init__(self, target_id: str, target_type: str = "allocation_group"):
        self.target_id = target_id
        self.target_type = target_type
        super().__init__(f"{target_type} {target_id} has already been reversed")


class ReversalOfReversalError(ReversalError):
    """A group made of mirror rows cannot itself be reversed."""

    code: str = "REVERSAL_OF_REVERSAL"
    kind: str = "invalid_reversal"

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Allocation group {group_id} is a reversal and cannot be reversed")


# Consistency


class ConsistencyError(CostingError):
    """
    A ledger invariant would be violated.

    Signals a defect, never a business condition.  Always logged with the
    layer id and the attempted delta before it propagates.
    """

    code: str = "CONSISTENCY_VIOLATION"
    kind: str = "consistency_error"

    def __init__(
        self,
        message: str,
        layer_id: str | None = None,
        attempted_delta: Decimal | None = None,
        qty_remaining: Decimal | None = None,
        qty_received: Decimal | None = None,
    ):
        self.layer_id = layer_id
        self.attempted_delta = attempted_delta
        self.qty_remaining = qty_remaining
        self.qty_received = qty_received
        super().__init__(message)


# Not found


class NotFoundError(CostingError):
    """Referenced record does not exist."""

    code: str = "NOT_FOUND"
    kind: str = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class LayerNotFoundError(NotFoundError):
    code: str = "LAYER_NOT_FOUND"

    def __init__(self, layer_id: str):
        super().__init__("receipt_layer", layer_id)


class ReturnNotFoundError(NotFoundError):
    code: str = "RETURN_NOT_FOUND"

    def __init__(self, return_id: str):
        super().__init__("return_record", return_id)


class AllocationGroupNotFoundError(NotFoundError):
    code: str = "ALLOCATION_GROUP_NOT_FOUND"

    def __init__(self, group_id: str):
        super().__init__("allocation_group", group_id)


class OrderLineNotFoundError(NotFoundError):
    code: str = "ORDER_LINE_NOT_FOUND"

    def __init__(self, order_id: str, sku: str):
        self.order_id = order_id
        self.sku = sku
        super().__init__("order_line", f"{order_id}/{sku}")


# Returns


class ReturnError(CostingError):
    """Base exception for return-related errors."""

    code: str = "RETURN_ERROR"
    kind: str = "invalid_return"


class InvalidReturnError(ReturnError):
    """Return request is not valid for the order line's current state."""

    code: str = "INVALID_RETURN"

    def __init__(self, order_id: str, sku: str, reason: str):
        self.order_id = order_id
        self.sku = sku
        self.reason = reason
        super().__init__(f"Invalid return for {order_id}/{sku}: {reason}")


class ReturnExceedsShippedError(ReturnError):
    """Return quantity exceeds what was shipped minus what was already returned."""

    code: str = "RETURN_EXCEEDS_SHIPPED"

    def __init__(self, order_id: str, sku: str, requested: Decimal, returnable: Decimal):
        self.order_id = order_id
        self.sku = sku
        self.requested = requested
        self.returnable = returnable
        super().__init__(
            f"Return of {requested} for {order_id}/{sku} exceeds returnable quantity {returnable}"
        )


class UndoOfUndoError(ReturnError):
    """An UNDO record cannot itself be undone."""

    code: str = "UNDO_OF_UNDO"

    def __init__(self, return_id: str):
        self.return_id = return_id
        super().__init__(f"Return record {return_id} is an UNDO and cannot be undone")


# Layers


class LayerError(CostingError):
    """Base exception for receipt-layer lifecycle errors."""

    code: str = "LAYER_ERROR"
    kind: str = "layer_error"


class LayerNotVoidableError(LayerError):
    """Layer has been consumed or referenced and can no longer be voided."""

    code: str = "LAYER_NOT_VOIDABLE"

    def __init__(self, layer_id: str, reason: str):
        self.layer_id = layer_id
        self.reason = reason
        super().__init__(f"Layer {layer_id} cannot be voided: {reason}")


class LayerVoidedError(LayerError):
    """Operation targets a voided layer."""

    code: str = "LAYER_VOIDED"

    def __init__(self, layer_id: str):
        self.layer_id = layer_id
        super().__init__(f"Layer {layer_id} is voided")


# Order lines


class OrderLineError(CostingError):
    code: str = "ORDER_LINE_ERROR"
    kind: str = "order_line_error"


class OrderLineCancelledError(OrderLineError):
    """Order line was cancelled and cannot be shipped or returned."""

    code: str = "ORDER_LINE_CANCELLED"

    def __init__(self, order_id: str, sku: str):
        self.order_id = order_id
        self.sku = sku
        super().__init__(f"Order line {order_id}/{sku} is cancelled")


class OrderLineHasReturnsError(OrderLineError):
    """Order line still carries returns that have not been undone."""

    code: str = "ORDER_LINE_HAS_RETURNS"

    def __init__(self, order_id: str, sku: str, returned_qty: Decimal):
        self.order_id = order_id
        self.sku = sku
        self.returned_qty = returned_qty
        super().__init__(
            f"Order line {order_id}/{sku} has {returned_qty} returned units; "
            "undo the returns before cancelling"
        )


# Cost basis


class ZeroCostRejectedError(CostingError):
    """No historical unit cost is known and the policy rejects a zero fallback."""

    code: str = "ZERO_COST_REJECTED"
    kind: str = "zero_cost_rejected"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"No known unit cost for {sku}; zero-cost fallback rejected by policy")


# Authorization


class PermissionDeniedError(CostingError):
    """Actor lacks the role required by the operation."""

    code: str = "PERMISSION_DENIED"
    kind: str = "permission_denied"

    def __init__(self, actor_id: str, operation: str):
        self.actor_id = actor_id
        self.operation = operation
        super().__init__(f"Actor {actor_id} is not permitted to run {operation}")


# Concurrency


class ConcurrencyError(CostingError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    kind: str = "concurrency_conflict"


class OptimisticLockError(ConcurrencyError):
    """Compare-and-swap on a versioned row failed."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id or '?'}: "
            "row was modified by another transaction"
        )


class LockTimeoutError(ConcurrencyError):
    """Row lock wait timed out or the database chose this transaction as a deadlock victim."""

    code: str = "LOCK_TIMEOUT"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} could not acquire its locks: {reason}")


# Configuration


class ConfigurationError(CostingError):
    """Configuration value is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"
    kind: str = "configuration_error"

    def __init__(self, key: str, value: object, reason: str):
        self.key = key
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid configuration {key}={value!r}: {reason}")
