"""
Structured outcomes returned at the request boundary.

Inbound operations never let a CostingError escape: the transaction is
rolled back and the error is reported as an ``OperationResult`` carrying
the failure ``kind`` (insufficient_stock vs consistency_error, ...), the
machine ``code``, the message and the relevant ids.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from costing_kernel.exceptions import CostingError

# Exception attributes copied into ``details`` of a failure
_DETAIL_FIELDS = (
    "sku", "requested", "available", "shortfall", "layer_id", "attempted_delta",
    "qty_remaining", "qty_received", "target_id", "target_type", "entity_type",
    "entity_id", "order_id", "return_id", "group_id", "reason", "returnable",
    "actor_id", "operation", "key", "field", "returned_qty",
)


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of one inbound costing operation.

    ``status`` is operation specific (e.g. ``success``, ``already_allocated``,
    ``partial``).  For failures ``kind`` and ``code`` come from the
    CostingError that aborted the transaction.
    """

    ok: bool
    status: str
    message: str = ""
    kind: str | None = None
    code: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    details: Mapping[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    @classmethod
    def success(
        cls,
        status: str = "success",
        message: str = "",
        warnings: tuple[str, ...] = (),
        **data: Any,
    ) -> OperationResult:
        return cls(ok=True, status=status, message=message, data=data, warnings=warnings)

    @classmethod
    def failure(cls, exc: CostingError, **data: Any) -> OperationResult:
        details = {
            name: str(getattr(exc, name))
            for name in _DETAIL_FIELDS
            if getattr(exc, name, None) is not None
        }
        return cls(
            ok=False,
            status="failed",
            message=str(exc),
            kind=exc.kind,
            code=exc.code,
            data=data,
            details=details,
        )

    @property
    def is_defect(self) -> bool:
        """True for failures that need an administrator rather than a user."""
        return self.kind == "consistency_error"
