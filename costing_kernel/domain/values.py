"""
Closed vocabularies for the costing ledger.

Every status or type that is persisted as a string is declared here as a
``str`` Enum so that an illegal value cannot be constructed in Python.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum


class RefType(str, Enum):
    """Why a receipt layer exists."""

    PURCHASE = "PURCHASE"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"
    BACKFILL = "BACKFILL"
    OPENING_BALANCE = "OPENING_BALANCE"


class AllocationMethod(str, Enum):
    """How the layers behind a COGS row were chosen."""

    FIFO = "FIFO"
    MANUAL = "MANUAL"      # specific identification (caller names the layers)
    BACKFILL = "BACKFILL"  # synthesized by the coverage auditor


class ReturnType(str, Enum):
    RETURN_RECEIVED = "RETURN_RECEIVED"
    REFUND_ONLY = "REFUND_ONLY"
    CANCEL_BEFORE_SHIP = "CANCEL_BEFORE_SHIP"

    @property
    def moves_inventory(self) -> bool:
        """Only received returns put stock back on a layer."""
        return self is ReturnType.RETURN_RECEIVED


class ActionType(str, Enum):
    RETURN = "RETURN"
    UNDO = "UNDO"


class OrderLineStatus(str, Enum):
    OPEN = "OPEN"
    SHIPPED = "SHIPPED"
    CANCELLED = "CANCELLED"


class ZeroCostPolicy(str, Enum):
    """What the backfill auditor does when a SKU has no known unit cost."""

    ALLOW_ZERO = "ALLOW_ZERO"  # cost the layer at 0 and emit a warning
    REJECT = "REJECT"          # fail the item; nothing is written


class ShipmentStatus(str, Enum):
    """Outcome of ship_order."""

    SUCCESS = "success"
    ALREADY_ALLOCATED = "already_allocated"
    PARTIAL = "partial"
    FAILED = "failed"


class BackfillItemStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class GapKind(str, Enum):
    MISSING_ALLOCATION = "missing_allocation"
    MISSING_RETURN_LAYER = "missing_return_layer"


@dataclass(frozen=True, slots=True)
class DateRange:
    """
    Half-open UTC time window ``[start, end)``.

    ``for_days`` builds the window covering whole calendar days
    ``date_from`` through ``date_to`` inclusive.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("DateRange bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError(f"DateRange end {self.end} precedes start {self.start}")

    @classmethod
    def for_days(cls, date_from: date, date_to: date) -> "DateRange":
        start = datetime.combine(date_from, time.min, tzinfo=UTC)
        end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=UTC)
        return cls(start, end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end
