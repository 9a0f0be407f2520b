"""
ReturnSelector -- read view over return/undo records and backfill runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import aliased

from costing_kernel.domain.values import ActionType, DateRange
from costing_kernel.models.backfill_run import BackfillRun
from costing_kernel.models.return_record import ReturnRecord
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ReturnRecordDTO:
    id: UUID
    order_id: str
    sku: str
    qty: Decimal
    return_type: str
    action_type: str
    reversed_return_id: UUID | None
    returned_at: datetime
    note: str | None
    unit_cost: Decimal | None
    backfilled_at: datetime | None
    is_undone: bool


@dataclass(frozen=True)
class BackfillRunItemDTO:
    gap_kind: str
    record_id: UUID
    order_id: str
    sku: str
    status: str
    message: str | None


@dataclass(frozen=True)
class BackfillRunDTO:
    id: UUID
    range_start: datetime
    range_end: datetime
    started_at: datetime
    finished_at: datetime | None
    total: int
    processed: int
    skipped: int
    failed: int
    warnings: tuple[str, ...]
    items: tuple[BackfillRunItemDTO, ...]


class ReturnSelector(BaseSelector):
    """Read-only queries over return_records and backfill_runs."""

    def returns(
        self,
        order_id: str | None = None,
        sku: str | None = None,
        date_range: DateRange | None = None,
    ) -> list[ReturnRecordDTO]:
        undo = aliased(ReturnRecord)
        stmt = (
            select(ReturnRecord, undo.id)
            .outerjoin(undo, undo.reversed_return_id == ReturnRecord.id)
            .order_by(ReturnRecord.returned_at, ReturnRecord.created_at, ReturnRecord.id)
        )
        if order_id is not None:
            stmt = stmt.where(ReturnRecord.order_id == order_id)
        if sku is not None:
            stmt = stmt.where(ReturnRecord.sku == sku)
        if date_range is not None:
            stmt = stmt.where(
                ReturnRecord.returned_at >= date_range.start,
                ReturnRecord.returned_at < date_range.end,
            )
        return [
            ReturnRecordDTO(
                id=rec.id,
                order_id=rec.order_id,
                sku=rec.sku,
                qty=rec.qty,
                return_type=rec.return_type,
                action_type=rec.action_type,
                reversed_return_id=rec.reversed_return_id,
                returned_at=rec.returned_at,
                note=rec.note,
                unit_cost=rec.unit_cost,
                backfilled_at=rec.backfilled_at,
                is_undone=rec.action_type == ActionType.RETURN.value and undo_id is not None,
            )
            for rec, undo_id in self.session.execute(stmt)
        ]

    def backfill_runs(self, limit: int = 20) -> list[BackfillRunDTO]:
        stmt = select(BackfillRun).order_by(BackfillRun.started_at.desc()).limit(limit)
        return [
            BackfillRunDTO(
                id=run.id,
                range_start=run.range_start,
                range_end=run.range_end,
                started_at=run.started_at,
                finished_at=run.finished_at,
                total=run.total,
                processed=run.processed,
                skipped=run.skipped,
                failed=run.failed,
                warnings=tuple(run.warnings or ()),
                items=tuple(
                    BackfillRunItemDTO(
                        gap_kind=item.gap_kind,
                        record_id=item.record_id,
                        order_id=item.order_id,
                        sku=item.sku,
                        status=item.status,
                        message=item.message,
                    )
                    for item in run.items
                ),
            )
            for run in self.session.execute(stmt).scalars()
        ]
