"""
BackfillAuditor -- coverage detection and repair for shipments and returns.

Responsibility:
    Scan a date range for shipped order lines whose COGS is not fully
    allocated and for received returns without a receipt layer, then
    repair each gap: FIFO as of the ship date (method BACKFILL) for the
    former, a BACKFILL layer plus COGS credit for the latter.

Architecture position:
    Services.  Reuses FifoAllocator, LayerStore and ReturnService so a
    backfilled allocation is indistinguishable from a live one except for
    its method.

Invariants enforced:
    - SAVEPOINT isolation per item: one failed gap does not abort the run
      or undo gaps already repaired.
    - Return-layer gaps are repaired before allocation gaps, so returned
      stock that was later re-sold is available to the re-allocation.
    - Idempotent: a repaired gap is no longer detected, so a second run
      over the same range reports every candidate as skipped.

Failure modes (per item, recorded rather than raised):
    - InsufficientStockError when no layer covers the shipment as of its
      ship date.
    - ZeroCostRejectedError when the SKU has no cost history and the
      zero-cost policy is REJECT.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from costing_kernel.db.types import ZERO
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import (
    AllocationMethod,
    BackfillItemStatus,
    DateRange,
    GapKind,
    OrderLineStatus,
    RefType,
    ZeroCostPolicy,
)
from costing_kernel.exceptions import ConsistencyError, CostingError, ZeroCostRejectedError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.backfill_run import BackfillRun, BackfillRunItem
from costing_kernel.models.return_record import ReturnRecord
from costing_kernel.models.sales_order_line import SalesOrderLine
from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore
from costing_services.fifo_allocator import FifoAllocator
from costing_services.return_service import ReturnService

logger = get_logger("services.backfill")


@dataclass(frozen=True)
class MissingAllocationGap:
    """A SHIPPED line whose net allocated quantity is below its quantity."""

    line_id: UUID
    order_id: str
    sku: str
    shipped_at: datetime
    qty_needed: Decimal
    kind: GapKind = GapKind.MISSING_ALLOCATION

    @property
    def record_id(self) -> UUID:
        return self.line_id


@dataclass(frozen=True)
class MissingReturnLayerGap:
    """An active RETURN_RECEIVED return with no RETURN or BACKFILL layer."""

    return_id: UUID
    order_id: str
    sku: str
    returned_at: datetime
    qty: Decimal
    kind: GapKind = GapKind.MISSING_RETURN_LAYER

    @property
    def record_id(self) -> UUID:
        return self.return_id


Gap = MissingAllocationGap | MissingReturnLayerGap


@dataclass(frozen=True)
class BackfillResult:
    """Outcome of repairing (or declining to repair) one candidate."""

    kind: GapKind
    record_id: UUID
    order_id: str
    sku: str
    status: BackfillItemStatus
    message: str | None = None
    warnings: tuple[str, ...] = ()
    layer_id: UUID | None = None
    group_id: UUID | None = None


@dataclass(frozen=True)
class BackfillSummary:
    run_id: UUID
    total: int
    processed: int
    skipped: int
    failed: int
    warnings: tuple[str, ...]
    items: tuple[BackfillResult, ...]


class BackfillAuditor(BaseService):
    """
    Finds and repairs coverage gaps.

    Contract:
        ``run`` flushes into the caller's transaction and uses a SAVEPOINT
        per candidate.  The caller commits.

    Non-goals:
        - Does not use partial allocation: a gap is repaired in full or the
          item fails.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        zero_cost_policy: ZeroCostPolicy = ZeroCostPolicy.ALLOW_ZERO,
        layer_store: LayerStore | None = None,
        ledger: CogsLedger | None = None,
        allocator: FifoAllocator | None = None,
        returns: ReturnService | None = None,
        respect_as_of: bool = True,
    ):
        super().__init__(session, clock)
        self._zero_cost_policy = zero_cost_policy
        self._layers = layer_store or LayerStore(session, self.clock)
        self._ledger = ledger or CogsLedger(session, self.clock)
        self._allocator = allocator or FifoAllocator(
            session,
            self.clock,
            layer_store=self._layers,
            ledger=self._ledger,
            respect_as_of=respect_as_of,
        )
        self._returns = returns or ReturnService(
            session,
            self.clock,
            layer_store=self._layers,
            ledger=self._ledger,
            allocator=self._allocator,
        )

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def _shipped_lines(self, date_range: DateRange) -> list[SalesOrderLine]:
        return list(self.session.execute(
            select(SalesOrderLine)
            .where(
                SalesOrderLine.status == OrderLineStatus.SHIPPED.value,
                SalesOrderLine.shipped_at >= date_range.start,
                SalesOrderLine.shipped_at < date_range.end,
            )
            .order_by(SalesOrderLine.shipped_at, SalesOrderLine.order_id, SalesOrderLine.sku)
        ).scalars())

    def allocation_gap(self, line: SalesOrderLine) -> MissingAllocationGap | None:
        allocated = self._ledger.net_allocated_qty(line.order_id, line.sku)
        if allocated >= line.qty:
            return None
        return MissingAllocationGap(
            line_id=line.id,
            order_id=line.order_id,
            sku=line.sku,
            shipped_at=line.shipped_at,
            qty_needed=line.qty - allocated,
        )

    def return_layer_gap(self, record: ReturnRecord) -> MissingReturnLayerGap | None:
        if self._layers.find_return_layer(record.id) is not None:
            return None
        return MissingReturnLayerGap(
            return_id=record.id,
            order_id=record.order_id,
            sku=record.sku,
            returned_at=record.returned_at,
            qty=record.qty,
        )

    def _candidates(self, date_range: DateRange):
        """(kind, record, gap-or-None) for every candidate, return gaps first."""
        for record in self._returns.active_received_returns(date_range.start, date_range.end):
            yield GapKind.MISSING_RETURN_LAYER, record, self.return_layer_gap(record)
        for line in self._shipped_lines(date_range):
            yield GapKind.MISSING_ALLOCATION, line, self.allocation_gap(line)

    def find_gaps(self, date_range: DateRange) -> list[Gap]:
        """Every uncovered candidate in ``date_range``, return-layer gaps first."""
        gaps = [gap for _, _, gap in self._candidates(date_range) if gap is not None]
        logger.info("coverage_gaps_found", extra={
            "range_start": date_range.start,
            "range_end": date_range.end,
            "missing_return_layers": sum(
                1 for g in gaps if g.kind is GapKind.MISSING_RETURN_LAYER
            ),
            "missing_allocations": sum(
                1 for g in gaps if g.kind is GapKind.MISSING_ALLOCATION
            ),
        })
        return gaps

    # -------------------------------------------------------------------------
    # Repair
    # -------------------------------------------------------------------------

    def backfill(self, gap: Gap, actor: ActorContext) -> BackfillResult:
        """Repair one gap inside the caller's transaction."""
        if isinstance(gap, MissingReturnLayerGap):
            return self._backfill_return_layer(gap, actor)
        return self._backfill_allocation(gap, actor)

    def _backfill_allocation(self, gap: MissingAllocationGap, actor: ActorContext) -> BackfillResult:
        outcome = self._allocator.allocate_and_record(
            order_id=gap.order_id,
            sku=gap.sku,
            qty=gap.qty_needed,
            shipped_at=gap.shipped_at,
            actor=actor,
            method=AllocationMethod.BACKFILL,
            allow_partial=False,
        )
        line = self.session.get(SalesOrderLine, gap.line_id)
        line.backfilled_at = self.clock.now()
        self._flush("sales_order_line")
        return BackfillResult(
            kind=gap.kind,
            record_id=gap.line_id,
            order_id=gap.order_id,
            sku=gap.sku,
            status=BackfillItemStatus.PROCESSED,
            group_id=outcome.group_id,
        )

    def _backfill_return_layer(self, gap: MissingReturnLayerGap, actor: ActorContext) -> BackfillResult:
        warnings: list[str] = []
        unit_cost = self._layers.latest_unit_cost(gap.sku)
        if unit_cost is None:
            if self._zero_cost_policy is ZeroCostPolicy.REJECT:
                raise ZeroCostRejectedError(gap.sku)
            unit_cost = ZERO
            warnings.append(f"No cost history for {gap.sku}; backfilled return layer at 0")
            logger.warning("backfill_zero_cost_layer", extra={
                "return_id": str(gap.return_id),
                "sku": gap.sku,
            })

        record = self._returns.get(gap.return_id, lock=True)
        layer = self._layers.create_layer(
            sku=gap.sku,
            qty=gap.qty,
            unit_cost=unit_cost,
            received_at=gap.returned_at,
            ref_type=RefType.BACKFILL,
            actor=actor,
            ref_id=str(gap.return_id),
            note="backfilled return layer",
        )
        record.unit_cost = unit_cost
        record.backfilled_at = self.clock.now()

        basis = self._returns.cost_basis(gap.order_id, gap.sku, as_of=gap.returned_at)
        credit = self._returns.credit_costed_units(record, basis.unit_cost, actor)
        self._flush("return_record")
        return BackfillResult(
            kind=gap.kind,
            record_id=gap.return_id,
            order_id=gap.order_id,
            sku=gap.sku,
            status=BackfillItemStatus.PROCESSED,
            warnings=tuple(warnings),
            layer_id=layer.id,
            group_id=credit.group_id if credit is not None else None,
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, date_range: DateRange, actor: ActorContext) -> BackfillSummary:
        """
        Detect and repair every gap in ``date_range`` and persist a run log.

        Each candidate is repaired inside its own SAVEPOINT.  A failing
        item is rolled back to that SAVEPOINT and recorded as ``failed``
        with its error message among the run warnings.
        """
        start_time = time.monotonic()
        run = BackfillRun(
            range_start=date_range.start,
            range_end=date_range.end,
            started_at=self.clock.now(),
            actor_id=actor.actor_id,
            warnings=[],
        )
        self.session.add(run)
        self._flush("backfill_run")

        logger.info("backfill_run_started", extra={
            "run_id": str(run.id),
            "range_start": date_range.start,
            "range_end": date_range.end,
        })

        candidates = list(self._candidates(date_range))
        results: list[BackfillResult] = []
        warnings: list[str] = []

        for kind, record, gap in candidates:
            if gap is None:
                results.append(BackfillResult(
                    kind=kind,
                    record_id=record.id,
                    order_id=record.order_id,
                    sku=record.sku,
                    status=BackfillItemStatus.SKIPPED,
                    message="already covered",
                ))
                continue

            savepoint = self.session.begin_nested()
            try:
                result = self.backfill(gap, actor)
                savepoint.commit()
            except (CostingError, SQLAlchemyError) as exc:
                savepoint.rollback()
                message = f"{kind.value} {gap.order_id}/{gap.sku}: {exc}"
                log = logger.error if isinstance(exc, ConsistencyError) else logger.warning
                log("backfill_item_failed", extra={
                    "run_id": str(run.id),
                    "gap_kind": kind.value,
                    "record_id": str(gap.record_id),
                    "order_id": gap.order_id,
                    "sku": gap.sku,
                    "error": type(exc).__name__,
                    "error_code": getattr(exc, "code", None),
                })
                result = BackfillResult(
                    kind=kind,
                    record_id=gap.record_id,
                    order_id=gap.order_id,
                    sku=gap.sku,
                    status=BackfillItemStatus.FAILED,
                    message=str(exc),
                )
                warnings.append(message)
            warnings.extend(result.warnings)
            results.append(result)

        processed = sum(1 for r in results if r.status is BackfillItemStatus.PROCESSED)
        skipped = sum(1 for r in results if r.status is BackfillItemStatus.SKIPPED)
        failed = sum(1 for r in results if r.status is BackfillItemStatus.FAILED)

        for seq, result in enumerate(results, start=1):
            self.session.add(BackfillRunItem(
                run_id=run.id,
                seq=seq,
                gap_kind=result.kind.value,
                record_id=result.record_id,
                order_id=result.order_id,
                sku=result.sku,
                status=result.status.value,
                message=result.message or ("; ".join(result.warnings) or None),
            ))

        run.total = len(results)
        run.processed = processed
        run.skipped = skipped
        run.failed = failed
        run.warnings = list(warnings)
        run.finished_at = self.clock.now()
        self._flush("backfill_run")

        logger.info("backfill_run_completed", extra={
            "run_id": str(run.id),
            "total": len(results),
            "processed": processed,
            "skipped": skipped,
            "failed": failed,
            "warnings": len(warnings),
            "duration_ms": round((time.monotonic() - start_time) * 1000, 2),
        })

        return BackfillSummary(
            run_id=run.id,
            total=len(results),
            processed=processed,
            skipped=skipped,
            failed=failed,
            warnings=tuple(warnings),
            items=tuple(results),
        )
