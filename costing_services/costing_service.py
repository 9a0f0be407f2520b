"""
CostingService -- the request boundary of the costing engine.

Responsibility
--------------
Exposes the inbound operations (ship, return, undo, cancel, backfill,
receipts, catalog) and the read views.  Each inbound call opens its own
transaction, runs the work through the services, retries on concurrency
conflicts and converts any ``CostingError`` into an ``OperationResult``.

Architecture
------------
Layer: **Services** -- outermost orchestration wrapper.

1. ``session_scope`` owns commit / rollback for each call.
2. ``run_with_retry`` re-runs the whole call (fresh transaction) after an
   optimistic-lock or lock-timeout failure.
3. Services below flush only.

Invariants
----------
- ATOMIC_APPLY -- a call either commits all of its layer and ledger writes
  or none of them.
- Shipment registration commits before costing, so an uncosted shipment
  stays visible to the backfill auditor.

Failure Modes
-------------
- Business failures come back as ``OperationResult(ok=False, kind=...)``.
- ``consistency_error`` failures are additionally logged at ERROR.
- Unexpected exceptions are logged with traceback and re-raised.

Usage::

    service = CostingService.from_config(get_active_config())
    result = service.ship_order("SO-1", "WIDGET", Decimal("15"), shipped_at, actor)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from costing_config import CostingConfig, get_active_config
from costing_config.loader import log_level_number
from costing_engines.cost_basis import DailyCOGS, daily_cogs
from costing_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from costing_kernel.db.types import to_decimal
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import (
    DateRange,
    RefType,
    ReturnType,
    ShipmentStatus,
)
from costing_kernel.exceptions import (
    ConsistencyError,
    CostingError,
    InvalidQuantityError,
    PermissionDeniedError,
)
from costing_kernel.logging_config import LogContext, configure_logging, get_logger
from costing_kernel.selectors import (
    AllocationSelector,
    BackfillRunDTO,
    COGSAllocationDTO,
    LayerConsistencyDTO,
    LayerSelector,
    OrderLineCostDTO,
    ReceiptLayerDTO,
    ReturnRecordDTO,
    ReturnSelector,
)
from costing_kernel.services.layer_store import LayerStore
from costing_kernel.services.reversal_service import ReversalService
from costing_services.backfill_auditor import BackfillAuditor, Gap
from costing_services.catalog_service import CatalogService
from costing_services.results import OperationResult
from costing_services.retry import run_with_retry
from costing_services.return_service import ReturnService
from costing_services.shipment_service import LineCosting, ShipmentService

logger = get_logger("services.costing")

T = TypeVar("T")


def _qty(value: object, field: str = "qty") -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise InvalidQuantityError(value, field=field) from exc


def _line_payload(costing: LineCosting) -> dict:
    return {
        "sku": costing.sku,
        "status": costing.status.value,
        "group_id": costing.group_id,
        "allocated_qty": costing.allocated_qty,
        "shortfall": costing.shortfall,
        "total_cost": costing.total_cost,
        "blended_unit_cost": costing.blended_unit_cost,
    }


class CostingService:
    """
    Inbound interface of the inventory costing engine.

    Contract
    --------
    Every mutating method takes an ``ActorContext`` and returns an
    ``OperationResult``; read views return frozen DTOs.

    Guarantees
    ----------
    - One transaction per call (per component line for bundle costing).
    - Concurrency conflicts are retried up to ``retry.max_attempts``.

    Non-goals
    ---------
    - No costing logic lives here; it only wires services together.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        config: CostingConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._config = config or CostingConfig()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        create_schema: bool = False,
    ) -> CostingService:
        """Configure logging and the engine from ``config`` and build a service."""
        config = config or get_active_config()
        configure_logging(level=log_level_number(config))
        engine = init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )
        if create_schema:
            create_tables(engine)
        return cls(get_session_factory(), clock=clock, config=config)

    @property
    def config(self) -> CostingConfig:
        return self._config

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _in_transaction(self, operation: str, work: Callable[[Session], T]) -> T:
        """Run ``work`` in a fresh transaction, retrying on conflicts."""
        def attempt() -> T:
            with session_scope(self._session_factory) as session:
                return work(session)

        return run_with_retry(
            attempt,
            attempts=self._config.retry.max_attempts,
            backoff_base=self._config.retry.backoff_base,
            operation=operation,
            sleep=self._sleep,
        )

    def _execute(
        self,
        operation: str,
        actor: ActorContext,
        work: Callable[[Session], OperationResult],
        order_id: str | None = None,
        sku: str | None = None,
    ) -> OperationResult:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=actor.stamp,
            operation=operation,
            order_id=order_id,
            sku=sku,
        ):
            t0 = time.monotonic()
            try:
                result = self._in_transaction(operation, work)
            except CostingError as exc:
                return self._failure(operation, exc)
            except Exception:
                logger.exception("operation_crashed", extra={"operation": operation})
                raise
            logger.info("operation_completed", extra={
                "operation": operation,
                "status": result.status,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })
            return result

    def _failure(self, operation: str, exc: CostingError, **data) -> OperationResult:
        extra = {
            "operation": operation,
            "error_code": exc.code,
            "error_kind": exc.kind,
            "error": str(exc),
        }
        if isinstance(exc, ConsistencyError):
            logger.error("operation_failed", extra=extra)
        else:
            logger.warning("operation_failed", extra=extra)
        return OperationResult.failure(exc, **data)

    def _shipments(self, session: Session) -> ShipmentService:
        return ShipmentService(
            session,
            self._clock,
            respect_as_of=self._config.allocation.respect_as_of,
        )

    def _returns(self, session: Session) -> ReturnService:
        return ReturnService(session, self._clock)

    def _auditor(self, session: Session) -> BackfillAuditor:
        return BackfillAuditor(
            session,
            self._clock,
            zero_cost_policy=self._config.backfill.zero_cost_policy,
            respect_as_of=self._config.allocation.respect_as_of,
        )

    # =========================================================================
    # Receipts and catalog
    # =========================================================================

    def record_receipt(
        self,
        sku: str,
        qty: Decimal,
        unit_cost: Decimal,
        actor: ActorContext,
        received_at: datetime | None = None,
        ref_type: RefType = RefType.PURCHASE,
        ref_id: str | None = None,
        note: str | None = None,
    ) -> OperationResult:
        """Add a receipt layer (purchase, adjustment or opening balance)."""
        def work(session: Session) -> OperationResult:
            layer = LayerStore(session, self._clock).create_layer(
                sku=sku,
                qty=_qty(qty),
                unit_cost=_qty(unit_cost, "unit_cost"),
                received_at=received_at or self._clock.now(),
                ref_type=ref_type,
                actor=actor,
                ref_id=ref_id,
                note=note,
            )
            return OperationResult.success(layer_id=layer.id)

        return self._execute("record_receipt", actor, work, sku=sku)

    def void_layer(self, layer_id: UUID, reason: str, actor: ActorContext) -> OperationResult:
        """Void an untouched, unreferenced layer."""
        def work(session: Session) -> OperationResult:
            layer = LayerStore(session, self._clock).void(layer_id, reason, actor)
            return OperationResult.success(layer_id=layer.id)

        return self._execute("void_layer", actor, work)

    def upsert_item(
        self,
        sku: str,
        actor: ActorContext,
        name: str | None = None,
        base_cost_per_unit: Decimal | None = None,
    ) -> OperationResult:
        def work(session: Session) -> OperationResult:
            cost = None if base_cost_per_unit is None else _qty(
                base_cost_per_unit, "base_cost_per_unit"
            )
            item = CatalogService(session, self._clock).upsert_item(
                sku, name=name, base_cost_per_unit=cost
            )
            return OperationResult.success(sku=item.sku)

        return self._execute("upsert_item", actor, work, sku=sku)

    def set_bundle(
        self,
        bundle_sku: str,
        components: Sequence[tuple[str, Decimal]],
        actor: ActorContext,
    ) -> OperationResult:
        """Define ``bundle_sku`` as ``[(component_sku, qty_per_bundle), ...]``."""
        def work(session: Session) -> OperationResult:
            rows = CatalogService(session, self._clock).set_bundle_components(
                bundle_sku,
                [(sku, _qty(qty, "qty_per_bundle")) for sku, qty in components],
            )
            return OperationResult.success(bundle_sku=bundle_sku, components=len(rows))

        return self._execute("set_bundle", actor, work, sku=bundle_sku)

    # =========================================================================
    # Shipments
    # =========================================================================

    def register_order(
        self, order_id: str, sku: str, qty: Decimal, actor: ActorContext
    ) -> OperationResult:
        """Record an order line that has not shipped yet."""
        def work(session: Session) -> OperationResult:
            lines = self._shipments(session).register_order(order_id, sku, _qty(qty), actor)
            return OperationResult.success(skus=[line.sku for line in lines])

        return self._execute("register_order", actor, work, order_id=order_id, sku=sku)

    def ship_order(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        shipped_at: datetime,
        actor: ActorContext,
        allow_partial: bool | None = None,
        layer_picks: Sequence[tuple[UUID, Decimal]] | None = None,
    ) -> OperationResult:
        """
        Register a shipment and allocate its COGS.

        Status is ``success``, ``already_allocated`` (the line was costed
        before), ``partial`` (a shortfall under partial mode, or some bundle
        components failed) or ``failed``.

        ``layer_picks`` switches to specific identification (MANUAL rows)
        and is accepted for non-bundle SKUs only.
        """
        if allow_partial is None:
            allow_partial = self._config.allocation.allow_partial_default

        with LogContext.bind(operation="ship_order", order_id=order_id, sku=sku,
                             actor_id=actor.stamp, correlation_id=str(uuid4())):
            def register(session: Session) -> list[str]:
                shipments = self._shipments(session)
                if layer_picks:
                    shipments.validate_layer_picks(sku, _qty(qty), layer_picks)
                return [
                    line.sku
                    for line in shipments.register_shipment(
                        order_id, sku, _qty(qty), shipped_at, actor
                    )
                ]

            try:
                line_skus = self._in_transaction("register_shipment", register)
            except CostingError as exc:
                return self._failure("ship_order", exc, order_id=order_id, sku=sku)

            costed: list[LineCosting] = []
            errors: list[tuple[str, CostingError]] = []
            for line_sku in line_skus:
                try:
                    costed.append(self._in_transaction(
                        "cost_line",
                        lambda session, line_sku=line_sku: self._shipments(session).cost_line(
                            order_id,
                            line_sku,
                            actor,
                            allow_partial=allow_partial,
                            layer_picks=layer_picks,
                        ),
                    ))
                except CostingError as exc:
                    errors.append((line_sku, exc))

            return self._shipment_result(order_id, sku, costed, errors)

    def _shipment_result(
        self,
        order_id: str,
        sku: str,
        costed: list[LineCosting],
        errors: list[tuple[str, CostingError]],
    ) -> OperationResult:
        lines = [_line_payload(c) for c in costed]
        if errors and not costed:
            _, first = errors[0]
            return self._failure(
                "ship_order",
                first,
                order_id=order_id,
                sku=sku,
                failed_skus=[s for s, _ in errors],
            )

        statuses = {c.status for c in costed}
        if errors or ShipmentStatus.PARTIAL in statuses:
            status = ShipmentStatus.PARTIAL
        elif statuses == {ShipmentStatus.ALREADY_ALLOCATED}:
            status = ShipmentStatus.ALREADY_ALLOCATED
        else:
            status = ShipmentStatus.SUCCESS

        warnings = tuple(f"{line_sku}: {exc}" for line_sku, exc in errors)
        warnings += tuple(
            f"{c.sku}: {c.shortfall} units uncovered" for c in costed if c.shortfall > 0
        )
        group_ids = [c.group_id for c in costed if c.group_id is not None]
        logger.info("shipment_costed", extra={
            "order_id": order_id,
            "sku": sku,
            "status": status.value,
            "lines": len(lines),
            "failed_lines": len(errors),
        })
        return OperationResult.success(
            status=status.value,
            warnings=warnings,
            order_id=order_id,
            sku=sku,
            group_id=group_ids[0] if len(group_ids) == 1 else None,
            group_ids=group_ids,
            lines=lines,
            total_cost=sum((c.total_cost for c in costed), Decimal("0")),
            blended_unit_cost=costed[0].blended_unit_cost if len(costed) == 1 else None,
            shortfall=sum((c.shortfall for c in costed), Decimal("0")),
        )

    def cancel_shipment(
        self,
        order_id: str,
        sku: str,
        actor: ActorContext,
        reason: str = "order cancelled",
    ) -> OperationResult:
        """Reverse the line's COGS through the reversal engine and cancel it."""
        def work(session: Session) -> OperationResult:
            results = self._shipments(session).cancel_shipment(order_id, sku, actor, reason)
            return OperationResult.success(
                order_id=order_id,
                sku=sku,
                reversal_group_ids=[r.reversal_group_id for r in results],
                amount_reversed=sum((r.amount_reversed for r in results), Decimal("0")),
            )

        return self._execute("cancel_shipment", actor, work, order_id=order_id, sku=sku)

    def reverse_allocation(
        self,
        group_id: UUID,
        reason: str,
        actor: ActorContext,
    ) -> OperationResult:
        """Reverse one allocation group directly (administrative correction)."""
        def work(session: Session) -> OperationResult:
            result = ReversalService(session, self._clock).reverse(group_id, reason, actor)
            return OperationResult.success(
                group_id=result.original_group_id,
                reversal_group_id=result.reversal_group_id,
                mirror_row_ids=list(result.mirror_row_ids),
                layer_deltas=list(result.layer_deltas),
                amount_reversed=result.amount_reversed,
            )

        return self._execute("reverse_allocation", actor, work)

    # =========================================================================
    # Returns
    # =========================================================================

    def submit_return(
        self,
        order_id: str,
        sku: str,
        qty: Decimal,
        return_type: ReturnType,
        actor: ActorContext,
        note: str | None = None,
        returned_at: datetime | None = None,
    ) -> OperationResult:
        def work(session: Session) -> OperationResult:
            outcome = self._returns(session).submit_return(
                order_id,
                sku,
                _qty(qty),
                ReturnType(return_type),
                actor,
                note=note,
                returned_at=returned_at,
            )
            return OperationResult.success(
                warnings=outcome.warnings,
                return_id=outcome.return_id,
                layer_id=outcome.layer_id,
                credit_row_id=outcome.credit_row_id,
                credited_qty=outcome.credited_qty,
                unit_cost=outcome.unit_cost,
            )

        return self._execute("submit_return", actor, work, order_id=order_id, sku=sku)

    def undo_return(
        self,
        return_id: UUID,
        actor: ActorContext,
        note: str | None = None,
    ) -> OperationResult:
        def work(session: Session) -> OperationResult:
            outcome = self._returns(session).undo_return(return_id, actor, note=note)
            return OperationResult.success(
                return_id=outcome.return_id,
                undo_id=outcome.undo_id,
                reversal_group_ids=[r.reversal_group_id for r in outcome.reversals],
                voided_layer_id=outcome.voided_layer_id,
                reallocated_group_ids=list(outcome.reallocated_group_ids),
            )

        return self._execute("undo_return", actor, work)

    # =========================================================================
    # Backfill
    # =========================================================================

    def find_gaps(self, date_range: DateRange) -> list[Gap]:
        with session_scope(self._session_factory) as session:
            return self._auditor(session).find_gaps(date_range)

    def run_backfill(self, date_range: DateRange, actor: ActorContext) -> OperationResult:
        """Detect and repair coverage gaps in ``date_range``.  Admin only."""
        def work(session: Session) -> OperationResult:
            if not actor.is_admin:
                raise PermissionDeniedError(actor.stamp, "run_backfill")
            summary = self._auditor(session).run(date_range, actor)
            return OperationResult.success(
                warnings=summary.warnings,
                run_id=summary.run_id,
                total=summary.total,
                processed=summary.processed,
                skipped=summary.skipped,
                failed=summary.failed,
                items=list(summary.items),
            )

        return self._execute("run_backfill", actor, work)

    # =========================================================================
    # Read views
    # =========================================================================

    def receipt_layers(
        self,
        sku: str | None = None,
        date_range: DateRange | None = None,
        include_voided: bool = True,
    ) -> list[ReceiptLayerDTO]:
        with session_scope(self._session_factory) as session:
            return LayerSelector(session).receipt_layers(sku, date_range, include_voided)

    def cogs_allocations(
        self,
        order_id: str | None = None,
        sku: str | None = None,
        date_range: DateRange | None = None,
    ) -> list[COGSAllocationDTO]:
        with session_scope(self._session_factory) as session:
            return AllocationSelector(session).cogs_allocations(order_id, sku, date_range)

    def order_line_cost(self, order_id: str, sku: str) -> OrderLineCostDTO:
        with session_scope(self._session_factory) as session:
            return AllocationSelector(session).order_line_cost(order_id, sku)

    def returns(
        self,
        order_id: str | None = None,
        sku: str | None = None,
        date_range: DateRange | None = None,
    ) -> list[ReturnRecordDTO]:
        with session_scope(self._session_factory) as session:
            return ReturnSelector(session).returns(order_id, sku, date_range)

    def daily_cogs(self, date_range: DateRange, sku: str | None = None) -> list[DailyCOGS]:
        rows = self.cogs_allocations(sku=sku, date_range=date_range)
        return daily_cogs((row.shipped_at, row.amount) for row in rows)

    def backfill_runs(self, limit: int = 20) -> list[BackfillRunDTO]:
        with session_scope(self._session_factory) as session:
            return ReturnSelector(session).backfill_runs(limit)

    def verify_consistency(self, sku: str | None = None) -> list[LayerConsistencyDTO]:
        """
        Layers whose consumed quantity disagrees with their ledger rows.

        An empty list means the ledger invariant holds.  Each discrepancy
        is logged at ERROR.
        """
        with session_scope(self._session_factory) as session:
            report = LayerSelector(session).consistency_report(sku)
        broken = [entry for entry in report if not entry.is_consistent]
        for entry in broken:
            logger.error("ledger_inconsistency_detected", extra={
                "layer_id": str(entry.layer_id),
                "sku": entry.sku,
                "discrepancy": str(entry.discrepancy),
            })
        return broken
