"""
Tests for BackfillAuditor -- coverage detection and repair.

Tests cover:
- Gap detection for uncosted shipments and layer-less returns
- Repair of each gap kind
- Return-layer gaps repaired before allocation gaps
- Per-item isolation: one failure does not stop the run
- Idempotency: a second run skips everything
- Zero-cost policy
- Persisted run log
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from costing_kernel.domain.values import (
    ActionType,
    AllocationMethod,
    BackfillItemStatus,
    DateRange,
    GapKind,
    RefType,
    ReturnType,
    ZeroCostPolicy,
)
from costing_kernel.exceptions import ZeroCostRejectedError
from costing_kernel.models.return_record import ReturnRecord
from costing_kernel.selectors.return_selector import ReturnSelector
from costing_services.backfill_auditor import (
    BackfillAuditor,
    MissingAllocationGap,
    MissingReturnLayerGap,
)
from costing_services.shipment_service import ShipmentService


def jan(day: int, hour: int = 0) -> datetime:
    return datetime(2024, 1, day, hour, tzinfo=UTC)


JANUARY = DateRange(jan(1), datetime(2024, 2, 1, tzinfo=UTC))


@pytest.fixture
def shipments(session, clock, allocator, reversal, ledger) -> ShipmentService:
    return ShipmentService(session, clock, allocator=allocator, reversal=reversal, ledger=ledger)


@pytest.fixture
def make_auditor(session, clock, layer_store, ledger, allocator):
    def _make(policy=ZeroCostPolicy.ALLOW_ZERO):
        return BackfillAuditor(
            session,
            clock,
            zero_cost_policy=policy,
            layer_store=layer_store,
            ledger=ledger,
            allocator=allocator,
        )
    return _make


@pytest.fixture
def auditor(make_auditor) -> BackfillAuditor:
    return make_auditor()


@pytest.fixture
def shipped(shipments, actor):
    """Register a shipment without costing it."""
    def _shipped(order_id, sku, qty, day):
        shipments.register_shipment(order_id, sku, Decimal(qty), jan(day), actor)
    return _shipped


@pytest.fixture
def legacy_return(session, clock, actor):
    """A received return recorded without a receipt layer."""
    def _legacy(order_id, sku, qty, day):
        record = ReturnRecord(
            order_id=order_id,
            sku=sku,
            qty=Decimal(qty),
            return_type=ReturnType.RETURN_RECEIVED.value,
            action_type=ActionType.RETURN.value,
            returned_at=jan(day),
            created_at=clock.now(),
            created_by=actor.actor_id,
        )
        session.add(record)
        session.flush()
        return record
    return _legacy


class TestFindGaps:
    """Detection."""

    def test_uncosted_shipment_is_a_gap(self, make_layer, shipped, auditor):
        make_layer("S", "10", "5", day=1)
        shipped("O1", "S", "4", day=3)

        gaps = auditor.find_gaps(JANUARY)

        assert len(gaps) == 1
        assert isinstance(gaps[0], MissingAllocationGap)
        assert gaps[0].qty_needed == Decimal("4")
        assert gaps[0].shipped_at == jan(3)

    def test_costed_and_cancelled_lines_are_not_gaps(
        self, make_layer, shipped, shipments, auditor, actor
    ):
        make_layer("S", "10", "5", day=1)
        shipped("O1", "S", "4", day=3)
        shipments.cost_line("O1", "S", actor)
        shipped("O2", "S", "1", day=3)
        shipments.cancel_shipment("O2", "S", actor)

        assert auditor.find_gaps(JANUARY) == []

    def test_partially_costed_line_needs_the_remainder(
        self, make_layer, shipped, shipments, auditor, actor
    ):
        make_layer("S", "3", "5", day=1)
        shipped("O1", "S", "5", day=3)
        shipments.cost_line("O1", "S", actor, allow_partial=True)

        (gap,) = auditor.find_gaps(JANUARY)

        assert gap.qty_needed == Decimal("2")

    def test_layerless_return_is_a_gap_and_listed_first(
        self, shipped, legacy_return, auditor
    ):
        shipped("O1", "S", "2", day=3)
        legacy_return("O1", "S", "2", day=5)

        gaps = auditor.find_gaps(JANUARY)

        assert [g.kind for g in gaps] == [
            GapKind.MISSING_RETURN_LAYER,
            GapKind.MISSING_ALLOCATION,
        ]
        assert isinstance(gaps[0], MissingReturnLayerGap)

    def test_outside_range_ignored(self, shipped, auditor):
        shipped("O1", "S", "2", day=20)

        assert auditor.find_gaps(DateRange(jan(1), jan(10))) == []


class TestBackfill:
    """Repairing one gap."""

    def test_allocation_gap_uses_backfill_method(
        self, session, make_layer, shipped, shipments, auditor, ledger, clock, actor
    ):
        make_layer("S", "10", "5", day=1)
        shipped("O1", "S", "4", day=3)
        (gap,) = auditor.find_gaps(JANUARY)

        result = auditor.backfill(gap, actor)

        assert result.status is BackfillItemStatus.PROCESSED
        rows = ledger.rows_for_group(result.group_id)
        assert [r.method for r in rows] == [AllocationMethod.BACKFILL.value]
        assert rows[0].shipped_at == jan(3)
        assert shipments.get_line("O1", "S").backfilled_at == clock.now()

    def test_return_gap_creates_backfill_layer_at_latest_cost(
        self, make_layer, shipped, shipments, legacy_return, auditor, layer_store, actor
    ):
        make_layer("S", "10", "5", day=1)
        make_layer("S", "10", "6", day=2)
        shipped("O1", "S", "4", day=3)
        shipments.cost_line("O1", "S", actor)
        record = legacy_return("O1", "S", "2", day=5)
        (gap,) = auditor.find_gaps(JANUARY)

        result = auditor.backfill(gap, actor)

        layer = layer_store.get(result.layer_id)
        assert layer.ref_type == RefType.BACKFILL.value
        assert layer.ref_id == str(record.id)
        assert layer.unit_cost == Decimal("6")
        assert layer.received_at == jan(5)
        assert record.unit_cost == Decimal("6")
        assert record.backfilled_at is not None
        assert result.group_id is not None

    def test_reject_policy_raises(self, make_auditor, shipped, legacy_return, actor):
        shipped("O1", "Z", "2", day=3)
        legacy_return("O1", "Z", "2", day=5)
        auditor = make_auditor(ZeroCostPolicy.REJECT)
        gap = auditor.find_gaps(JANUARY)[0]

        with pytest.raises(ZeroCostRejectedError):
            auditor.backfill(gap, actor)


class TestRun:
    """Full runs with per-item isolation."""

    def test_returned_stock_available_to_later_gap(
        self, make_layer, shipped, shipments, legacy_return, auditor, ledger, admin, actor
    ):
        make_layer("S", "5", "10", day=1)
        shipped("O1", "S", "5", day=3)
        shipments.cost_line("O1", "S", actor)
        legacy_return("O1", "S", "2", day=4)
        shipped("O2", "S", "2", day=6)

        summary = auditor.run(JANUARY, admin)

        assert (summary.total, summary.processed, summary.skipped, summary.failed) == (3, 2, 1, 0)
        assert [item.kind for item in summary.items] == [
            GapKind.MISSING_RETURN_LAYER,
            GapKind.MISSING_ALLOCATION,
            GapKind.MISSING_ALLOCATION,
        ]
        assert ledger.net_allocated_qty("O2", "S") == Decimal("2")
        assert ledger.credited_qty("O1", "S") == Decimal("2")

    def test_failure_does_not_stop_the_run(self, make_layer, shipped, auditor, admin):
        shipped("O1", "EMPTY", "1", day=2)
        make_layer("S", "10", "5", day=1)
        shipped("O2", "S", "3", day=3)

        summary = auditor.run(JANUARY, admin)

        statuses = [(item.order_id, item.status) for item in summary.items]
        assert statuses == [
            ("O1", BackfillItemStatus.FAILED),
            ("O2", BackfillItemStatus.PROCESSED),
        ]
        assert summary.failed == 1
        assert any("EMPTY" in w for w in summary.warnings)
        assert auditor.find_gaps(JANUARY)[0].order_id == "O1"

    def test_second_run_skips_everything(self, make_layer, shipped, legacy_return, auditor, admin):
        make_layer("S", "10", "5", day=1)
        shipped("O1", "S", "3", day=3)
        legacy_return("O1", "S", "1", day=4)
        auditor.run(JANUARY, admin)

        second = auditor.run(JANUARY, admin)

        assert second.total == 2
        assert second.skipped == 2
        assert second.processed == 0
        assert all(item.message == "already covered" for item in second.items)

    def test_zero_cost_allowed_with_warning(
        self, shipped, legacy_return, auditor, layer_store, admin, captured_logs
    ):
        shipped("O1", "Z", "2", day=3)
        legacy_return("O1", "Z", "2", day=5)

        summary = auditor.run(DateRange(jan(4), jan(6)), admin)

        (item,) = summary.items
        assert item.status is BackfillItemStatus.PROCESSED
        assert layer_store.get(item.layer_id).unit_cost == Decimal("0")
        assert summary.warnings
        assert any(r["message"] == "backfill_zero_cost_layer" for r in captured_logs())

    def test_zero_cost_rejected_writes_nothing(
        self, make_auditor, shipped, legacy_return, layer_store, admin
    ):
        shipped("O1", "Z", "2", day=3)
        record = legacy_return("O1", "Z", "2", day=5)

        summary = make_auditor(ZeroCostPolicy.REJECT).run(DateRange(jan(4), jan(6)), admin)

        assert summary.failed == 1
        assert layer_store.find_return_layer(record.id) is None

    def test_run_log_persisted(self, session, make_layer, shipped, auditor, admin):
        make_layer("S", "10", "5", day=1)
        shipped("O1", "S", "3", day=3)
        shipped("O2", "MISSING", "1", day=4)

        summary = auditor.run(JANUARY, admin)
        session.flush()
        session.expire_all()

        (run,) = ReturnSelector(session).backfill_runs()
        assert run.id == summary.run_id
        assert (run.total, run.processed, run.failed) == (2, 1, 1)
        assert run.finished_at is not None
        assert [(i.order_id, i.status) for i in run.items] == [
            ("O1", "processed"),
            ("O2", "failed"),
        ]
        assert run.warnings
