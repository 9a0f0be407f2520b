"""
Tests for CogsLedger -- append-only COGS rows and the queries over them.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.domain.values import AllocationMethod
from costing_kernel.exceptions import InvalidQuantityError

SHIPPED = datetime(2024, 1, 10, tzinfo=UTC)


class TestNetQuantities:
    """Net allocated and credited quantities per order line."""

    def test_net_allocated_follows_reversals(self, make_layer, allocator, reversal, ledger, actor):
        make_layer("S", "10", "1", day=1)
        first = allocator.allocate_and_record("O1", "S", Decimal("4"), SHIPPED, actor)
        assert ledger.net_allocated_qty("O1", "S") == Decimal("4")

        reversal.reverse(first.group_id, "cancel", actor)
        allocator.allocate_and_record("O1", "S", Decimal("3"), SHIPPED, actor)

        assert ledger.net_allocated_qty("O1", "S") == Decimal("3")
        assert ledger.net_allocated_qty("O2", "S") == Decimal("0")

    def test_credit_rows_do_not_reduce_net_allocated(self, make_layer, allocator, ledger, actor):
        make_layer("S", "10", "1", day=1)
        allocator.allocate_and_record("O1", "S", Decimal("4"), SHIPPED, actor)
        return_id = uuid4()

        ledger.record_return_credit(
            order_id="O1",
            sku="S",
            returned_at=SHIPPED,
            qty=Decimal("2"),
            unit_cost=Decimal("1"),
            return_id=return_id,
            method=AllocationMethod.FIFO,
            actor=actor,
        )

        assert ledger.net_allocated_qty("O1", "S") == Decimal("4")
        assert ledger.credited_qty("O1", "S") == Decimal("2")
        (credit,) = ledger.active_credit_rows(return_id)
        assert credit.amount == Decimal("-2")
        assert credit.layer_id is None

    def test_zero_credit_rejected(self, ledger, actor):
        with pytest.raises(InvalidQuantityError):
            ledger.record_return_credit(
                order_id="O1",
                sku="S",
                returned_at=SHIPPED,
                qty=Decimal("0"),
                unit_cost=Decimal("1"),
                return_id=uuid4(),
                method=AllocationMethod.FIFO,
                actor=actor,
            )


class TestGroupQueries:
    """Active groups and layer consumers."""

    def test_active_groups_exclude_reversed(self, make_layer, allocator, reversal, ledger, actor):
        make_layer("S", "10", "1", day=1)
        first = allocator.allocate_and_record("O1", "S", Decimal("1"), SHIPPED, actor)
        second = allocator.allocate_and_record("O1", "S", Decimal("1"), SHIPPED, actor)

        reversal.reverse(first.group_id, "dup", actor)

        assert ledger.active_shipment_groups("O1", "S") == [second.group_id]

    def test_consumers_of_layer(self, make_layer, allocator, ledger, actor):
        layer = make_layer("S", "10", "1", day=1)
        a = allocator.allocate_and_record("O1", "S", Decimal("2"), SHIPPED, actor)
        b = allocator.allocate_and_record("O2", "S", Decimal("2"), SHIPPED, actor)

        assert set(ledger.consumer_groups_of_layer(layer.id)) == {a.group_id, b.group_id}
        assert ledger.layer_ledger_net(layer.id) == Decimal("4")
