"""
Tests for the pure FIFO planner (costing_engines.fifo).

Tests cover:
- Oldest-first consumption and layer skipping
- as_of cutoff
- Partial plans and require_full
- Specific identification plans and pick totals
- Property: plans never over-draw a layer and respect FIFO order
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from costing_engines.fifo import (
    LayerSnapshot,
    check_pick_total,
    eligible_layers,
    plan_fifo,
    plan_specific,
)
from costing_kernel.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    LayerNotFoundError,
)

BASE = datetime(2024, 1, 1, tzinfo=UTC)


def snap(qty, cost, day, sku="S"):
    return LayerSnapshot(
        layer_id=uuid4(),
        sku=sku,
        received_at=BASE + timedelta(days=day),
        qty_remaining=Decimal(qty),
        unit_cost=Decimal(cost),
    )


class TestPlanFifo:
    """Greedy oldest-first planning."""

    def test_scenario_consumes_oldest_layer_first(self):
        """10 @ 100 then 10 @ 120: shipping 15 takes all of A and 5 of B."""
        a = snap("10", "100", 0)
        b = snap("10", "120", 4)

        plan = plan_fifo("S", Decimal("15"), [b, a])

        assert [(line.layer_id, line.qty_taken) for line in plan.lines] == [
            (a.layer_id, Decimal("10")),
            (b.layer_id, Decimal("5")),
        ]
        assert plan.total_cost == Decimal("1600")
        assert plan.blended_unit_cost_display == Decimal("106.67")
        assert plan.shortfall == Decimal("0")
        assert not plan.is_partial

    def test_lines_carry_each_layers_own_cost(self):
        a = snap("2", "5", 0)
        b = snap("2", "7", 1)

        plan = plan_fifo("S", Decimal("3"), [a, b])

        assert [line.unit_cost for line in plan.lines] == [Decimal("5"), Decimal("7")]

    def test_empty_layers_are_skipped(self):
        empty = snap("0", "1", 0)
        full = snap("5", "2", 1)

        plan = plan_fifo("S", Decimal("5"), [empty, full])

        assert [line.layer_id for line in plan.lines] == [full.layer_id]

    def test_other_skus_are_ignored(self):
        other = snap("50", "1", 0, sku="OTHER")
        mine = snap("5", "2", 1)

        plan = plan_fifo("S", Decimal("3"), [other, mine])

        assert [line.layer_id for line in plan.lines] == [mine.layer_id]

    def test_as_of_excludes_later_receipts(self):
        early = snap("3", "10", 0)
        late = snap("10", "20", 10)

        plan = plan_fifo("S", Decimal("5"), [early, late], as_of=BASE + timedelta(days=5))

        assert plan.total_qty == Decimal("3")
        assert plan.shortfall == Decimal("2")
        assert plan.is_partial

    def test_no_layers_gives_empty_plan_with_full_shortfall(self):
        plan = plan_fifo("S", Decimal("4"), [])

        assert plan.is_empty
        assert plan.shortfall == Decimal("4")
        assert plan.blended_unit_cost is None

    def test_require_full_raises_on_shortfall(self):
        plan = plan_fifo("S", Decimal("12"), [snap("10", "1", 0)])

        with pytest.raises(InsufficientStockError) as exc_info:
            plan.require_full()

        assert exc_info.value.requested == Decimal("12")
        assert exc_info.value.available == Decimal("10")
        assert exc_info.value.shortfall == Decimal("2")

    @pytest.mark.parametrize("qty", [Decimal("0"), Decimal("-1")])
    def test_non_positive_quantity_rejected(self, qty):
        with pytest.raises(InvalidQuantityError):
            plan_fifo("S", qty, [snap("10", "1", 0)])

    def test_eligible_layers_sorted_by_received_at(self):
        a, b, c = snap("1", "1", 3), snap("1", "1", 1), snap("1", "1", 2)

        ordered = eligible_layers([a, b, c])

        assert ordered == [b, c, a]


class TestPlanSpecific:
    """Specific identification: the caller names the layers."""

    def test_picks_named_layers_regardless_of_age(self):
        old = snap("10", "100", 0)
        new = snap("10", "120", 5)

        plan = plan_specific("S", [(new.layer_id, Decimal("4"))], [old, new])

        assert [(line.layer_id, line.qty_taken) for line in plan.lines] == [
            (new.layer_id, Decimal("4")),
        ]
        assert plan.total_cost == Decimal("480")

    def test_unknown_layer_rejected(self):
        with pytest.raises(LayerNotFoundError):
            plan_specific("S", [(uuid4(), Decimal("1"))], [snap("10", "1", 0)])

    def test_over_pick_rejected(self):
        layer = snap("3", "1", 0)

        with pytest.raises(InsufficientStockError):
            plan_specific(
                "S",
                [(layer.layer_id, Decimal("2")), (layer.layer_id, Decimal("2"))],
                [layer],
            )

    def test_empty_picks_rejected(self):
        with pytest.raises(InvalidQuantityError):
            plan_specific("S", [], [snap("3", "1", 0)])


class TestPickTotal:
    """Picks must cover the line exactly."""

    def test_exact_total_accepted(self):
        picks = [(uuid4(), Decimal("2")), (uuid4(), Decimal("1.5"))]

        assert check_pick_total(picks, Decimal("3.5")) == Decimal("3.5")

    def test_mismatch_names_the_line_quantity(self):
        with pytest.raises(InvalidQuantityError) as excinfo:
            check_pick_total([(uuid4(), Decimal("3"))], Decimal("5"))

        assert excinfo.value.field == "layer_picks"
        assert "must add up to the line quantity 5" in str(excinfo.value)
        assert "positive decimal" not in str(excinfo.value)

    def test_non_positive_pick_rejected(self):
        with pytest.raises(InvalidQuantityError) as excinfo:
            check_pick_total([(uuid4(), Decimal("5")), (uuid4(), Decimal("0"))], Decimal("5"))

        assert excinfo.value.field == "layer_pick_qty"


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

layer_specs = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=50),    # qty_remaining
        st.integers(min_value=0, max_value=500),   # unit cost
        st.integers(min_value=0, max_value=30),    # day received
    ),
    min_size=0,
    max_size=8,
)


class TestFifoProperties:
    """Invariants that hold for any layer set and request."""

    @given(specs=layer_specs, qty=st.integers(min_value=1, max_value=200))
    @settings(max_examples=200, deadline=None)
    def test_plan_never_overdraws_and_accounts_for_request(self, specs, qty):
        layers = [snap(str(q), str(c), d) for q, c, d in specs]
        by_id = {layer.layer_id: layer for layer in layers}

        plan = plan_fifo("S", Decimal(qty), layers)

        for line in plan.lines:
            assert Decimal("0") < line.qty_taken <= by_id[line.layer_id].qty_remaining
        assert plan.total_qty + plan.shortfall == Decimal(qty)
        available = sum((layer.qty_remaining for layer in layers), Decimal("0"))
        assert plan.total_qty == min(available, Decimal(qty))

    @given(specs=layer_specs, qty=st.integers(min_value=1, max_value=200))
    @settings(max_examples=200, deadline=None)
    def test_no_newer_layer_used_while_older_has_stock(self, specs, qty):
        layers = [snap(str(q), str(c), d) for q, c, d in specs]
        plan = plan_fifo("S", Decimal(qty), layers)

        taken = {line.layer_id: line.qty_taken for line in plan.lines}
        ordered = eligible_layers(layers)
        used = [layer for layer in ordered if layer.layer_id in taken]
        if not used:
            return
        newest_used = used[-1]
        for layer in ordered:
            if layer.sort_key < newest_used.sort_key:
                # Every strictly older layer is fully drained
                assert taken.get(layer.layer_id) == layer.qty_remaining
