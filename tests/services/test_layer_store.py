"""
Tests for LayerStore -- guarded layer mutation and voiding.

Tests cover:
- Layer creation and validation
- Candidate ordering and filtering
- Bound checks raising ConsistencyError (never clamping)
- Void rules
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.domain.values import RefType
from costing_kernel.exceptions import (
    ConsistencyError,
    InvalidQuantityError,
    LayerNotFoundError,
    LayerNotVoidableError,
    LayerVoidedError,
)


class TestCreateLayer:
    """Creating receipt layers."""

    def test_new_layer_is_full(self, make_layer):
        layer = make_layer("S", "10", "100")

        assert layer.qty_received == Decimal("10")
        assert layer.qty_remaining == Decimal("10")
        assert layer.is_untouched
        assert layer.ref_type == RefType.PURCHASE.value
        assert layer.is_voided is False

    def test_records_actor_and_clock(self, make_layer, actor, clock):
        layer = make_layer("S", "1", "1")

        assert layer.created_by == actor.actor_id
        assert layer.created_at == clock.now()

    @pytest.mark.parametrize("qty", ["0", "-5"])
    def test_non_positive_qty_rejected(self, make_layer, qty):
        with pytest.raises(InvalidQuantityError):
            make_layer("S", qty, "1")

    def test_negative_cost_rejected(self, make_layer):
        with pytest.raises(InvalidQuantityError):
            make_layer("S", "1", "-0.01")

    def test_zero_cost_allowed(self, make_layer):
        layer = make_layer("S", "1", "0")

        assert layer.unit_cost == Decimal("0")


class TestCandidates:
    """FIFO candidate selection."""

    def test_ordered_oldest_first(self, make_layer, layer_store):
        late = make_layer("S", "1", "1", day=9)
        early = make_layer("S", "1", "1", day=2)
        middle = make_layer("S", "1", "1", day=5)

        ids = [layer.id for layer in layer_store.lock_candidates("S")]

        assert ids == [early.id, middle.id, late.id]

    def test_excludes_empty_voided_and_other_skus(self, make_layer, layer_store, actor):
        keep = make_layer("S", "5", "1", day=1)
        drained = make_layer("S", "2", "1", day=2)
        layer_store.decrement(drained, Decimal("2"))
        voided = make_layer("S", "3", "1", day=3)
        layer_store.void(voided.id, "duplicate", actor)
        make_layer("OTHER", "9", "1", day=1)

        ids = [layer.id for layer in layer_store.lock_candidates("S")]

        assert ids == [keep.id]

    def test_as_of_cutoff(self, make_layer, layer_store):
        early = make_layer("S", "1", "1", day=1)
        make_layer("S", "1", "1", day=20)

        ids = [
            layer.id
            for layer in layer_store.lock_candidates("S", as_of=datetime(2024, 1, 10, tzinfo=UTC))
        ]

        assert ids == [early.id]


class TestBounds:
    """qty_remaining stays within [0, qty_received]."""

    def test_decrement_and_increment(self, make_layer, layer_store):
        layer = make_layer("S", "10", "1")

        layer_store.decrement(layer, Decimal("4"))
        assert layer.qty_remaining == Decimal("6")
        layer_store.increment(layer, Decimal("3"))
        assert layer.qty_remaining == Decimal("9")

    def test_decrement_below_zero_raises_without_clamping(self, make_layer, layer_store):
        layer = make_layer("S", "3", "1")

        with pytest.raises(ConsistencyError) as exc_info:
            layer_store.decrement(layer, Decimal("4"))

        assert layer.qty_remaining == Decimal("3")
        assert exc_info.value.layer_id == str(layer.id)
        assert exc_info.value.attempted_delta == Decimal("-4")

    def test_increment_above_received_raises(self, make_layer, layer_store):
        layer = make_layer("S", "3", "1")

        with pytest.raises(ConsistencyError):
            layer_store.increment(layer, Decimal("1"))

        assert layer.qty_remaining == Decimal("3")

    def test_violation_logged_at_error(self, make_layer, layer_store, captured_logs):
        layer = make_layer("S", "1", "1")

        with pytest.raises(ConsistencyError):
            layer_store.increment(layer, Decimal("5"))

        logs = [r for r in captured_logs() if r["message"] == "consistency_violation"]
        assert len(logs) == 1
        assert logs[0]["level"] == "ERROR"
        assert logs[0]["layer_id"] == str(layer.id)
        assert logs[0]["attempted_delta"] == "5"

    def test_decrement_voided_layer_rejected(self, make_layer, layer_store, actor):
        layer = make_layer("S", "3", "1")
        layer_store.void(layer.id, "entered twice", actor)

        with pytest.raises(LayerVoidedError):
            layer_store.decrement(layer, Decimal("1"))


class TestVoid:
    """Voiding untouched layers."""

    def test_void_untouched_layer(self, make_layer, layer_store, actor, clock):
        layer = make_layer("S", "3", "1")

        layer_store.void(layer.id, "wrong sku", actor)

        assert layer.is_voided
        assert layer.void_reason == "wrong sku"
        assert layer.voided_at == clock.now()
        assert layer.qty_remaining == layer.qty_received

    def test_consumed_layer_not_voidable(self, make_layer, layer_store, actor):
        layer = make_layer("S", "3", "1")
        layer_store.decrement(layer, Decimal("1"))

        with pytest.raises(LayerNotVoidableError):
            layer_store.void(layer.id, "late", actor)

    def test_void_twice_rejected(self, make_layer, layer_store, actor):
        layer = make_layer("S", "3", "1")
        layer_store.void(layer.id, "x", actor)

        with pytest.raises(LayerNotVoidableError):
            layer_store.void(layer.id, "x", actor)

    def test_unknown_layer(self, layer_store, actor):
        with pytest.raises(LayerNotFoundError):
            layer_store.void(uuid4(), "x", actor)


class TestLookups:
    """Cost history lookups."""

    def test_latest_unit_cost_uses_most_recent_receipt(self, make_layer, layer_store):
        make_layer("S", "1", "10", day=1)
        make_layer("S", "1", "12", day=8)
        make_layer("S", "1", "11", day=4)

        assert layer_store.latest_unit_cost("S") == Decimal("12")
        assert layer_store.latest_unit_cost(
            "S", as_of=datetime(2024, 1, 5, tzinfo=UTC)
        ) == Decimal("11")
        assert layer_store.latest_unit_cost("NONE") is None

    def test_find_return_layer_by_ref(self, layer_store, actor):
        return_id = uuid4()
        layer = layer_store.create_layer(
            sku="S",
            qty=Decimal("1"),
            unit_cost=Decimal("5"),
            received_at=datetime(2024, 1, 3, tzinfo=UTC),
            ref_type=RefType.RETURN,
            actor=actor,
            ref_id=str(return_id),
        )

        assert layer_store.find_return_layer(return_id).id == layer.id
        assert layer_store.find_return_layer(uuid4()) is None
