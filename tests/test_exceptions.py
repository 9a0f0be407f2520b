"""Tests for the exception hierarchy and its OperationResult mapping."""

from decimal import Decimal

import pytest

from costing_kernel.exceptions import (
    AlreadyReversedError,
    ConcurrencyError,
    ConsistencyError,
    CostingError,
    InsufficientStockError,
    LayerNotFoundError,
    NotFoundError,
    OptimisticLockError,
    ReturnExceedsShippedError,
    ReturnError,
)
from costing_services.results import OperationResult


class TestHierarchy:
    """Callers catch by family."""

    @pytest.mark.parametrize("exc, family", [
        (LayerNotFoundError("abc"), NotFoundError),
        (ReturnExceedsShippedError("O1", "S", Decimal("3"), Decimal("2")), ReturnError),
        (OptimisticLockError("receipt_layer"), ConcurrencyError),
        (AlreadyReversedError("g1"), CostingError),
    ])
    def test_family(self, exc, family):
        assert isinstance(exc, family)

    def test_insufficient_stock_carries_shortfall(self):
        exc = InsufficientStockError("S", Decimal("10"), Decimal("7"))

        assert exc.shortfall == Decimal("3")
        assert "shortfall 3" in str(exc)


class TestOperationResultMapping:
    """Failures keep kind, code and structured details."""

    def test_operational_failure(self):
        result = OperationResult.failure(
            InsufficientStockError("S", Decimal("10"), Decimal("7")), order_id="O1"
        )

        assert not result.ok
        assert result.status == "failed"
        assert (result.kind, result.code) == ("insufficient_stock", "INSUFFICIENT_STOCK")
        assert result.details == {
            "sku": "S",
            "requested": "10",
            "available": "7",
            "shortfall": "3",
        }
        assert result.data == {"order_id": "O1"}
        assert not result.is_defect

    def test_consistency_failure_is_a_defect(self):
        exc = ConsistencyError("bound", layer_id="L1", attempted_delta=Decimal("-4"))

        result = OperationResult.failure(exc)

        assert result.is_defect
        assert result.details["layer_id"] == "L1"
        assert result.details["attempted_delta"] == "-4"

    def test_success_payload(self):
        result = OperationResult.success(status="partial", warnings=("short",), group_id="g")

        assert result.ok
        assert result.status == "partial"
        assert result.data == {"group_id": "g"}
        assert result.warnings == ("short",)
