"""Tests for return cost basis and daily COGS calculators."""

from datetime import UTC, date, datetime
from decimal import Decimal

from costing_engines.cost_basis import daily_cogs, return_cost_basis


class TestReturnCostBasis:
    """Weighted original cost of shipped units."""

    def test_weighted_over_rows(self):
        rows = [(Decimal("10"), Decimal("1000")), (Decimal("5"), Decimal("600"))]

        assert return_cost_basis(rows) == Decimal("106.666666667")

    def test_single_row_is_its_unit_cost(self):
        assert return_cost_basis([(Decimal("4"), Decimal("48"))]) == Decimal("12")

    def test_no_quantity_returns_none(self):
        assert return_cost_basis([]) is None


class TestDailyCogs:
    """Per-day totals with reversals netted."""

    def test_groups_by_day_in_order(self):
        rows = [
            (datetime(2024, 1, 2, 9, tzinfo=UTC), Decimal("50")),
            (datetime(2024, 1, 1, 9, tzinfo=UTC), Decimal("10")),
            (datetime(2024, 1, 2, 18, tzinfo=UTC), Decimal("25.555")),
        ]

        result = daily_cogs(rows)

        assert [(d.day, d.amount, d.row_count) for d in result] == [
            (date(2024, 1, 1), Decimal("10.00"), 1),
            (date(2024, 1, 2), Decimal("75.56"), 2),
        ]

    def test_reversals_net_against_shipments(self):
        rows = [
            (datetime(2024, 1, 3, tzinfo=UTC), Decimal("1600")),
            (datetime(2024, 1, 3, 12, tzinfo=UTC), Decimal("-1000")),
        ]

        assert daily_cogs(rows)[0].amount == Decimal("600.00")

    def test_negative_day_floored_at_zero(self):
        rows = [(datetime(2024, 1, 4, tzinfo=UTC), Decimal("-300"))]

        assert daily_cogs(rows)[0].amount == Decimal("0.00")
