"""
Property tests for the ledger invariant.

For any interleaving of shipments and reversals against persisted layers:

    qty_received - qty_remaining == sum(debit qty) - sum(credit qty)

for every layer, and 0 <= qty_remaining <= qty_received.

Each example gets its own in-memory database so examples never share state.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from costing_kernel.domain.clock import DeterministicClock
from costing_kernel.domain.context import ActorContext
from costing_kernel.domain.values import RefType
from costing_kernel.db.engine import create_tables
from costing_kernel.selectors.layer_selector import LayerSelector
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore
from costing_kernel.services.reversal_service import ReversalService
from costing_services.fifo_allocator import FifoAllocator

SHIPPED = datetime(2024, 2, 1, tzinfo=UTC)

operations = st.lists(
    st.one_of(
        st.tuples(st.just("ship"), st.integers(min_value=1, max_value=12)),
        st.tuples(st.just("reverse"), st.integers(min_value=0, max_value=20)),
    ),
    min_size=1,
    max_size=15,
)


def _fresh_session() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    return Session(engine)


class TestLedgerInvariant:
    """Layer quantities always agree with the COGS rows that reference them."""

    @given(ops=operations)
    @settings(max_examples=40, deadline=None)
    def test_any_ship_reverse_sequence_keeps_layers_consistent(self, ops):
        session = _fresh_session()
        clock = DeterministicClock(datetime(2024, 1, 1, tzinfo=UTC))
        actor = ActorContext(actor_id=uuid4())
        layers = LayerStore(session, clock)
        ledger = CogsLedger(session, clock)
        allocator = FifoAllocator(session, clock, layer_store=layers, ledger=ledger)
        reversal = ReversalService(session, clock, layer_store=layers, ledger=ledger)

        created = [
            layers.create_layer(
                sku="S",
                qty=Decimal(qty),
                unit_cost=Decimal(cost),
                received_at=datetime(2024, 1, day, tzinfo=UTC),
                ref_type=RefType.PURCHASE,
                actor=actor,
            )
            for day, (qty, cost) in enumerate([("10", "5"), ("8", "7"), ("6", "11")], start=1)
        ]

        try:
            for n, (op, value) in enumerate(ops):
                if op == "ship":
                    allocator.allocate_and_record(
                        f"O{n}", "S", Decimal(value), SHIPPED, actor, allow_partial=True
                    )
                else:
                    groups = [
                        group_id
                        for i in range(n)
                        for group_id in ledger.active_shipment_groups(f"O{i}", "S")
                    ]
                    if groups:
                        reversal.reverse(groups[value % len(groups)], "property", actor)
            session.flush()

            report = LayerSelector(session).consistency_report("S")
            assert len(report) == 3
            assert all(entry.is_consistent for entry in report), report
            for layer in created:
                assert Decimal("0") <= layer.qty_remaining <= layer.qty_received
        finally:
            session.close()
            session.get_bind().dispose()
