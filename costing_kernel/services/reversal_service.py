"""
ReversalService -- the single reversal path for COGS allocation groups.

Responsibility:
    Given an allocation group (every row written by one shipment, one return
    credit or one backfill), append a mirror row for each original row and
    apply the mirror's effect to the referenced layer.

Architecture position:
    Kernel > Services.  Called by cancel_shipment, undo_return and the
    displacement step of undo_return.  There is no other code path that
    re-credits a layer.

Invariants enforced:
    SINGLE_REVERSAL -- a group is reversed at most once.  Checked under row
        locks before writing, and backstopped by UNIQUE(reversal_of_id) for
        the race where two transactions pass the check together.
    Exact restoration -- a mirror copies qty and unit_cost_used from the
        original row.  Nothing is re-derived from current layer state.
    LAYER_BOUND -- layer credits and debits go through LayerStore, which
        raises ConsistencyError instead of clamping.

Failure modes:
    - AllocationGroupNotFoundError if the group has no rows.
    - AlreadyReversedError on a second reversal (pre-check or constraint).
    - ReversalOfReversalError if the group consists of mirror rows.
    - ConsistencyError if a credit would push a layer above qty_received.

Audit relevance:
    Mirrors are linked row-for-row through ``reversal_of_id`` and share a
    new group id, so both the original and its reversal can be read as
    units.  A ``reversal_completed`` log line records both group ids.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_kernel.db.types import ZERO
from costing_kernel.domain.clock import Clock
from costing_kernel.domain.context import ActorContext
from costing_kernel.exceptions import (
    AllocationGroupNotFoundError,
    AlreadyReversedError,
    ReversalOfReversalError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cogs_allocation import COGSAllocation
from costing_kernel.services.base import BaseService
from costing_kernel.services.cogs_ledger import CogsLedger
from costing_kernel.services.layer_store import LayerStore

logger = get_logger("services.reversal")


@dataclass(frozen=True, slots=True)
class ReversalResult:
    """Outcome of reversing one allocation group."""

    original_group_id: UUID
    reversal_group_id: UUID
    mirror_row_ids: tuple[UUID, ...]
    # (layer_id, signed delta applied to qty_remaining)
    layer_deltas: tuple[tuple[UUID, Decimal], ...]
    amount_reversed: Decimal


class ReversalService(BaseService):
    """
    Mirror-and-restore reversal of allocation groups.

    Contract:
        ``reverse(group_id, ...)`` flushes the mirror rows and layer updates
        into the caller's transaction.  The caller commits.

    Guarantees:
        - Exactly one mirror per original row.
        - Each layer's qty_remaining moves by exactly the mirrored qty.

    Non-goals:
        - Does not re-allocate anything; displaced shipments are the
          caller's concern (see ReturnService.undo_return).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        layer_store: LayerStore | None = None,
        ledger: CogsLedger | None = None,
    ):
        super().__init__(session, clock)
        self._layers = layer_store or LayerStore(session, self.clock)
        self._ledger = ledger or CogsLedger(session, self.clock)

    def reverse(
        self,
        group_id: UUID,
        reason: str,
        actor: ActorContext,
        effective_at: datetime | None = None,
    ) -> ReversalResult:
        """
        Reverse every row of ``group_id``.

        Preconditions:
            - The group exists, is not itself a reversal and has not been
              reversed.

        Postconditions:
            - One mirror row per original row, sharing a new group id.
            - Referenced layers moved back by exactly the original quantities.

        Raises:
            AllocationGroupNotFoundError, ReversalOfReversalError,
            AlreadyReversedError, ConsistencyError.
        """
        t0 = time.monotonic()
        originals = self._ledger.rows_for_group(group_id, lock=True)
        if not originals:
            raise AllocationGroupNotFoundError(str(group_id))
        if any(row.is_mirror for row in originals):
            raise ReversalOfReversalError(str(group_id))
        if self._ledger.mirrored_row_ids(row.id for row in originals):
            logger.warning("reversal_rejected_already_reversed", extra={
                "group_id": str(group_id),
            })
            raise AlreadyReversedError(str(group_id))

        layers = self._layers.lock_layers(
            row.layer_id for row in originals if row.layer_id is not None
        )

        effective_at = effective_at or self.clock.now()
        now = self.clock.now()
        reversal_group_id = uuid4()
        mirrors: list[COGSAllocation] = []
        deltas: list[tuple[UUID, Decimal]] = []

        for row in originals:
            mirror = COGSAllocation(
                order_id=row.order_id,
                sku=row.sku,
                shipped_at=effective_at,
                method=row.method,
                qty=row.qty,
                unit_cost_used=row.unit_cost_used,
                amount=-row.amount,
                is_reversal=not row.is_reversal,
                layer_id=row.layer_id,
                group_id=reversal_group_id,
                reversal_of_id=row.id,
                return_id=row.return_id,
                reason=reason,
                created_at=now,
                created_by=actor.actor_id,
            )
            if row.layer_id is not None:
                delta = mirror.layer_delta
                self._layers.apply_delta(layers[row.layer_id], delta)
                deltas.append((row.layer_id, delta))
            self.session.add(mirror)
            mirrors.append(mirror)

        try:
            self._flush()
        except IntegrityError as exc:
            if "reversal_of" in str(exc.orig):
                logger.warning("reversal_rejected_concurrent", extra={
                    "group_id": str(group_id),
                })
                raise AlreadyReversedError(str(group_id)) from exc
            raise

        amount = sum((row.amount for row in originals), ZERO)
        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info("reversal_completed", extra={
            "group_id": str(group_id),
            "reversal_group_id": str(reversal_group_id),
            "rows": len(mirrors),
            "layers_touched": len(deltas),
            "amount_reversed": str(amount),
            "reason": reason,
            "duration_ms": duration_ms,
        })

        return ReversalResult(
            original_group_id=group_id,
            reversal_group_id=reversal_group_id,
            mirror_row_ids=tuple(m.id for m in mirrors),
            layer_deltas=tuple(deltas),
            amount_reversed=amount,
        )
