"""
BaseService -- abstract base for all costing services.

Responsibility:
    Common constructor and session contract.  Services receive a SQLAlchemy
    ``Session`` and use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services.  Every write service in the kernel and in
    ``costing_services`` extends this class.

Invariants enforced:
    ATOMIC_APPLY -- services flush inside the caller's transaction and never
    commit or roll back.  The request boundary (``CostingService`` via
    ``session_scope``) owns commit/rollback, so a layer decrement and the
    ledger rows describing it land together or not at all.
"""

from abc import ABC

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import OptimisticLockError


class BaseService(ABC):
    """
    Abstract base class for costing services.

    Contract:
        Accepts a ``Session`` (and optionally a ``Clock``) from the caller.

    Guarantees:
        - Never calls ``session.commit()`` or ``session.rollback()``.
        - ``_flush()`` translates a version-column conflict into
          OptimisticLockError.

    Non-goals:
        - Read-only queries belong in ``costing_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _flush(self, entity_type: str = "receipt_layer") -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError(entity_type) from exc
