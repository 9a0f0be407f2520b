"""
Module: costing_kernel.models.backfill_run
Responsibility: Persisted log of coverage/backfill runs and the outcome of
    every candidate they examined.
Architecture position: Kernel > Models.  May import from db/ only.

Audit relevance:
    Each runBackfill leaves one BackfillRun with aggregate counts and one
    BackfillRunItem per candidate (processed / skipped / failed plus the
    warning text), so an administrator can see what was repaired and why
    an item was not.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import Base, UUIDString


class BackfillRun(Base):
    """One execution of the coverage/backfill auditor."""

    __tablename__ = "backfill_runs"

    range_start: Mapped[datetime] = mapped_column(nullable=False)
    range_end: Mapped[datetime] = mapped_column(nullable=False)

    started_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    warnings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    items: Mapped[list[BackfillRunItem]] = relationship(
        "BackfillRunItem",
        back_populates="run",
        order_by="BackfillRunItem.seq",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<BackfillRun {self.id}: processed={self.processed} "
            f"skipped={self.skipped} failed={self.failed}>"
        )


class BackfillRunItem(Base):
    """Outcome for one candidate record within a backfill run."""

    __tablename__ = "backfill_run_items"

    __table_args__ = (
        CheckConstraint(
            "status IN ('processed', 'skipped', 'failed')",
            name="ck_backfill_run_items_status",
        ),
        Index("idx_backfill_run_items_run", "run_id"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("backfill_runs.id"),
        nullable=False,
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    gap_kind: Mapped[str] = mapped_column(String(30), nullable=False)

    record_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    run: Mapped[BackfillRun] = relationship("BackfillRun", back_populates="items")
