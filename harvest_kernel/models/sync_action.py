"""
Module: harvest_kernel.models.sync_action
Responsibility: ORM persistence for the append-only sync action log and the
    conflict audit trail.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - action_id and idempotency_key are globally unique.
    - (simulation_id, sequence) is unique; sequence comes from the locked
      counter in SequenceService, never from MAX(sequence) + 1.
    - Rows are appended; only the delivery columns (status, attempts,
      next_attempt_at, last_error) change afterwards.

Failure modes:
    - IntegrityError on a duplicate action_id, idempotency key or
      (simulation_id, sequence).
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from harvest_kernel.db.base import TrackedBase
from harvest_kernel.db.types import Sequence


class SyncActionRecord(TrackedBase):
    """One recorded mutation awaiting (or past) server acknowledgement."""

    __tablename__ = "sync_actions"

    __table_args__ = (
        UniqueConstraint("simulation_id", "sequence", name="uq_sync_action_sequence"),
        Index("idx_sync_action_status", "status"),
    )

    action_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    simulation_id: Mapped[str] = mapped_column(String(64), nullable=False)

    sequence: Mapped[Sequence] = mapped_column(nullable=False)

    kind: Mapped[str] = mapped_column(String(30), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    client_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    priority: Mapped[str] = mapped_column(String(10), nullable=False)

    status: Mapped[str] = mapped_column(String(10), nullable=False)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    idempotency_key: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        unique=True,
    )


class ConflictAuditRecord(TrackedBase):
    """
    Retained copy of a resolved conflict; purged after the retention window.

    Values are stored as canonical JSON text.
    """

    __tablename__ = "conflict_audit"

    __table_args__ = (
        Index("idx_conflict_audit_detected", "detected_at"),
    )

    simulation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    field_path: Mapped[str] = mapped_column(String(200), nullable=False)

    field_class: Mapped[str] = mapped_column(String(20), nullable=False)

    winner: Mapped[str] = mapped_column(String(10), nullable=False)

    local_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    server_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    resolved_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
