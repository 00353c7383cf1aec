"""
Module: harvest_kernel.models.simulation
Responsibility: ORM persistence for simulation snapshots and year summaries.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per simulation_id (UNIQUE).  The row holds the last
      validated snapshot; a failed mutation never reaches it.
    - ``checksum`` is the SHA-256 of ``state`` and is written together
      with it, so a torn write is detectable on load.
    - At most one YearSummaryRecord per simulation (UNIQUE).

Failure modes:
    - IntegrityError on duplicate simulation_id.
"""

from decimal import Decimal

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from harvest_kernel.db.base import TrackedBase
from harvest_kernel.db.types import PayloadHash


class SimulationRecord(TrackedBase):
    """
    Latest validated state of one simulation.

    ``state`` is the JSON produced by ``state_to_dict``; the scalar columns
    duplicate a few of its fields for querying.
    """

    __tablename__ = "simulations"

    simulation_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    period_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    state: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    checksum: Mapped[PayloadHash] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SimulationRecord {self.simulation_id} status={self.status} "
            f"period={self.period_index}>"
        )


class YearSummaryRecord(TrackedBase):
    """Derived summary of a completed simulation."""

    __tablename__ = "year_summaries"

    simulation_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    total_income: Mapped[Decimal] = mapped_column(nullable=False)
    total_expenses: Mapped[Decimal] = mapped_column(nullable=False)
    net_savings: Mapped[Decimal] = mapped_column(nullable=False)
    closing_cash: Mapped[Decimal] = mapped_column(nullable=False)

    event_count: Mapped[int] = mapped_column(Integer, nullable=False)
    decision_count: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)

    summary: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
