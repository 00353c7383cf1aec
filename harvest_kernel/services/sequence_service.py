"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for the per-simulation
    sync action log.  A dedicated counter table with row-level locking
    (``SELECT ... FOR UPDATE``) keeps allocation unique and ordered under
    concurrent access.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by SimulationRepository when appending sync actions.

Invariants enforced:
    - Sequences are strictly monotonic.  The locked counter row is the sole
      source of truth; MAX(sequence) + 1 is never used.
    - The increment is only visible after the caller's transaction
      commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from harvest_kernel.db.base import Base
from harvest_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One named sequence and its current value."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


def sync_sequence_name(simulation_id: str) -> str:
    """Counter name for one simulation's sync action log."""
    return f"sync:{simulation_id}"


class SequenceService:
    """
    Transactional sequence numbers.

    Guarantees:
        - Strictly monotonic per sequence name.
        - ``SELECT ... FOR UPDATE`` serializes concurrent allocations for
          the same name on PostgreSQL; SQLite serializes writers itself.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock (or create) the counter row, increment it, return the new value.

        Returns:
            The next sequence value (always > 0).
        """
        self._session.expire_all()

        counter = self._locked_counter(sequence_name)

        if counter is None:
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                self._session.expire_all()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value
