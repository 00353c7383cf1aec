"""
BaseService -- abstract base for kernel persistence services.

Responsibility:
    Common constructor and session-handling contract for every service
    that reads or writes ORM rows.  Services use ``session.flush()`` and
    never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries belong to the caller (``session_scope`` or a
      test fixture); a service never commits or rolls back.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from harvest_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session):
        self.session = session
