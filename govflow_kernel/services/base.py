"""
BaseService -- common constructor for kernel services.

Responsibility:
    Every kernel service receives the caller's SQLAlchemy ``Session`` and
    a Clock.  Services persist with ``session.flush()`` and never commit;
    the caller (transition executor, sweeper, test harness) owns
    commit/rollback through ``session_scope()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Failure modes:
    - A subclass that commits breaks the all-or-nothing guarantee of a
      transition (state, task, audit event and outbox rows together).
"""

from abc import ABC

from sqlalchemy.orm import Session

from govflow_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
