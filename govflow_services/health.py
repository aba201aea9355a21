"""
govflow_services.health -- process-wide integrity alarm.

Responsibility:
    A broken audit chain is the one error that stops the system.  When
    verification reports AUDIT_CHAIN_BROKEN the alarm is raised; while it
    is raised the action dispatcher, the sweeper and SYSTEM-actor
    transitions refuse to run.  Only an operator clears it, after
    investigation.  Officer and citizen transitions keep working so that
    cases are not frozen, and every one of them still appends to (and is
    protected by) the chain.

Architecture position:
    Services layer.  Shared by the executor, dispatcher and sweeper of
    one process.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

from govflow_kernel.domain.dtos import ChainVerification
from govflow_kernel.logging_config import get_logger

logger = get_logger("services.health")


@dataclass(frozen=True)
class AlarmState:
    raised_at: datetime
    reason: str
    event_id: str | None
    checked_count: int


class IntegrityAlarm:
    """Latched alarm; thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: AlarmState | None = None

    @property
    def is_raised(self) -> bool:
        with self._lock:
            return self._state is not None

    @property
    def state(self) -> AlarmState | None:
        with self._lock:
            return self._state

    def raise_alarm(self, reason: str, raised_at: datetime, event_id: str | None = None,
                    checked_count: int = 0) -> None:
        with self._lock:
            if self._state is not None:
                return
            self._state = AlarmState(raised_at, reason, event_id, checked_count)
        logger.critical(
            "integrity_alarm_raised",
            extra={"reason": reason, "event_id": event_id, "checked_count": checked_count},
        )

    def record_verification(self, result: ChainVerification, now: datetime) -> None:
        """Raise the alarm if a chain verification failed."""
        if result.ok:
            return
        mismatch = result.mismatch
        self.raise_alarm(
            reason=mismatch.reason if mismatch else "AUDIT_CHAIN_BROKEN",
            raised_at=now,
            event_id=mismatch.event_id if mismatch else None,
            checked_count=result.checked_count,
        )

    def clear(self, cleared_by: str) -> None:
        with self._lock:
            previous = self._state
            self._state = None
        if previous is not None:
            logger.warning(
                "integrity_alarm_cleared",
                extra={"cleared_by": cleared_by, "reason": previous.reason},
            )
