"""
ApplicationLockRegistry -- per-application mutual exclusion in one process.

Responsibility:
    Hands out one ``threading.Lock`` per ARN so transitions on the same
    application are serialized while different applications proceed in
    parallel.  Entries are reference counted and dropped when the last
    holder or waiter leaves, so the registry does not grow with the
    number of applications ever touched.

Architecture position:
    Kernel > Services.  Used by the transition executor around the atomic
    block.  Cross-process exclusion comes from the database (row-version
    CAS everywhere, ``SELECT ... FOR UPDATE`` on PostgreSQL).

Invariants enforced:
    - At most one holder per ARN at a time.
    - The registry's own bookkeeping is guarded by a single mutex that is
      never held while waiting for an application lock.

Failure modes:
    - TimeoutError when ``timeout`` elapses before the lock is acquired.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from govflow_kernel.logging_config import get_logger

logger = get_logger("services.locks")


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class ApplicationLockRegistry:
    """Refcounted lock table keyed by ARN."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, arn: str) -> _Entry:
        with self._mutex:
            entry = self._entries.get(arn)
            if entry is None:
                entry = self._entries[arn] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, arn: str, entry: _Entry) -> None:
        with self._mutex:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(arn) is entry:
                del self._entries[arn]

    @contextmanager
    def hold(self, arn: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the ARN's lock for the duration of the ``with`` block."""
        entry = self._checkout(arn)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                logger.warning("application_lock_timeout", extra={"arn": arn, "timeout": timeout})
                raise TimeoutError(f"Timed out waiting for application lock {arn}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(arn, entry)

    def active_count(self) -> int:
        with self._mutex:
            return len(self._entries)

    def is_locked(self, arn: str) -> bool:
        with self._mutex:
            entry = self._entries.get(arn)
            return entry is not None and entry.lock.locked()
