"""
govflow_services.action_dispatcher -- at-least-once side effects via an outbox.

Responsibility:
    Transitions write one ``ActionDispatch`` row per requested action
    inside their own transaction (``enqueue_actions``).  The dispatcher
    later claims due rows, runs the registered handler, and records
    success, a scheduled retry, or a dead letter.

Architecture position:
    Services layer.  Fed by the transition executor (``submit`` hand-off
    after commit) and by the sweeper (``dispatch_pending``).

Invariants enforced:
    - One row per idempotency key ``arn:transition:action:occurrence``.
    - A row is claimed with a compare-and-swap PENDING -> IN_FLIGHT, so
      two workers never execute the same row concurrently.
    - SUCCEEDED rows are never executed again.
    - Handler failures never touch the committed transition; they are
      logged, retried with exponential backoff and finally dead-lettered.
    - Nothing runs while the integrity alarm is raised.

Failure modes:
    - Handler exceptions are captured as ActionDispatchFailureError log
      records and stored in ``last_error``.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from govflow_kernel.db.engine import session_scope
from govflow_kernel.domain.clock import Clock, SystemClock
from govflow_kernel.domain.dtos import thaw
from govflow_kernel.domain.workflow import ActionKind, ActionSpec, TransitionDef
from govflow_kernel.exceptions import ActionDispatchFailureError, ValidationError
from govflow_kernel.logging_config import LogContext, get_logger
from govflow_kernel.models.action_dispatch import (
    ActionDeadLetter,
    ActionDispatch,
    DispatchStatus,
)
from govflow_kernel.settings import GovflowSettings
from govflow_kernel.utils.idempotency import generate_idempotency_key
from govflow_services.action_handlers import ActionInvocation, HandlerRegistry
from govflow_services.health import IntegrityAlarm

logger = get_logger("services.action_dispatcher")

REQUEUED = "REQUEUED"


@dataclass(frozen=True)
class DispatcherConfig:
    """Retry and worker settings."""

    max_attempts: int = 5
    base_delay: float = 30.0
    max_delay: float = 3600.0
    workers: int = 2
    batch_size: int = 100
    stale_after: float = 900.0

    @classmethod
    def from_settings(cls, settings: GovflowSettings) -> DispatcherConfig:
        return cls(
            max_attempts=settings.dispatch_max_attempts,
            base_delay=settings.dispatch_base_delay,
            max_delay=settings.dispatch_max_delay,
            workers=settings.dispatch_workers,
        )

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** max(attempt - 1, 0), self.max_delay)


@dataclass
class DispatchReport:
    succeeded: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    dead_lettered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    halted: bool = False

    @property
    def processed(self) -> int:
        return len(self.succeeded) + len(self.retried) + len(self.dead_lettered)


@dataclass(frozen=True)
class DeadLetterInfo:
    dead_letter_id: str
    dispatch_id: str
    idempotency_key: str
    arn: str
    kind: str
    attempts: int
    last_error: str | None
    dead_lettered_at: datetime
    resolved_at: datetime | None
    resolution: str | None

    @classmethod
    def from_model(cls, row: ActionDeadLetter) -> DeadLetterInfo:
        return cls(
            dead_letter_id=str(row.id),
            dispatch_id=str(row.dispatch_id),
            idempotency_key=row.idempotency_key,
            arn=row.arn,
            kind=row.kind,
            attempts=row.attempts,
            last_error=row.last_error,
            dead_lettered_at=row.dead_lettered_at,
            resolved_at=row.resolved_at,
            resolution=row.resolution,
        )


def enqueue_action(
    session: Session,
    *,
    arn: str,
    transition_id: str,
    action: ActionSpec,
    occurrence: int,
    context: Mapping[str, Any],
    now: datetime,
    max_attempts: int,
) -> str:
    """Add one outbox row (not flushed); returns its idempotency key."""
    key = generate_idempotency_key(arn, transition_id, action.action_id, occurrence)
    session.add(
        ActionDispatch(
            idempotency_key=key,
            arn=arn,
            transition_id=transition_id,
            action_id=action.action_id,
            kind=action.kind.value,
            params={"action": thaw(action.params), "context": dict(context)},
            status=DispatchStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
    )
    return key


def enqueue_actions(
    session: Session,
    *,
    arn: str,
    transition: TransitionDef,
    occurrence: int,
    context: Mapping[str, Any],
    now: datetime,
    max_attempts: int,
) -> list[str]:
    """Write outbox rows for a transition's actions; returns their keys.

    Runs inside the transition's transaction.
    """
    keys = [
        enqueue_action(
            session,
            arn=arn,
            transition_id=transition.transition_id,
            action=action,
            occurrence=occurrence,
            context=context,
            now=now,
            max_attempts=max_attempts,
        )
        for action in transition.actions
    ]
    if keys:
        session.flush()
        logger.info(
            "actions_enqueued",
            extra={"arn": arn, "transition_id": transition.transition_id, "keys": keys},
        )
    return keys


@dataclass(frozen=True)
class _Claimed:
    dispatch_id: UUID
    invocation: ActionInvocation
    attempts: int
    max_attempts: int


class ActionDispatcher:
    """
    Claims and executes outbox rows.

    Each row is processed in three short transactions (claim, then
    success or failure bookkeeping); the handler runs between them with
    no transaction open.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        handlers: HandlerRegistry,
        clock: Clock | None = None,
        config: DispatcherConfig | None = None,
        alarm: IntegrityAlarm | None = None,
    ):
        self._session_factory = session_factory
        self._handlers = handlers
        self._clock = clock or SystemClock()
        self._config = config or DispatcherConfig()
        self._alarm = alarm or IntegrityAlarm()
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    # Worker pool

    def start(self) -> None:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._config.workers,
                    thread_name_prefix="govflow-dispatch",
                )
                logger.info("dispatcher_started", extra={"workers": self._config.workers})

    def stop(self, wait: bool = True) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
            logger.info("dispatcher_stopped")

    @property
    def running(self) -> bool:
        with self._pool_lock:
            return self._pool is not None

    def submit(self, keys: Sequence[str]) -> Future | None:
        """Hand freshly committed keys to the worker pool.

        Without a running pool the rows simply wait for the next
        ``dispatch_pending`` sweep.
        """
        if not keys:
            return None
        with self._pool_lock:
            pool = self._pool
        if pool is None:
            logger.debug("dispatch_deferred", extra={"keys": list(keys)})
            return None
        return pool.submit(self.dispatch_keys, list(keys))

    # Processing

    def dispatch_pending(self, now: datetime | None = None, limit: int | None = None) -> DispatchReport:
        """Process every due PENDING row (up to ``limit``)."""
        now = now or self._clock.now()
        if self._alarm.is_raised:
            logger.warning("dispatcher_halted_by_integrity_alarm")
            return DispatchReport(halted=True)

        with session_scope(self._session_factory) as session:
            ids = session.execute(
                select(ActionDispatch.id)
                .where(
                    ActionDispatch.status == DispatchStatus.PENDING,
                    ActionDispatch.next_attempt_at <= now,
                )
                .order_by(ActionDispatch.next_attempt_at, ActionDispatch.created_at)
                .limit(limit or self._config.batch_size)
            ).scalars().all()

        return self._process_all(ids, now)

    def dispatch_keys(self, keys: Iterable[str], now: datetime | None = None) -> DispatchReport:
        """Process the named rows if they are due."""
        now = now or self._clock.now()
        if self._alarm.is_raised:
            logger.warning("dispatcher_halted_by_integrity_alarm")
            return DispatchReport(halted=True)

        with session_scope(self._session_factory) as session:
            ids = session.execute(
                select(ActionDispatch.id).where(
                    ActionDispatch.idempotency_key.in_(list(keys)),
                    ActionDispatch.status == DispatchStatus.PENDING,
                    ActionDispatch.next_attempt_at <= now,
                )
            ).scalars().all()

        return self._process_all(ids, now)

    def _process_all(self, ids: Sequence[UUID], now: datetime) -> DispatchReport:
        report = DispatchReport()
        for dispatch_id in ids:
            claimed = self._claim(dispatch_id, now)
            if claimed is None:
                report.skipped.append(str(dispatch_id))
                continue
            self._execute(claimed, report)
        if report.processed:
            logger.info(
                "dispatch_batch_completed",
                extra={
                    "succeeded": len(report.succeeded),
                    "retried": len(report.retried),
                    "dead_lettered": len(report.dead_lettered),
                    "skipped": len(report.skipped),
                },
            )
        return report

    def _claim(self, dispatch_id: UUID, now: datetime) -> _Claimed | None:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ActionDispatch)
                .where(
                    ActionDispatch.id == dispatch_id,
                    ActionDispatch.status == DispatchStatus.PENDING,
                )
                .values(
                    status=DispatchStatus.IN_FLIGHT,
                    attempts=ActionDispatch.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = session.get(ActionDispatch, dispatch_id)
            session.refresh(row)
            params = row.params or {}
            return _Claimed(
                dispatch_id=row.id,
                invocation=ActionInvocation(
                    idempotency_key=row.idempotency_key,
                    arn=row.arn,
                    transition_id=row.transition_id,
                    action_id=row.action_id,
                    kind=ActionKind(row.kind),
                    params=params.get("action") or {},
                    context=params.get("context") or {},
                    attempt=row.attempts,
                ),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
            )

    def _execute(self, claimed: _Claimed, report: DispatchReport) -> None:
        invocation = claimed.invocation
        with LogContext.bind(arn=invocation.arn, transition_id=invocation.transition_id):
            try:
                handler = self._handlers.get(invocation.kind)
                result_ref = handler(invocation)
            except Exception as exc:  # handler failures are retried, never raised
                self._record_failure(claimed, exc, report)
                return
            self._record_success(claimed, result_ref, report)

    def _record_success(self, claimed: _Claimed, result_ref: str | None,
                        report: DispatchReport) -> None:
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            row = session.get(ActionDispatch, claimed.dispatch_id)
            row.status = DispatchStatus.SUCCEEDED
            row.result_ref = result_ref
            row.completed_at = now
            row.last_error = None
            row.updated_at = now
        report.succeeded.append(claimed.invocation.idempotency_key)
        logger.info(
            "action_dispatched",
            extra={
                "idempotency_key": claimed.invocation.idempotency_key,
                "kind": claimed.invocation.kind.value,
                "attempt": claimed.attempts,
            },
        )

    def _record_failure(self, claimed: _Claimed, exc: Exception, report: DispatchReport) -> None:
        invocation = claimed.invocation
        error = ActionDispatchFailureError(
            invocation.idempotency_key,
            invocation.kind.value,
            f"{type(exc).__name__}: {exc}",
        )
        now = self._clock.now()
        exhausted = claimed.attempts >= claimed.max_attempts

        with session_scope(self._session_factory) as session:
            row = session.get(ActionDispatch, claimed.dispatch_id)
            row.last_error = error.reason[:4000]
            row.updated_at = now
            if exhausted:
                row.status = DispatchStatus.DEAD_LETTERED
                row.completed_at = now
                session.add(
                    ActionDeadLetter(
                        dispatch_id=row.id,
                        idempotency_key=row.idempotency_key,
                        arn=row.arn,
                        kind=row.kind,
                        params=row.params,
                        attempts=row.attempts,
                        last_error=row.last_error,
                        dead_lettered_at=now,
                    )
                )
            else:
                row.status = DispatchStatus.PENDING
                row.next_attempt_at = now + timedelta(
                    seconds=self._config.backoff(claimed.attempts)
                )

        if exhausted:
            report.dead_lettered.append(invocation.idempotency_key)
            logger.error(
                "action_dead_lettered",
                extra={**error.details(), "attempts": claimed.attempts},
            )
        else:
            report.retried.append(invocation.idempotency_key)
            logger.warning(
                "action_dispatch_failed",
                extra={
                    **error.details(),
                    "attempt": claimed.attempts,
                    "retry_in_seconds": self._config.backoff(claimed.attempts),
                },
            )

    def release_stuck(self, now: datetime | None = None) -> int:
        """Return IN_FLIGHT rows abandoned by a crashed worker to PENDING."""
        now = now or self._clock.now()
        cutoff = now - timedelta(seconds=self._config.stale_after)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ActionDispatch)
                .where(
                    ActionDispatch.status == DispatchStatus.IN_FLIGHT,
                    ActionDispatch.updated_at < cutoff,
                )
                .values(status=DispatchStatus.PENDING, next_attempt_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        if count:
            logger.warning("stuck_dispatches_released", extra={"count": count})
        return count

    # Dead letters

    def list_dead_letters(self, unresolved_only: bool = True) -> list[DeadLetterInfo]:
        with session_scope(self._session_factory) as session:
            stmt = select(ActionDeadLetter).order_by(ActionDeadLetter.dead_lettered_at)
            if unresolved_only:
                stmt = stmt.where(ActionDeadLetter.resolved_at.is_(None))
            return [DeadLetterInfo.from_model(r) for r in session.execute(stmt).scalars().all()]

    def requeue(self, dead_letter_id: UUID | str, actor_id: str) -> str:
        """Give a dead-lettered action a fresh retry budget; returns its key."""
        now = self._clock.now()
        try:
            letter_id = dead_letter_id if isinstance(dead_letter_id, UUID) else UUID(str(dead_letter_id))
        except ValueError as exc:
            raise ValidationError(f"Invalid dead letter id: {dead_letter_id}", field="dead_letter_id") from exc

        with session_scope(self._session_factory) as session:
            letter = session.get(ActionDeadLetter, letter_id)
            if letter is None:
                raise ValidationError(f"Dead letter not found: {dead_letter_id}", field="dead_letter_id")
            if letter.resolved_at is not None:
                raise ValidationError(
                    f"Dead letter {dead_letter_id} is already {letter.resolution}",
                    field="dead_letter_id",
                )
            row = session.get(ActionDispatch, letter.dispatch_id)
            row.status = DispatchStatus.PENDING
            row.attempts = 0
            row.next_attempt_at = now
            row.completed_at = None
            row.updated_at = now
            letter.resolved_at = now
            letter.resolved_by = actor_id
            letter.resolution = REQUEUED
            key = row.idempotency_key

        logger.info(
            "dead_letter_requeued",
            extra={"idempotency_key": key, "actor_id": actor_id},
        )
        return key

    def status_of(self, idempotency_key: str) -> DispatchStatus | None:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(ActionDispatch.status).where(ActionDispatch.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
