"""
govflow_services.sweeper -- periodic detection of time-based events.

Contract:
    ``run_once()`` performs one pass:
      1. SLA breaches: every open task past its deadline (and not paused)
         gets one SLA_BREACHED audit event, a breach notification in the
         outbox and its ``sla_breached_at`` stamp.
      2. Query expiry: every PENDING query past its response window is
         marked EXPIRED (QUERY_EXPIRED audit event) and the policy's
         expiry transition, when configured, is fired by the SYSTEM actor.
      3. System states: applications parked in non-terminal SYSTEM states
         are advanced by one edge.
      4. Dispatch: abandoned IN_FLIGHT rows are released and due outbox
         rows are dispatched.
    ``start()`` / ``stop()`` run passes on a background thread.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - Per-item work holds the application lock and runs in its own
      transaction; one failing item never blocks the rest.
    - Nothing runs while the integrity alarm is raised.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from govflow_kernel.db.engine import session_scope
from govflow_kernel.domain.clock import Clock, SystemClock
from govflow_kernel.domain.dtos import ChainVerification, TransitionResult
from govflow_kernel.domain.workflow import ActionKind, ActionSpec, ActorType
from govflow_kernel.logging_config import LogContext, get_logger
from govflow_kernel.models.application import Application
from govflow_kernel.models.audit_event import AuditEventType
from govflow_kernel.models.query_cycle import QueryCycle, QueryStatus
from govflow_kernel.models.task import Task
from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.services.query_service import QueryService
from govflow_kernel.services.task_service import TaskService
from govflow_services.action_dispatcher import (
    ActionDispatcher,
    DispatchReport,
    enqueue_action,
)
from govflow_services.health import IntegrityAlarm
from govflow_services.transition_executor import SYSTEM_ACTOR_ID, TransitionExecutor

logger = get_logger("services.sweeper")

SLA_BREACH_TRANSITION = "SLA_BREACH"
SLA_BREACH_EVENT = "SLA_BREACHED"


@dataclass
class SweepReport:
    breached_tasks: list[str] = field(default_factory=list)
    expired_queries: list[str] = field(default_factory=list)
    expiry_transitions: list[TransitionResult] = field(default_factory=list)
    advanced: list[TransitionResult] = field(default_factory=list)
    released_dispatches: int = 0
    dispatch: DispatchReport | None = None
    verification: ChainVerification | None = None
    halted: bool = False


class Sweeper:
    """Periodic SLA, query-expiry, system-advance and dispatch pass."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        executor: TransitionExecutor,
        dispatcher: ActionDispatcher | None = None,
        clock: Clock | None = None,
        alarm: IntegrityAlarm | None = None,
        interval_seconds: float = 60.0,
        batch_size: int = 500,
        verify_chain: bool = False,
        dispatch_max_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._executor = executor
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._alarm = alarm or IntegrityAlarm()
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._verify_chain = verify_chain
        self._dispatch_max_attempts = dispatch_max_attempts
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # Public API

    def run_once(self) -> SweepReport:
        """One complete pass (public for testing and cron-style callers)."""
        report = SweepReport()
        if self._verify_chain:
            report.verification = self._verify()
        if self._alarm.is_raised:
            logger.warning("sweep_halted_by_integrity_alarm")
            report.halted = True
            return report

        now = self._clock.now()
        report.breached_tasks = self._sweep_sla_breaches(now)
        expired, fired = self._sweep_expired_queries(now)
        report.expired_queries = expired
        report.expiry_transitions = fired
        report.advanced = self._advance_system_states()
        if self._dispatcher is not None:
            report.released_dispatches = self._dispatcher.release_stuck(now)
            report.dispatch = self._dispatcher.dispatch_pending(now)

        logger.info(
            "sweep_completed",
            extra={
                "breached_tasks": len(report.breached_tasks),
                "expired_queries": len(report.expired_queries),
                "advanced": len([r for r in report.advanced if r.success]),
                "dispatched": report.dispatch.processed if report.dispatch else 0,
            },
        )
        return report

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="govflow-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("sweeper_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("sweeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # Internal

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("sweep_failed")
            self._stop_event.wait(timeout=self._interval)

    def _verify(self) -> ChainVerification:
        with session_scope(self._session_factory) as session:
            result = AuditorService(session, self._clock).verify_integrity()
        self._alarm.record_verification(result, self._clock.now())
        return result

    def _sweep_sla_breaches(self, now: datetime) -> list[str]:
        with session_scope(self._session_factory) as session:
            candidates = [
                (task.id, task.arn)
                for task in TaskService(session, self._clock).find_breached_tasks(
                    now, limit=self._batch_size
                )
            ]

        breached: list[str] = []
        for task_id, arn in candidates:
            with LogContext.bind(arn=arn, task_id=task_id):
                try:
                    if self._record_breach(task_id, arn, now):
                        breached.append(str(task_id))
                except Exception:
                    logger.exception("sla_breach_sweep_item_failed")
        return breached

    def _record_breach(self, task_id: UUID, arn: str, now: datetime) -> bool:
        with self._executor.locked(arn), session_scope(self._session_factory) as session:
            task = session.get(Task, task_id)
            if task is None or not task.is_open or task.sla_breached_at is not None:
                return False
            application = session.get(Application, task.application_id)
            if application.sla_paused:
                return False

            TaskService(session, self._clock).mark_breached(task, now)
            AuditorService(session, self._clock).append(
                arn,
                AuditEventType.SLA_BREACHED,
                SYSTEM_ACTOR_ID,
                ActorType.SYSTEM,
                payload={
                    "task_id": str(task.id),
                    "state_id": task.state_id,
                    "role_required": task.role_required,
                    "assignee_id": task.assignee_id,
                    "sla_due_at": task.sla_due_at,
                },
            )
            recipient = task.assignee_id or f"role:{task.role_required}@{application.authority_id}"
            enqueue_action(
                session,
                arn=arn,
                transition_id=SLA_BREACH_TRANSITION,
                action=ActionSpec(
                    action_id=f"breach_{task.state_id.lower()}",
                    kind=ActionKind.NOTIFY,
                    params={
                        "event_type": SLA_BREACH_EVENT,
                        "recipients": [recipient],
                        "template_data": {
                            "task_id": str(task.id),
                            "state_id": task.state_id,
                            "sla_due_at": task.sla_due_at.isoformat(),
                        },
                    },
                ),
                occurrence=application.row_version,
                context={
                    "applicant_id": application.applicant_id,
                    "authority_id": application.authority_id,
                    "to_state": application.state,
                    "task_id": str(task.id),
                    "role_required": task.role_required,
                },
                now=now,
                max_attempts=self._dispatch_max_attempts,
            )
        return True

    def _sweep_expired_queries(self, now: datetime) -> tuple[list[str], list[TransitionResult]]:
        with session_scope(self._session_factory) as session:
            candidates = [
                (cycle.id, cycle.arn)
                for cycle in QueryService(session, self._clock).find_expired_queries(
                    now, limit=self._batch_size
                )
            ]

        expired: list[str] = []
        fired: list[TransitionResult] = []
        for cycle_id, arn in candidates:
            with LogContext.bind(arn=arn):
                try:
                    was_pending, expiry_transition = self._expire_cycle(cycle_id, arn, now)
                except Exception:
                    logger.exception("query_expiry_sweep_item_failed")
                    continue
                if not was_pending:
                    continue
                expired.append(str(cycle_id))
                if expiry_transition:
                    result = self._executor.execute_transition(
                        arn, expiry_transition, SYSTEM_ACTOR_ID, (),
                        actor_type=ActorType.SYSTEM,
                    )
                    if not result.success:
                        logger.warning(
                            "query_expiry_transition_failed",
                            extra={
                                "expiry_transition": expiry_transition,
                                "error_code": result.error_code,
                            },
                        )
                    fired.append(result)
        return expired, fired

    def _expire_cycle(self, cycle_id: UUID, arn: str, now: datetime) -> tuple[bool, str | None]:
        """Mark one cycle EXPIRED; returns (was_pending, expiry_transition)."""
        with self._executor.locked(arn), session_scope(self._session_factory) as session:
            cycle = session.get(QueryCycle, cycle_id)
            if cycle is None or cycle.status != QueryStatus.PENDING:
                return False, None
            application = session.get(Application, cycle.application_id)
            definition = self._executor.registry.load_workflow(
                application.service_key,
                application.service_version,
                expected_checksum=application.workflow_checksum,
            )
            QueryService(session, self._clock).mark_expired(cycle, now)
            AuditorService(session, self._clock).append(
                arn,
                AuditEventType.QUERY_EXPIRED,
                SYSTEM_ACTOR_ID,
                ActorType.SYSTEM,
                payload={
                    "query_id": str(cycle.id),
                    "query_number": cycle.query_number,
                    "origin_state": cycle.origin_state,
                    "response_due_at": cycle.response_due_at,
                },
            )
            return True, definition.query_policy.expiry_transition

    def _advance_system_states(self) -> list[TransitionResult]:
        results: list[TransitionResult] = []
        for arn in self._executor.pending_system_arns(limit=self._batch_size):
            try:
                result = self._executor.advance(arn)
            except Exception:
                logger.exception("system_advance_failed", extra={"arn": arn})
                continue
            if result is not None:
                results.append(result)
        return results

    def pending_counts(self) -> dict[str, int]:
        """Open breach and expiry candidates as of now."""
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            return {
                "breached_tasks": len(
                    TaskService(session, self._clock).find_breached_tasks(now, self._batch_size)
                ),
                "expired_queries": len(
                    QueryService(session, self._clock).find_expired_queries(now, self._batch_size)
                ),
            }
