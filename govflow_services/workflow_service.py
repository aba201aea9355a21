"""
govflow_services.workflow_service -- composition root and call surface.

Responsibility:
    Creates every collaborator exactly once (dispatcher, handlers,
    executor, sweeper, integrity alarm) and exposes the operations
    callers use: submission, transitions, the officer inbox, task
    claiming, the query loop, system advancement and audit verification.

Architecture position:
    Services -- the top of the service layer.  HTTP or CLI adapters call
    this class and nothing below it.

Invariants enforced:
    - ``transition`` is the sole state-mutating entry point for officers;
      it returns ``{new_state, task_id}`` or a typed error dict and never
      raises for engine errors.
    - A failed audit verification raises the shared integrity alarm.

Usage:
    service = WorkflowService.from_settings()
    result = service.submit_application(
        "no_due_certificate", "MC-01", "citizen-1", {...}
    )
    service.transition(result["arn"], "CLERK_FORWARD", "clerk-7", ["CLERK"])
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from govflow_config import default_registry
from govflow_config.registry import ConfigRegistry
from govflow_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from govflow_kernel.domain.clock import Clock, SystemClock
from govflow_kernel.domain.dtos import AuditTrailEntry, InboxTask, TransitionResult
from govflow_kernel.exceptions import ApplicationNotFoundError, GovflowError
from govflow_kernel.logging_config import configure_logging, get_logger
from govflow_kernel.models.application import Application
from govflow_kernel.models.task import TaskStatus
from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.services.lock_service import ApplicationLockRegistry
from govflow_kernel.services.query_service import QueryService
from govflow_kernel.services.task_service import TaskService
from govflow_kernel.settings import GovflowSettings
from govflow_services.action_dispatcher import (
    ActionDispatcher,
    DeadLetterInfo,
    DispatcherConfig,
)
from govflow_services.action_handlers import build_default_handlers
from govflow_services.health import IntegrityAlarm
from govflow_services.integrations import (
    IntegrationClient,
    LookupProvider,
    NotificationService,
    OutputGenerator,
    RecordingIntegrationClient,
    RecordingNotificationService,
    RecordingOutputGenerator,
)
from govflow_services.sweeper import SweepReport, Sweeper
from govflow_services.transition_executor import TransitionExecutor

logger = get_logger("services.workflow")

# Bound on automatic SYSTEM-state hops after one call
MAX_AUTO_ADVANCE = 10


def _error_dict(error: GovflowError) -> dict[str, Any]:
    return {
        "error": error.error_category(),
        "code": error.code,
        "message": str(error),
        "details": error.details(),
    }


class WorkflowService:
    """Wires the engine together and exposes its call surface.

    Contract:
        Receives a session factory and a config registry; every other
        collaborator is optional and defaults to the in-memory recording
        implementations.

    Non-goals:
        - Does NOT own the database engine (``from_settings`` creates one).
        - Does NOT render forms, store documents or route HTTP.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: ConfigRegistry,
        clock: Clock | None = None,
        lookup_provider: LookupProvider | None = None,
        notifications: NotificationService | None = None,
        outputs: OutputGenerator | None = None,
        integrations: IntegrationClient | None = None,
        dispatcher_config: DispatcherConfig | None = None,
        max_conflict_retries: int = 3,
        use_local_locks: bool = True,
        auto_advance: bool = True,
        sweep_interval: float = 60.0,
        alarm: IntegrityAlarm | None = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.clock = clock or SystemClock()
        self.alarm = alarm or IntegrityAlarm()
        self.auto_advance = auto_advance

        self.notifications = notifications or RecordingNotificationService()
        self.outputs = outputs or RecordingOutputGenerator()
        self.integrations = integrations or RecordingIntegrationClient()
        self.handlers = build_default_handlers(self.notifications, self.outputs, self.integrations)

        config = dispatcher_config or DispatcherConfig()
        self.dispatcher = ActionDispatcher(
            session_factory, self.handlers, self.clock, config, self.alarm
        )
        self.locks = ApplicationLockRegistry()
        self.executor = TransitionExecutor(
            session_factory,
            registry,
            clock=self.clock,
            lookup_provider=lookup_provider,
            dispatcher=self.dispatcher,
            lock_registry=self.locks,
            alarm=self.alarm,
            max_conflict_retries=max_conflict_retries,
            use_local_locks=use_local_locks,
            dispatch_max_attempts=config.max_attempts,
        )
        self.sweeper = Sweeper(
            session_factory,
            self.executor,
            dispatcher=self.dispatcher,
            clock=self.clock,
            alarm=self.alarm,
            interval_seconds=sweep_interval,
            dispatch_max_attempts=config.max_attempts,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GovflowSettings | None = None,
        clock: Clock | None = None,
        **collaborators: Any,
    ) -> WorkflowService:
        """Build a service (engine, tables, registry) from GOVFLOW_* settings."""
        settings = settings or GovflowSettings.from_env()
        configure_logging(level=logging.getLevelName(settings.log_level))
        init_engine_from_url(settings.database_url)
        create_tables()
        registry = default_registry(Path(settings.workflow_dir) if settings.workflow_dir else None)
        return cls(
            get_session_factory(),
            registry,
            clock=clock,
            dispatcher_config=DispatcherConfig.from_settings(settings),
            max_conflict_retries=settings.max_conflict_retries,
            sweep_interval=settings.sweep_interval,
            **collaborators,
        )

    # Background workers

    def start(self) -> None:
        self.dispatcher.start()
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()
        self.dispatcher.stop()

    # Applications

    def submit_application(
        self,
        service_key: str,
        authority_id: str,
        applicant_id: str,
        data: Mapping[str, Any],
        version: str | None = None,
        arn: str | None = None,
        documents: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create and submit an application.

        Returns ``{arn, new_state, task_id}`` for the state the
        application settles in, or a typed error dict.
        """
        result = self.executor.submit(
            service_key, authority_id, applicant_id, data,
            version=version, arn=arn, documents=documents,
        )
        if not result.success:
            return result.to_dict()
        final = self._settle(result)
        out = {"arn": result.arn, "new_state": final.new_state}
        if final.task_id:
            out["task_id"] = final.task_id
        return out

    def transition(
        self,
        arn: str,
        transition_id: str,
        actor_id: str,
        actor_roles: Iterable[str],
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Fire one officer or citizen transition.

        ``new_state`` is the edge's target.  When the application then
        moves on through SYSTEM states, ``advanced_to`` names where it
        came to rest.
        """
        result = self.executor.execute_transition(arn, transition_id, actor_id, actor_roles, payload)
        return self._respond(result)

    def application_status(self, arn: str) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            application = self._get_application(session, arn)
            task = TaskService(session, self.clock).active_task(application)
            return {
                "arn": application.arn,
                "service_key": application.service_key,
                "service_version": application.service_version,
                "state": application.state,
                "row_version": application.row_version,
                "query_count": application.query_count,
                "disposal_type": (
                    application.disposal_type.value if application.disposal_type else None
                ),
                "sla_due_at": application.sla_due_at,
                "sla_paused": application.sla_paused,
                "sla_remaining_days": application.sla_remaining_days,
                "task_id": str(task.id) if task is not None else None,
                "data": dict(application.data or {}),
            }

    # Officer tasks

    def inbox(
        self,
        user_id: str,
        authority_id: str | None = None,
        status: TaskStatus | str = TaskStatus.PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> list[InboxTask]:
        """Tasks the officer can act on; raises ValidationError for bad arguments."""
        with session_scope(self.session_factory) as session:
            return TaskService(session, self.clock).get_inbox_tasks(
                user_id, authority_id=authority_id, status=status, limit=limit, offset=offset
            )

    def claim_task(self, task_id: str, user_id: str) -> dict[str, Any]:
        try:
            with session_scope(self.session_factory) as session:
                task = TaskService(session, self.clock).claim_task(task_id, user_id)
                return {
                    "task_id": str(task.id),
                    "status": task.status.value,
                    "assignee_id": task.assignee_id,
                }
        except GovflowError as exc:
            return _error_dict(exc)

    def release_task(self, task_id: str, user_id: str) -> dict[str, Any]:
        try:
            with session_scope(self.session_factory) as session:
                task = TaskService(session, self.clock).release_task(task_id, user_id)
                return {"task_id": str(task.id), "status": task.status.value, "assignee_id": None}
        except GovflowError as exc:
            return _error_dict(exc)

    def post_officer(self, user_id: str, authority_id: str, role_id: str) -> None:
        with session_scope(self.session_factory) as session:
            TaskService(session, self.clock).post_officer(user_id, authority_id, role_id)

    # Query loop

    def raise_query(
        self,
        arn: str,
        task_id: str | None,
        message: str,
        unlocked_fields: Iterable[str],
        unlocked_doc_types: Iterable[str],
        actor_id: str,
        actor_roles: Iterable[str],
        mandatory_fields: Iterable[str] | None = None,
        mandatory_doc_types: Iterable[str] | None = None,
        transition_id: str | None = None,
    ) -> dict[str, Any]:
        result = self.executor.raise_query(
            arn, task_id, message, unlocked_fields, unlocked_doc_types, actor_id, actor_roles,
            mandatory_fields=mandatory_fields,
            mandatory_doc_types=mandatory_doc_types,
            transition_id=transition_id,
        )
        return self._respond(result)

    def respond_to_query(
        self,
        arn: str,
        query_id: str,
        updated_data: Mapping[str, Any],
        actor_id: str,
        updated_documents: Mapping[str, str] | None = None,
        remarks: str | None = None,
    ) -> dict[str, Any]:
        result = self.executor.respond_to_query(
            arn, query_id, updated_data, actor_id,
            updated_documents=updated_documents, remarks=remarks,
        )
        return self._respond(result)

    def editable_fields(self, arn: str) -> list[str]:
        with session_scope(self.session_factory) as session:
            application = self._get_application(session, arn)
            return QueryService(session, self.clock).editable_fields(application)

    # System transitions and sweeps

    def advance_system_transitions(self, limit: int = 500) -> list[dict[str, Any]]:
        """Move every application parked in a SYSTEM state as far as it goes."""
        out: list[dict[str, Any]] = []
        for arn in self.executor.pending_system_arns(limit=limit):
            for result in self._advance_chain(arn):
                out.append({"arn": result.arn, **result.to_dict()})
        return out

    def run_sweep(self) -> SweepReport:
        return self.sweeper.run_once()

    # Audit and integrity

    def verify_audit_chain(self) -> dict[str, Any]:
        """Replay the audit chain; a break raises the integrity alarm."""
        with session_scope(self.session_factory) as session:
            result = AuditorService(session, self.clock).verify_integrity()
        self.alarm.record_verification(result, self.clock.now())
        return result.to_dict()

    def audit_trail(self, arn: str) -> tuple[AuditTrailEntry, ...]:
        with session_scope(self.session_factory) as session:
            return AuditorService(session, self.clock).get_trail(arn)

    def clear_integrity_alarm(self, cleared_by: str) -> None:
        self.alarm.clear(cleared_by)

    # Dead letters

    def list_dead_letters(self, unresolved_only: bool = True) -> list[DeadLetterInfo]:
        return self.dispatcher.list_dead_letters(unresolved_only)

    def requeue_dead_letter(self, dead_letter_id: str, actor_id: str) -> dict[str, Any]:
        try:
            key = self.dispatcher.requeue(dead_letter_id, actor_id)
        except GovflowError as exc:
            return _error_dict(exc)
        return {"idempotency_key": key}

    # Internal

    def _get_application(self, session: Session, arn: str) -> Application:
        application = session.execute(
            select(Application).where(Application.arn == arn)
        ).scalar_one_or_none()
        if application is None:
            raise ApplicationNotFoundError(arn)
        return application

    def _respond(self, result: TransitionResult) -> dict[str, Any]:
        out = result.to_dict()
        if result.success and self.auto_advance:
            advanced = self._advance_chain(result.arn)
            if advanced:
                out["advanced_to"] = advanced[-1].new_state
        return out

    def _settle(self, result: TransitionResult) -> TransitionResult:
        if not self.auto_advance:
            return result
        advanced = self._advance_chain(result.arn)
        return advanced[-1] if advanced else result

    def _advance_chain(self, arn: str) -> list[TransitionResult]:
        """Successful SYSTEM hops from the application's current state."""
        results: list[TransitionResult] = []
        for _ in range(MAX_AUTO_ADVANCE):
            result = self.executor.advance(arn)
            if result is None:
                break
            if not result.success:
                logger.warning(
                    "system_advance_blocked",
                    extra={"arn": arn, "error_code": result.error_code},
                )
                break
            results.append(result)
        return results
