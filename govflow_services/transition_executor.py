"""
govflow_services.transition_executor -- the single state-mutating entry point.

Responsibility:
    Moves one application along one edge of its pinned workflow.  Loads
    the definition, checks the edge, the actor and the guard, then (in a
    single transaction) completes the active task, opens the next one,
    updates SLA fields, opens or closes the query cycle, records the
    decision, writes outbox rows and appends one STATE_CHANGED audit
    event.  After commit the outbox keys are handed to the dispatcher.

Architecture position:
    Services layer.  Coordinates kernel services (task, query, auditor,
    sequence), the pure engines (guards, SLA) and the config registry.
    No business rule lives here that a lower layer could own.

Invariants enforced:
    - Exactly one edge and exactly one audit event per successful call;
      any failure rolls the whole unit back.
    - Per-application mutual exclusion: the ARN lock (process local) and
      SELECT ... FOR UPDATE on the application row.  The row-version
      compare-and-swap catches anything that slips past both; the whole
      attempt is retried up to ``max_conflict_retries`` times.
    - Only a SYSTEM actor fires system-triggered edges, and a SYSTEM
      actor never fires manual ones.  SYSTEM actors are refused while the
      integrity alarm is raised.
    - A query response returns the application to the state recorded on
      the query cycle (or the policy's fixed return state).

Failure modes:
    - Every GovflowError is returned as ``TransitionResult.failed``.
    - Unexpected exceptions are logged with outcome ``error`` and
      propagate after rollback.
"""

from __future__ import annotations

import time
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from govflow_config.registry import ConfigRegistry
from govflow_engines.guards import build_context, explain
from govflow_engines.sla import carry_remaining_days, compute_due_at, resume_due_at
from govflow_kernel.db.engine import session_scope
from govflow_kernel.db.immutability import register_immutability_listeners
from govflow_kernel.domain.clock import Clock, SystemClock
from govflow_kernel.domain.dtos import Actor, TransitionResult
from govflow_kernel.domain.workflow import (
    DISPOSAL_FOR_DECISION,
    ActorType,
    TransitionDef,
    WorkflowDefinition,
)
from govflow_kernel.exceptions import (
    ApplicationNotFoundError,
    AuditChainBrokenError,
    ConcurrencyConflictError,
    ForbiddenError,
    GovflowError,
    GuardFailedError,
    QueryBudgetExhaustedError,
    QueryNotFoundError,
    TransitionNotFoundError,
    ValidationError,
)
from govflow_kernel.logging_config import LogContext, get_logger
from govflow_kernel.models.application import Application
from govflow_kernel.models.audit_event import AuditEventType
from govflow_kernel.models.decision import Decision
from govflow_kernel.models.task import Task
from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.services.lock_service import ApplicationLockRegistry
from govflow_kernel.services.query_service import QueryService
from govflow_kernel.services.sequence_service import SequenceService
from govflow_kernel.services.task_service import TaskService
from govflow_services.action_dispatcher import ActionDispatcher, enqueue_actions
from govflow_services.health import IntegrityAlarm
from govflow_services.integrations import LookupProvider

logger = get_logger("services.transition_executor")

# Trace message and outcome codes
TRACE_TYPE_WORKFLOW_TRANSITION = "WORKFLOW_TRANSITION"
OUTCOME_SUCCESS = "success"
OUTCOME_GUARD_FAILED = "guard_failed"
OUTCOME_FORBIDDEN = "forbidden"
OUTCOME_NO_TRANSITION = "no_transition"
OUTCOME_CONFLICT = "conflict"
OUTCOME_ERROR = "error"

SYSTEM_ACTOR_ID = "system"

# Placeholder transition ids until the state's query edge is resolved
RAISE_QUERY = "raise_query"
RESPOND_TO_QUERY = "respond_to_query"


def _outcome_for(error: BaseException) -> str:
    if isinstance(error, GuardFailedError):
        return OUTCOME_GUARD_FAILED
    if isinstance(error, ForbiddenError):
        return OUTCOME_FORBIDDEN
    if isinstance(error, TransitionNotFoundError):
        return OUTCOME_NO_TRANSITION
    if isinstance(error, ConcurrencyConflictError):
        return OUTCOME_CONFLICT
    return OUTCOME_ERROR


def _emit_workflow_trace(
    *,
    arn: str,
    transition_id: str,
    actor: Actor,
    outcome: str,
    duration_ms: float,
    attempt: int,
    from_state: str | None = None,
    to_state: str | None = None,
    reason: str | None = None,
    error_code: str | None = None,
) -> None:
    """One structured record per transition attempt."""
    record: dict[str, Any] = {
        "trace_type": TRACE_TYPE_WORKFLOW_TRANSITION,
        "arn": arn,
        "transition_id": transition_id,
        "actor_id": actor.actor_id,
        "actor_type": actor.actor_type.value,
        "outcome": outcome,
        "attempt": attempt,
        "duration_ms": round(duration_ms, 3),
    }
    if from_state is not None:
        record["from_state"] = from_state
    if to_state is not None:
        record["to_state"] = to_state
    if reason is not None:
        record["reason"] = reason
    if error_code is not None:
        record["error_code"] = error_code
    logger.info("workflow_transition", extra=record)


def _string_list(payload: Mapping[str, Any], key: str) -> tuple[str, ...] | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"{key} must be a list of strings", field=key)
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class QueryRequest:
    """What an officer unlocks when sending an application back."""

    message: str
    unlocked_fields: tuple[str, ...] = ()
    unlocked_doc_types: tuple[str, ...] = ()
    mandatory_fields: tuple[str, ...] | None = None
    mandatory_doc_types: tuple[str, ...] | None = None
    task_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> QueryRequest:
        message = payload.get("message")
        if not isinstance(message, str):
            raise ValidationError("Query message is required", field="message")
        return cls(
            message=message,
            unlocked_fields=_string_list(payload, "unlocked_fields") or (),
            unlocked_doc_types=_string_list(payload, "unlocked_doc_types") or (),
            mandatory_fields=_string_list(payload, "mandatory_fields"),
            mandatory_doc_types=_string_list(payload, "mandatory_doc_types"),
            task_id=payload.get("task_id"),
        )


@dataclass(frozen=True)
class ResponseRequest:
    """A citizen's answer to an open query."""

    query_id: str | None
    updated_data: Mapping[str, Any]
    updated_documents: Mapping[str, str]
    remarks: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ResponseRequest:
        data = payload.get("updated_data") or {}
        documents = payload.get("updated_documents") or {}
        if not isinstance(data, Mapping):
            raise ValidationError("updated_data must be an object", field="updated_data")
        if not isinstance(documents, Mapping):
            raise ValidationError(
                "updated_documents must map document type to storage reference",
                field="updated_documents",
            )
        query_id = payload.get("query_id")
        return cls(
            query_id=None if query_id is None else str(query_id),
            updated_data=dict(data),
            updated_documents={str(k): str(v) for k, v in documents.items()},
            remarks=payload.get("remarks"),
        )


@dataclass(frozen=True)
class _Snapshot:
    """Pre-lock view of an application, used for lookups and cheap checks."""

    arn: str
    state: str
    service_key: str
    service_version: str
    workflow_checksum: str
    data: dict[str, Any]
    query_count: int


class TransitionExecutor:
    """
    Executes workflow transitions.

    One instance is shared by all threads of a process; every attempt
    opens its own session from ``session_factory``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: ConfigRegistry,
        clock: Clock | None = None,
        lookup_provider: LookupProvider | None = None,
        dispatcher: ActionDispatcher | None = None,
        lock_registry: ApplicationLockRegistry | None = None,
        alarm: IntegrityAlarm | None = None,
        max_conflict_retries: int = 3,
        use_local_locks: bool = True,
        dispatch_max_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._clock = clock or SystemClock()
        self._lookup_provider = lookup_provider
        self._dispatcher = dispatcher
        self._locks = lock_registry or ApplicationLockRegistry()
        self._alarm = alarm or IntegrityAlarm()
        self._max_conflict_retries = max_conflict_retries
        self._use_local_locks = use_local_locks
        self._dispatch_max_attempts = dispatch_max_attempts
        register_immutability_listeners()

    @property
    def registry(self) -> ConfigRegistry:
        return self._registry

    @property
    def clock(self) -> Clock:
        return self._clock

    # Public operations

    def execute_transition(
        self,
        arn: str,
        transition_id: str,
        actor_id: str,
        actor_roles: Iterable[str],
        payload: Mapping[str, Any] | None = None,
        actor_type: ActorType | str = ActorType.OFFICER,
    ) -> TransitionResult:
        """Fire ``transition_id`` on application ``arn``."""
        actor = Actor.of(actor_id, actor_roles, ActorType(actor_type))
        return self._run(arn, transition_id, actor, dict(payload or {}))

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
        remarks: str | None = None,
    ) -> TransitionResult:
        """
        Send the application back to the citizen from the current stage.

        Fires the stage's query-raising transition (``transition_id`` or
        the single one declared for the state).  The query budget is
        checked before taking the lock and again inside it.
        """
        actor = Actor.of(actor_id, actor_roles, ActorType.OFFICER)
        request = QueryRequest(
            message=message,
            unlocked_fields=tuple(unlocked_fields),
            unlocked_doc_types=tuple(unlocked_doc_types),
            mandatory_fields=None if mandatory_fields is None else tuple(mandatory_fields),
            mandatory_doc_types=None if mandatory_doc_types is None else tuple(mandatory_doc_types),
            task_id=None if task_id is None else str(task_id),
        )
        return self._run(
            arn, transition_id or RAISE_QUERY, actor,
            {"remarks": remarks} if remarks else {},
            query=request,
        )

    def respond_to_query(
        self,
        arn: str,
        query_id: str,
        updated_data: Mapping[str, Any],
        actor_id: str,
        updated_documents: Mapping[str, str] | None = None,
        remarks: str | None = None,
        actor_roles: Iterable[str] = ("CITIZEN",),
        transition_id: str | None = None,
    ) -> TransitionResult:
        """Apply the citizen's response and return to the originating stage."""
        actor = Actor.of(actor_id, actor_roles, ActorType.CITIZEN)
        request = ResponseRequest(
            query_id=str(query_id),
            updated_data=dict(updated_data or {}),
            updated_documents=dict(updated_documents or {}),
            remarks=remarks,
        )
        return self._run(
            arn, transition_id or RESPOND_TO_QUERY, actor,
            {"remarks": remarks} if remarks else {},
            response=request,
        )

    def submit(
        self,
        service_key: str,
        authority_id: str,
        applicant_id: str,
        data: Mapping[str, Any],
        version: str | None = None,
        arn: str | None = None,
        documents: Mapping[str, str] | None = None,
        actor_roles: Iterable[str] = ("CITIZEN",),
    ) -> TransitionResult:
        """
        Create an application and fire its submit transition atomically.

        The latest definition version is pinned unless ``version`` is
        given.  A failed submit guard leaves nothing behind.
        """
        actor = Actor.of(applicant_id, actor_roles, ActorType.CITIZEN)
        start = time.monotonic()
        label = arn or f"<new {service_key}>"
        submit_id = "SUBMIT"
        try:
            definition = self._registry.load_workflow(service_key, version)
            submit_id = definition.submit_transition or submit_id
            if definition.submit_transition is None:
                raise ValidationError(
                    f"Workflow {service_key}@{definition.version} does not accept submissions",
                    field="service_key",
                )
            transition = definition.transition(definition.submit_transition)
            lookup = self._fetch_lookups(arn or "", data if isinstance(data, Mapping) else {})

            lock = self._locks.hold(arn) if (arn and self._use_local_locks) else nullcontext()
            with lock, session_scope(self._session_factory) as session:
                application = self._create_application(
                    session, definition, authority_id, applicant_id, data, arn
                )
                label = application.arn
                query_service = QueryService(session, self._clock)
                for doc_type, ref in sorted((documents or {}).items()):
                    query_service.record_document(application, doc_type, ref, applicant_id)
                with LogContext.bind(arn=application.arn, actor_id=applicant_id,
                                     transition_id=transition.transition_id):
                    task_service = TaskService(session, self._clock)
                    self._authorize(definition, application, transition, actor, None, None)
                    self._check_guard(application, transition, actor, lookup)
                    result = self._apply(
                        session, definition, application, transition, actor, {},
                        None, task_service, None, None,
                    )
        except GovflowError as exc:
            _emit_workflow_trace(
                arn=label, transition_id=submit_id, actor=actor, outcome=_outcome_for(exc),
                duration_ms=(time.monotonic() - start) * 1000, attempt=1,
                reason=str(exc), error_code=exc.code,
            )
            return TransitionResult.failed(label, submit_id, exc)

        _emit_workflow_trace(
            arn=result.arn, transition_id=result.transition_id, actor=actor,
            outcome=OUTCOME_SUCCESS, duration_ms=(time.monotonic() - start) * 1000,
            attempt=1, from_state=result.previous_state, to_state=result.new_state,
        )
        self._hand_off(result.action_keys)
        return result

    def advance(self, arn: str) -> TransitionResult | None:
        """
        Fire the first permitted system transition out of a SYSTEM state.

        Returns None when the application is not parked in a non-terminal
        SYSTEM state; otherwise the first successful result, or the last
        failure if no system edge could fire.
        """
        snapshot = self._read_snapshot(arn)
        definition = self._registry.load_workflow(
            snapshot.service_key, snapshot.service_version,
            expected_checksum=snapshot.workflow_checksum,
        )
        state = definition.state(snapshot.state)
        if state is None or state.terminal or state.actor_type != ActorType.SYSTEM:
            return None

        last: TransitionResult | None = None
        for transition in definition.system_transitions_from(snapshot.state):
            last = self.execute_transition(
                arn, transition.transition_id, SYSTEM_ACTOR_ID, (), actor_type=ActorType.SYSTEM
            )
            if last.success:
                return last
        return last

    def pending_system_arns(self, limit: int = 500) -> list[str]:
        """ARNs parked in non-terminal SYSTEM states, oldest update first."""
        with session_scope(self._session_factory) as session:
            pins = session.execute(
                select(Application.service_key, Application.service_version).distinct()
            ).all()
            arns: list[str] = []
            for service_key, version in pins:
                definition = self._registry.load_workflow(service_key, version)
                states = [
                    s.state_id for s in definition.states.values()
                    if s.actor_type == ActorType.SYSTEM and not s.terminal
                ]
                if not states:
                    continue
                arns.extend(session.execute(
                    select(Application.arn)
                    .where(
                        Application.service_key == service_key,
                        Application.service_version == version,
                        Application.state.in_(states),
                    )
                    .order_by(Application.updated_at)
                    .limit(limit)
                ).scalars().all())
        return arns[:limit]

    # Driver

    def _run(
        self,
        arn: str,
        transition_id: str,
        actor: Actor,
        payload: dict[str, Any],
        query: QueryRequest | None = None,
        response: ResponseRequest | None = None,
    ) -> TransitionResult:
        start = time.monotonic()
        attempt = 0
        with LogContext.bind(arn=arn, actor_id=actor.actor_id, transition_id=transition_id):
            try:
                alarm_state = self._alarm.state
                if actor.is_system and alarm_state is not None:
                    raise AuditChainBrokenError(
                        alarm_state.event_id, alarm_state.reason, alarm_state.checked_count
                    )
                snapshot = self._read_snapshot(arn)
                if query is not None:
                    self._precheck_budget(snapshot)
                lookup = self._fetch_lookups(arn, snapshot.data)

                while True:
                    attempt += 1
                    try:
                        with self.locked(arn), session_scope(self._session_factory) as session:
                            result = self._attempt(
                                session, arn, transition_id, actor, payload, lookup,
                                query, response,
                            )
                        break
                    except StaleDataError:
                        if attempt > self._max_conflict_retries:
                            raise ConcurrencyConflictError(
                                "Application", arn,
                                f"Application {arn} changed concurrently; "
                                f"gave up after {attempt} attempts",
                            ) from None
                        logger.info(
                            "transition_conflict_retry",
                            extra={"attempt": attempt, "max_retries": self._max_conflict_retries},
                        )
            except GovflowError as exc:
                _emit_workflow_trace(
                    arn=arn, transition_id=transition_id, actor=actor,
                    outcome=_outcome_for(exc),
                    duration_ms=(time.monotonic() - start) * 1000,
                    attempt=max(attempt, 1), reason=str(exc), error_code=exc.code,
                )
                return TransitionResult.failed(arn, transition_id, exc)
            except Exception as exc:
                _emit_workflow_trace(
                    arn=arn, transition_id=transition_id, actor=actor,
                    outcome=OUTCOME_ERROR,
                    duration_ms=(time.monotonic() - start) * 1000,
                    attempt=max(attempt, 1), reason=f"{type(exc).__name__}: {exc}",
                )
                raise

            _emit_workflow_trace(
                arn=arn, transition_id=result.transition_id, actor=actor,
                outcome=OUTCOME_SUCCESS,
                duration_ms=(time.monotonic() - start) * 1000,
                attempt=attempt, from_state=result.previous_state, to_state=result.new_state,
            )
        self._hand_off(result.action_keys)
        return result

    def locked(self, arn: str):
        """The per-application lock used by transitions (no-op in CAS-only mode)."""
        if self._use_local_locks:
            return self._locks.hold(arn)
        return nullcontext()

    def _hand_off(self, keys: Sequence[str]) -> None:
        if self._dispatcher is None or not keys:
            return
        try:
            self._dispatcher.submit(keys)
        except Exception:
            # Rows stay PENDING and are picked up by the next sweep.
            logger.exception("action_handoff_failed", extra={"keys": list(keys)})

    # Pre-lock reads

    def _read_snapshot(self, arn: str) -> _Snapshot:
        with session_scope(self._session_factory) as session:
            application = session.execute(
                select(Application).where(Application.arn == arn)
            ).scalar_one_or_none()
            if application is None:
                raise ApplicationNotFoundError(arn)
            return _Snapshot(
                arn=application.arn,
                state=application.state,
                service_key=application.service_key,
                service_version=application.service_version,
                workflow_checksum=application.workflow_checksum,
                data=dict(application.data or {}),
                query_count=application.query_count,
            )

    def _precheck_budget(self, snapshot: _Snapshot) -> None:
        definition = self._registry.load_workflow(
            snapshot.service_key, snapshot.service_version,
            expected_checksum=snapshot.workflow_checksum,
        )
        policy = definition.query_policy
        if snapshot.query_count >= policy.max_cycles:
            raise QueryBudgetExhaustedError(snapshot.arn, snapshot.query_count, policy.max_cycles)

    def _fetch_lookups(self, arn: str, data: Mapping[str, Any]) -> dict[str, Any]:
        if self._lookup_provider is None:
            return {}
        try:
            return dict(self._lookup_provider.fetch(arn, data) or {})
        except Exception as exc:
            logger.warning(
                "lookup_prefetch_failed",
                extra={"error": f"{type(exc).__name__}: {exc}"},
            )
            return {}

    # Inside the lock

    def _attempt(
        self,
        session: Session,
        arn: str,
        transition_id: str,
        actor: Actor,
        payload: dict[str, Any],
        lookup: Mapping[str, Any],
        query: QueryRequest | None,
        response: ResponseRequest | None,
    ) -> TransitionResult:
        application = session.execute(
            select(Application).where(Application.arn == arn).with_for_update()
        ).scalar_one_or_none()
        if application is None:
            raise ApplicationNotFoundError(arn)

        definition = self._registry.load_workflow(
            application.service_key,
            application.service_version,
            expected_checksum=application.workflow_checksum,
        )
        transition = self._resolve_transition(definition, application, transition_id,
                                              query, response)
        task_service = TaskService(session, self._clock)
        active = task_service.active_task(application)
        self._authorize(definition, application, transition, actor, active,
                        query.task_id if query else None)
        self._check_guard(application, transition, actor, lookup)
        return self._apply(
            session, definition, application, transition, actor, payload,
            active, task_service, query, response,
        )

    def _resolve_transition(
        self,
        definition: WorkflowDefinition,
        application: Application,
        transition_id: str,
        query: QueryRequest | None,
        response: ResponseRequest | None,
    ) -> TransitionDef:
        if transition_id in (RAISE_QUERY, RESPOND_TO_QUERY):
            candidates = (
                definition.query_transitions_from(application.state)
                if transition_id == RAISE_QUERY
                else definition.response_transitions_from(application.state)
            )
            if len(candidates) != 1:
                raise TransitionNotFoundError(transition_id, application.state)
            return candidates[0]

        transition = definition.transition(transition_id)
        if transition is None or transition.from_state != application.state:
            raise TransitionNotFoundError(transition_id, application.state)
        if query is not None and not transition.raises_query:
            raise TransitionNotFoundError(transition_id, application.state)
        if response is not None and not transition.responds_to_query:
            raise TransitionNotFoundError(transition_id, application.state)
        return transition

    def _authorize(
        self,
        definition: WorkflowDefinition,
        application: Application,
        transition: TransitionDef,
        actor: Actor,
        active: Task | None,
        expected_task_id: str | None,
    ) -> None:
        tid = transition.transition_id
        if transition.is_system:
            if not actor.is_system:
                raise ForbiddenError(
                    f"Transition {tid} is system-triggered", actor_id=actor.actor_id
                )
            return
        if actor.is_system:
            raise ForbiddenError(
                f"System actor may not fire manual transition {tid}", actor_id=actor.actor_id
            )

        required = set(transition.allowed_roles)
        if not required & actor.roles:
            raise ForbiddenError(
                f"Actor {actor.actor_id} lacks a role allowed for {tid}",
                actor_id=actor.actor_id,
                required_roles=sorted(required),
            )

        state = definition.state(application.state)
        if (
            state is not None
            and state.actor_type == ActorType.CITIZEN
            and actor.actor_id != application.applicant_id
        ):
            raise ForbiddenError(
                f"Only the applicant may act on {application.arn} in {application.state}",
                actor_id=actor.actor_id,
            )

        if active is not None:
            if expected_task_id is not None and str(active.id) != expected_task_id:
                raise ValidationError(
                    f"Task {expected_task_id} is not the active task of {application.arn}",
                    field="task_id",
                )
            if active.assignee_id is not None and active.assignee_id != actor.actor_id:
                raise ForbiddenError(
                    f"Task {active.id} is claimed by another officer",
                    actor_id=actor.actor_id,
                    required_roles=[active.role_required],
                )

    def _check_guard(
        self,
        application: Application,
        transition: TransitionDef,
        actor: Actor,
        lookup: Mapping[str, Any],
    ) -> None:
        guard = transition.guard
        if guard is None:
            return
        context = build_context(
            data=application.data,
            application=_application_view(application),
            actor_id=actor.actor_id,
            actor_roles=actor.roles,
            actor_type=actor.actor_type.value,
            lookup=lookup,
            authority_id=application.authority_id,
            now=self._clock.now(),
        )
        outcome = explain(rule_expression=guard.expression, context=context)
        if not outcome.passed:
            raise GuardFailedError(
                transition.transition_id, outcome.failing_condition, guard.message
            )

    def _apply(
        self,
        session: Session,
        definition: WorkflowDefinition,
        application: Application,
        transition: TransitionDef,
        actor: Actor,
        payload: Mapping[str, Any],
        active: Task | None,
        task_service: TaskService,
        query: QueryRequest | None,
        response: ResponseRequest | None,
    ) -> TransitionResult:
        now = self._clock.now()
        from_state = application.state
        policy = definition.query_policy
        query_service = QueryService(session, self._clock)
        calendar = task_service.calendar_for(application.authority_id)
        remarks = payload.get("remarks")
        cycle = None

        if transition.raises_query:
            request = query or QueryRequest.from_payload(payload)
            query_service.check_budget(application, policy)
            if policy.pause_sla and active is not None and active.sla_due_at is not None:
                remaining = carry_remaining_days(
                    paused_at=now,
                    due_at=active.sla_due_at,
                    calendar=calendar,
                    policy=policy.sla_carry,
                )
                task_service.pause_sla(application, now, remaining)
            cycle = query_service.open_cycle(
                application,
                policy,
                origin_state=from_state,
                task=active,
                raised_by=actor.actor_id,
                raised_by_role=_acting_role(transition, actor),
                message=request.message,
                unlocked_fields=request.unlocked_fields,
                unlocked_doc_types=request.unlocked_doc_types,
                mandatory_fields=request.mandatory_fields,
                mandatory_doc_types=request.mandatory_doc_types,
                response_due_at=now + timedelta(days=policy.response_days),
            )
            to_state = transition.to_state
            remarks = remarks or request.message
        elif transition.responds_to_query:
            request = response or ResponseRequest.from_payload(payload)
            if request.query_id is None:
                cycle = query_service.pending_cycle(application)
                if cycle is None:
                    raise QueryNotFoundError(application.arn, "<pending>")
            else:
                cycle = query_service.get_cycle(application, request.query_id)
            query_service.validate_response(cycle, request.updated_data, request.updated_documents)
            query_service.close_cycle(
                application,
                cycle,
                updated_data=request.updated_data,
                updated_documents=request.updated_documents,
                remarks=request.remarks,
                actor_id=actor.actor_id,
            )
            to_state = query_service.return_state(cycle, policy)
            remarks = remarks or request.remarks
        else:
            to_state = transition.to_state

        target = definition.state(to_state)
        if target is None:
            raise TransitionNotFoundError(transition.transition_id, from_state)

        completed = None
        if active is not None:
            completed = task_service.complete_task(
                active, actor.actor_id, transition.task_outcome, remarks
            )

        application.state = to_state
        application.row_version += 1
        application.updated_at = now

        if transition.decision is not None:
            session.add(Decision(
                application_id=application.id,
                arn=application.arn,
                decision_type=transition.decision,
                reason_codes=list(payload.get("reason_codes") or []),
                remarks=remarks,
                conditions=list(payload.get("conditions") or []),
                decided_by=actor.actor_id,
                decided_at=now,
                transition_id=transition.transition_id,
                task_id=completed.id if completed is not None else None,
                context={"from_state": from_state, "to_state": to_state},
            ))
            disposal = DISPOSAL_FOR_DECISION.get(transition.decision)
            if disposal is not None:
                application.disposal_type = disposal
                application.disposed_at = now

        new_task = None
        if target.requires_task:
            remaining = task_service.resume_sla(application)
            if remaining is not None:
                due_at = resume_due_at(resumed_at=now, remaining_days=remaining, calendar=calendar)
            else:
                due_at = compute_due_at(created_at=now, sla_days=target.sla_days, calendar=calendar)
            new_task = task_service.create_task(application, target, due_at)
            application.sla_due_at = due_at
        elif not transition.raises_query:
            task_service.resume_sla(application)
            application.sla_due_at = None

        keys = enqueue_actions(
            session,
            arn=application.arn,
            transition=transition,
            occurrence=application.row_version,
            context={
                "applicant_id": application.applicant_id,
                "authority_id": application.authority_id,
                "from_state": from_state,
                "to_state": to_state,
                "task_id": str(new_task.id) if new_task is not None else None,
                "role_required": new_task.role_required if new_task is not None else None,
                "query_id": str(cycle.id) if cycle is not None else None,
            },
            now=now,
            max_attempts=self._dispatch_max_attempts,
        )

        event = AuditorService(session, self._clock).append(
            application.arn,
            AuditEventType.STATE_CHANGED,
            actor.actor_id,
            actor.actor_type,
            payload={
                "from_state": from_state,
                "to_state": to_state,
                "transition_id": transition.transition_id,
                "actor": actor.to_dict(),
                "remarks": remarks,
                "decision": transition.decision.value if transition.decision else None,
                "completed_task_id": str(completed.id) if completed is not None else None,
                "task_id": str(new_task.id) if new_task is not None else None,
                "query_id": str(cycle.id) if cycle is not None else None,
                "row_version": application.row_version,
            },
        )

        return TransitionResult(
            success=True,
            arn=application.arn,
            transition_id=transition.transition_id,
            new_state=to_state,
            previous_state=from_state,
            task_id=str(new_task.id) if new_task is not None else None,
            query_id=str(cycle.id) if cycle is not None else None,
            audit_event_id=str(event.id),
            action_keys=tuple(keys),
        )

    # Submission

    def _create_application(
        self,
        session: Session,
        definition: WorkflowDefinition,
        authority_id: str,
        applicant_id: str,
        data: Mapping[str, Any],
        arn: str | None,
    ) -> Application:
        if not authority_id:
            raise ValidationError("authority_id is required", field="authority_id")
        if not applicant_id:
            raise ValidationError("applicant_id is required", field="applicant_id")
        if not isinstance(data, Mapping):
            raise ValidationError("Application data must be an object", field="data")

        now = self._clock.now()
        if arn is None:
            arn = _generate_arn(session, definition.service_key, now)
        elif session.execute(
            select(Application.id).where(Application.arn == arn)
        ).scalar_one_or_none() is not None:
            raise ValidationError(f"Application {arn} already exists", field="arn")

        application = Application(
            arn=arn,
            service_key=definition.service_key,
            service_version=definition.version,
            workflow_checksum=definition.checksum,
            authority_id=authority_id,
            applicant_id=applicant_id,
            state=definition.initial_state,
            data=dict(data),
            row_version=1,
            submission_snapshot={"data": dict(data), "submitted_at": now.isoformat()},
            query_count=0,
            submitted_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(application)
        session.flush()
        logger.info(
            "application_created",
            extra={
                "arn": arn,
                "service_key": definition.service_key,
                "service_version": definition.version,
                "authority_id": authority_id,
            },
        )
        return application


def _generate_arn(session: Session, service_key: str, now: datetime) -> str:
    number = SequenceService(session).next_value(f"arn:{service_key}:{now.year}")
    return f"{service_key.upper()}-{now.year}-{number:06d}"


def _acting_role(transition: TransitionDef, actor: Actor) -> str | None:
    matching = sorted(set(transition.allowed_roles) & actor.roles)
    return matching[0] if matching else None


def _application_view(application: Application) -> dict[str, Any]:
    """Application fields visible to guards as ``application.*``."""
    return {
        "arn": application.arn,
        "service_key": application.service_key,
        "service_version": application.service_version,
        "state": application.state,
        "authority_id": application.authority_id,
        "applicant_id": application.applicant_id,
        "query_count": application.query_count,
        "submitted_at": application.submitted_at,
        "sla_due_at": application.sla_due_at,
        "row_version": application.row_version,
    }
