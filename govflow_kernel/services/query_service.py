"""
QueryService -- the bounded query/resubmission loop.

Responsibility:
    Opens a query cycle when an officer sends an application back to the
    citizen, checks and applies the citizen's response, and finds cycles
    whose response window has lapsed.  The state change itself (and the
    SLA pause/resume) is performed by the transition executor, which calls
    into this service inside its atomic block.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - query_count never exceeds the policy's max_cycles; the budget is
      checked again inside the application lock.
    - At most one PENDING cycle per application.
    - A response only touches unlocked fields; ``applicant.*`` is never
      editable.  Every mandatory field and document type is addressed.
    - The response returns the application to the origin state recorded
      on the cycle (or the policy's fixed return state).

Failure modes:
    - QueryBudgetExhaustedError, QueryNotFoundError, QueryNotPendingError,
      FieldsNotUnlockedError, MandatoryItemsMissingError, ValidationError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy import func, select

from govflow_kernel.domain.workflow import QueryPolicy, ReturnRule
from govflow_kernel.exceptions import (
    FieldsNotUnlockedError,
    MandatoryItemsMissingError,
    QueryBudgetExhaustedError,
    QueryNotFoundError,
    QueryNotPendingError,
    ValidationError,
)
from govflow_kernel.logging_config import get_logger
from govflow_kernel.models.application import Application
from govflow_kernel.models.document import ApplicationDocument
from govflow_kernel.models.query_cycle import QueryCycle, QueryStatus
from govflow_kernel.models.task import Task
from govflow_kernel.services.base import BaseService
from govflow_kernel.utils.data import deep_merge, leaf_paths, path_is_covered

logger = get_logger("services.query")

# Identity of the applicant is fixed at submission.
PROTECTED_PREFIX = "applicant"


def _is_protected(path: str) -> bool:
    return path == PROTECTED_PREFIX or path.startswith(PROTECTED_PREFIX + ".")


class QueryService(BaseService):
    """Query cycle bookkeeping within the caller's transaction."""

    def check_budget(self, application: Application, policy: QueryPolicy) -> None:
        if application.query_count >= policy.max_cycles:
            logger.info(
                "query_budget_exhausted",
                extra={
                    "arn": application.arn,
                    "query_count": application.query_count,
                    "max_cycles": policy.max_cycles,
                },
            )
            raise QueryBudgetExhaustedError(
                application.arn, application.query_count, policy.max_cycles
            )

    def pending_cycle(self, application: Application) -> QueryCycle | None:
        return self.session.execute(
            select(QueryCycle).where(
                QueryCycle.application_id == application.id,
                QueryCycle.status == QueryStatus.PENDING,
            )
        ).scalar_one_or_none()

    def get_cycle(self, application: Application, query_id: UUID | str) -> QueryCycle:
        try:
            cycle_id = query_id if isinstance(query_id, UUID) else UUID(str(query_id))
        except ValueError as exc:
            raise QueryNotFoundError(application.arn, str(query_id)) from exc
        cycle = self.session.get(QueryCycle, cycle_id)
        if cycle is None or cycle.application_id != application.id:
            raise QueryNotFoundError(application.arn, str(query_id))
        return cycle

    def open_cycle(
        self,
        application: Application,
        policy: QueryPolicy,
        *,
        origin_state: str,
        task: Task | None,
        raised_by: str,
        raised_by_role: str | None,
        message: str,
        unlocked_fields: Iterable[str] = (),
        unlocked_doc_types: Iterable[str] = (),
        mandatory_fields: Iterable[str] | None = None,
        mandatory_doc_types: Iterable[str] | None = None,
        response_due_at: datetime,
    ) -> QueryCycle:
        """
        Record a new PENDING cycle and consume one unit of query budget.

        Mandatory items default to everything unlocked.
        """
        self.check_budget(application, policy)
        if self.pending_cycle(application) is not None:
            raise ValidationError(f"Application {application.arn} already has an open query")
        if not message or not message.strip():
            raise ValidationError("Query message is required", field="message")

        fields = sorted(set(unlocked_fields))
        doc_types = sorted(set(unlocked_doc_types))
        if not fields and not doc_types:
            raise ValidationError(
                "A query must unlock at least one field or document type",
                field="unlocked_fields",
            )
        protected = [f for f in fields if _is_protected(f)]
        if protected:
            raise ValidationError(
                f"Applicant identity fields cannot be unlocked: {', '.join(protected)}",
                field="unlocked_fields",
            )

        mandatory = sorted(set(mandatory_fields)) if mandatory_fields is not None else fields
        mandatory_docs = (
            sorted(set(mandatory_doc_types)) if mandatory_doc_types is not None else doc_types
        )
        stray = [m for m in mandatory if not path_is_covered(m, set(fields))]
        stray_docs = [d for d in mandatory_docs if d not in doc_types]
        if stray or stray_docs:
            raise ValidationError(
                f"Mandatory items must be unlocked: {', '.join(stray + stray_docs)}",
                field="mandatory_fields",
            )

        application.query_count += 1
        now = self.clock.now()
        cycle = QueryCycle(
            application_id=application.id,
            arn=application.arn,
            query_number=application.query_count,
            origin_state=origin_state,
            task_id=task.id if task is not None else None,
            raised_at=now,
            raised_by=raised_by,
            raised_by_role=raised_by_role,
            message=message.strip(),
            unlocked_field_keys=fields,
            unlocked_doc_types=doc_types,
            mandatory_field_keys=mandatory,
            mandatory_doc_types=mandatory_docs,
            response_due_at=response_due_at,
            status=QueryStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.session.add(cycle)
        self.session.flush()
        logger.info(
            "query_raised",
            extra={
                "arn": application.arn,
                "query_id": str(cycle.id),
                "query_number": cycle.query_number,
                "origin_state": origin_state,
                "unlocked_fields": fields,
                "unlocked_doc_types": doc_types,
            },
        )
        return cycle

    def validate_response(
        self,
        cycle: QueryCycle,
        updated_data: Mapping[str, Any],
        updated_documents: Mapping[str, str] | None = None,
    ) -> None:
        """Reject edits outside the unlocked set and unaddressed mandatory items."""
        if cycle.status != QueryStatus.PENDING:
            raise QueryNotPendingError(str(cycle.id), cycle.status.value)

        documents = dict(updated_documents or {})
        allowed = set(cycle.unlocked_field_keys or ())
        touched = list(leaf_paths(dict(updated_data or {})))

        locked = [
            p for p in touched
            if _is_protected(p) or not path_is_covered(p, allowed)
        ]
        locked += [
            f"document:{d}" for d in documents if d not in (cycle.unlocked_doc_types or ())
        ]
        if locked:
            raise FieldsNotUnlockedError(locked)

        missing_fields = [
            m for m in cycle.mandatory_field_keys or ()
            if not any(path_is_covered(p, {m}) for p in touched)
        ]
        missing_docs = [d for d in cycle.mandatory_doc_types or () if d not in documents]
        if missing_fields or missing_docs:
            raise MandatoryItemsMissingError(missing_fields, missing_docs)

    def return_state(self, cycle: QueryCycle, policy: QueryPolicy) -> str:
        if policy.return_rule == ReturnRule.FIXED and policy.return_state:
            return policy.return_state
        return cycle.origin_state

    def close_cycle(
        self,
        application: Application,
        cycle: QueryCycle,
        *,
        updated_data: Mapping[str, Any],
        updated_documents: Mapping[str, str] | None,
        remarks: str | None,
        actor_id: str,
    ) -> list[ApplicationDocument]:
        """Apply a validated response: merge data, version documents, mark RESPONDED."""
        now = self.clock.now()
        application.data = deep_merge(dict(application.data or {}), dict(updated_data or {}))

        new_docs = [
            self.record_document(application, doc_type, ref, actor_id, query_id=cycle.id)
            for doc_type, ref in sorted((updated_documents or {}).items())
        ]

        cycle.status = QueryStatus.RESPONDED
        cycle.responded_at = now
        cycle.response_remarks = remarks
        cycle.resubmission_count += 1
        cycle.updated_at = now
        self.session.flush()
        logger.info(
            "query_responded",
            extra={
                "arn": application.arn,
                "query_id": str(cycle.id),
                "document_count": len(new_docs),
            },
        )
        return new_docs

    def record_document(
        self,
        application: Application,
        doc_type: str,
        storage_ref: str,
        uploaded_by: str,
        query_id: UUID | None = None,
    ) -> ApplicationDocument:
        """Add the next version of a document type."""
        current = self.session.execute(
            select(func.max(ApplicationDocument.version)).where(
                ApplicationDocument.application_id == application.id,
                ApplicationDocument.doc_type == doc_type,
            )
        ).scalar_one_or_none()
        document = ApplicationDocument(
            application_id=application.id,
            arn=application.arn,
            doc_type=doc_type,
            version=(current or 0) + 1,
            storage_ref=storage_ref,
            uploaded_by=uploaded_by,
            uploaded_at=self.clock.now(),
            query_id=query_id,
        )
        self.session.add(document)
        self.session.flush()
        return document

    def document_versions(self, application: Application, doc_type: str) -> Sequence[ApplicationDocument]:
        return self.session.execute(
            select(ApplicationDocument)
            .where(
                ApplicationDocument.application_id == application.id,
                ApplicationDocument.doc_type == doc_type,
            )
            .order_by(ApplicationDocument.version)
        ).scalars().all()

    def editable_fields(self, application: Application) -> list[str]:
        cycle = self.pending_cycle(application)
        if cycle is None:
            return []
        return sorted(f for f in cycle.unlocked_field_keys or () if not _is_protected(f))

    def find_expired_queries(self, now: datetime, limit: int = 500) -> Sequence[QueryCycle]:
        return self.session.execute(
            select(QueryCycle)
            .where(
                QueryCycle.status == QueryStatus.PENDING,
                QueryCycle.response_due_at < now,
            )
            .order_by(QueryCycle.response_due_at)
            .limit(limit)
        ).scalars().all()

    def mark_expired(self, cycle: QueryCycle, now: datetime) -> None:
        if cycle.status != QueryStatus.PENDING:
            raise QueryNotPendingError(str(cycle.id), cycle.status.value)
        cycle.status = QueryStatus.EXPIRED
        cycle.updated_at = now
        self.session.flush()
        logger.info(
            "query_expired",
            extra={"arn": cycle.arn, "query_id": str(cycle.id), "query_number": cycle.query_number},
        )
