"""
Query loop: an officer sends the application back with a set of unlocked
fields and documents, the applicant answers, and the application returns
to the stage that asked.

The stage SLA is frozen while the query is open and resumes with the
carried-over working days.
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from govflow_kernel.db.engine import session_scope
from govflow_kernel.models.query_cycle import QueryCycle, QueryStatus
from govflow_kernel.models.task import TaskStatus
from govflow_kernel.services.query_service import QueryService
from govflow_kernel.services.task_service import TaskService
from tests.conftest import (
    APPLICANT,
    CLERK,
    SENIOR_ASSISTANT,
    VALID_DATA,
)

PLOT_FIELD = "property.plot_no"


@pytest.fixture
def raise_query(executor):
    def _raise(arn, officer=CLERK, role="CLERK", fields=(PLOT_FIELD,), docs=(), **kwargs):
        return executor.raise_query(
            arn, kwargs.pop("task_id", None), kwargs.pop("message", "Plot number is illegible"),
            fields, docs, officer, [role], **kwargs,
        )

    return _raise


@pytest.fixture
def respond(executor):
    def _respond(arn, query_id, data=None, documents=None, actor=APPLICANT, remarks=None):
        return executor.respond_to_query(
            arn, query_id,
            {"property": {"plot_no": "P-18"}} if data is None else data,
            actor, updated_documents=documents, remarks=remarks,
        )

    return _respond


def _cycles(session_factory, arn):
    with session_scope(session_factory) as s:
        return list(
            s.execute(
                select(QueryCycle).where(QueryCycle.arn == arn).order_by(QueryCycle.query_number)
            ).scalars()
        )


class TestRaiseQuery:

    def test_moves_application_to_citizen(self, submit_application, raise_query,
                                          load_application, session_factory,
                                          deterministic_clock):
        arn = submit_application().arn

        result = raise_query(arn)

        assert result.success, result.to_dict()
        assert result.new_state == "QUERY_PENDING"
        assert result.transition_id == "CLERK_QUERY"
        assert result.query_id is not None

        app = load_application(arn)
        assert app.query_count == 1
        (cycle,) = _cycles(session_factory, arn)
        assert str(cycle.id) == result.query_id
        assert cycle.status == QueryStatus.PENDING
        assert cycle.origin_state == "PENDING_AT_CLERK"
        assert cycle.raised_by == CLERK
        assert cycle.raised_by_role == "CLERK"
        assert cycle.unlocked_field_keys == [PLOT_FIELD]
        assert cycle.mandatory_field_keys == [PLOT_FIELD]
        assert cycle.response_due_at == deterministic_clock.now() + timedelta(days=15)

    def test_closes_the_officer_task(self, submit_application, raise_query, tasks_for):
        arn = submit_application().arn
        raise_query(arn)

        (task,) = tasks_for(arn)
        assert task.status == TaskStatus.COMPLETED
        assert task.decision == "QUERY"

    def test_generic_transition_with_payload(self, submit_application, fire):
        arn = submit_application().arn
        result = fire(arn, "CLERK_QUERY", CLERK, {
            "message": "Upload the site plan",
            "unlocked_doc_types": ["site_plan"],
        })
        assert result.success
        assert result.new_state == "QUERY_PENDING"

    def test_generic_transition_without_message(self, submit_application, fire, load_application):
        arn = submit_application().arn
        result = fire(arn, "CLERK_QUERY", CLERK, {"unlocked_fields": [PLOT_FIELD]})
        assert result.error_code == "VALIDATION_ERROR"
        assert load_application(arn).state == "PENDING_AT_CLERK"

    @pytest.mark.parametrize("kwargs", [
        {"message": "   "},
        {"fields": ()},
        {"fields": ("applicant.name",)},
        {"fields": ("applicant",)},
        {"mandatory_fields": ["property.ward"]},
        {"mandatory_doc_types": ["site_plan"]},
    ])
    def test_invalid_requests_change_nothing(self, submit_application, raise_query,
                                             load_application, kwargs):
        arn = submit_application().arn

        result = raise_query(arn, **kwargs)

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        app = load_application(arn)
        assert app.state == "PENDING_AT_CLERK"
        assert app.query_count == 0
        assert not app.sla_paused

    def test_wrong_task_id(self, submit_application, raise_query):
        arn = submit_application().arn
        result = raise_query(arn, task_id="00000000-0000-0000-0000-000000000000")
        assert result.error_code == "VALIDATION_ERROR"
        assert result.details["field"] == "task_id"

    def test_matching_task_id(self, submit_application, raise_query):
        submitted = submit_application()
        assert raise_query(submitted.arn, task_id=submitted.task_id).success

    def test_role_must_match_stage(self, submit_application, raise_query):
        arn = submit_application().arn
        result = raise_query(arn, officer=SENIOR_ASSISTANT, role="SENIOR_ASSISTANT")
        assert result.error_code == "FORBIDDEN"

    def test_no_query_edge_in_citizen_state(self, submit_application, raise_query):
        arn = submit_application().arn
        raise_query(arn)
        again = raise_query(arn)
        assert again.error_code == "TRANSITION_NOT_FOUND"


class TestRespond:

    def test_returns_to_origin_stage(self, submit_application, raise_query, respond,
                                     load_application):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id

        result = respond(arn, query_id, remarks="corrected")

        assert result.success, result.to_dict()
        assert result.transition_id == "QUERY_RESPOND"
        assert result.new_state == "PENDING_AT_CLERK"
        assert result.task_id is not None
        app = load_application(arn)
        assert app.data["property"] == {"plot_no": "P-18", "ward": "4"}
        assert app.data["applicant"] == VALID_DATA["applicant"]
        assert app.submission_snapshot["data"] == VALID_DATA

    def test_origin_is_the_raising_stage(self, submit_application, fire, raise_query, respond):
        arn = submit_application().arn
        fire(arn, "CLERK_FORWARD", CLERK)
        query_id = raise_query(arn, officer=SENIOR_ASSISTANT, role="SENIOR_ASSISTANT").query_id

        result = respond(arn, query_id)

        assert result.new_state == "PENDING_AT_SENIOR_ASSISTANT"

    def test_cycle_marked_responded(self, submit_application, raise_query, respond,
                                    session_factory):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id
        respond(arn, query_id, remarks="see corrected plot number")

        (cycle,) = _cycles(session_factory, arn)
        assert cycle.status == QueryStatus.RESPONDED
        assert cycle.response_remarks == "see corrected plot number"
        assert cycle.resubmission_count == 1

    def test_locked_field_rejected(self, submit_application, raise_query, respond,
                                   load_application):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id

        result = respond(arn, query_id, {"property": {"plot_no": "P-18", "ward": "9"}})

        assert result.error_code == "FIELDS_NOT_UNLOCKED"
        assert result.details["locked_fields"] == ["property.ward"]
        app = load_application(arn)
        assert app.state == "QUERY_PENDING"
        assert app.data == VALID_DATA

    def test_applicant_identity_never_editable(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id

        result = respond(arn, query_id, {
            "property": {"plot_no": "P-18"},
            "applicant": {"name": "Someone Else"},
        })

        assert result.error_code == "FIELDS_NOT_UNLOCKED"
        assert result.details["locked_fields"] == ["applicant.name"]

    def test_unlocked_parent_covers_children(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(arn, fields=("property",)).query_id

        result = respond(arn, query_id, {"property": {"ward": "5"}})

        assert result.success, result.to_dict()

    def test_mandatory_items_required(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(arn, docs=("site_plan",)).query_id

        result = respond(arn, query_id)

        assert result.error_code == "MANDATORY_ITEMS_MISSING"
        assert result.details["missing_doc_types"] == ["site_plan"]
        assert result.details["missing_fields"] == []

    def test_optional_items_may_be_skipped(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(
            arn, docs=("site_plan",), mandatory_fields=[PLOT_FIELD], mandatory_doc_types=[],
        ).query_id

        assert respond(arn, query_id).success

    def test_locked_document_rejected(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id

        result = respond(arn, query_id, documents={"tax_receipt": "blob://r1"})

        assert result.error_code == "FIELDS_NOT_UNLOCKED"
        assert result.details["locked_fields"] == ["document:tax_receipt"]

    def test_documents_are_versioned(self, submit_application, raise_query, respond,
                                     session_factory, load_application, deterministic_clock):
        arn = submit_application(documents={"site_plan": "blob://v1"}).arn
        query_id = raise_query(arn, docs=("site_plan",)).query_id

        assert respond(arn, query_id, documents={"site_plan": "blob://v2"}).success

        app = load_application(arn)
        with session_scope(session_factory) as s:
            versions = QueryService(s, deterministic_clock).document_versions(app, "site_plan")
            assert [(d.version, d.storage_ref) for d in versions] == [
                (1, "blob://v1"), (2, "blob://v2"),
            ]
            assert str(versions[1].query_id) == query_id

    def test_only_applicant_may_respond(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id
        assert respond(arn, query_id, actor="citizen-2").error_code == "FORBIDDEN"

    def test_answered_query_cannot_be_answered_again(self, submit_application, raise_query,
                                                     respond):
        arn = submit_application().arn
        query_id = raise_query(arn).query_id
        respond(arn, query_id)

        again = respond(arn, query_id)

        assert again.error_code == "TRANSITION_NOT_FOUND"

    def test_unknown_query_id(self, submit_application, raise_query, respond):
        arn = submit_application().arn
        raise_query(arn)
        result = respond(arn, "00000000-0000-0000-0000-000000000000")
        assert result.error_code == "QUERY_NOT_FOUND"


class TestQueryBudget:

    def test_budget_of_three_cycles(self, submit_application, raise_query, respond,
                                    load_application):
        arn = submit_application().arn
        for _ in range(3):
            query_id = raise_query(arn).query_id
            assert respond(arn, query_id).success

        fourth = raise_query(arn)

        assert not fourth.success
        assert fourth.error_code == "QUERY_BUDGET_EXHAUSTED"
        assert dict(fourth.details) == {"arn": arn, "query_count": 3, "max_cycles": 3}
        app = load_application(arn)
        assert app.state == "PENDING_AT_CLERK"
        assert app.query_count == 3

    def test_budget_is_per_application(self, submit_application, raise_query, respond):
        first = submit_application().arn
        for _ in range(3):
            respond(first, raise_query(first).query_id)

        second = submit_application().arn
        assert raise_query(second).success

    def test_query_numbers_increase(self, submit_application, raise_query, respond,
                                    session_factory):
        arn = submit_application().arn
        for _ in range(2):
            respond(arn, raise_query(arn).query_id)

        assert [c.query_number for c in _cycles(session_factory, arn)] == [1, 2]


class TestSlaPause:
    """Clerk stage starts Monday 2 March 09:00 with a three working day budget."""

    def test_pause_freezes_remaining_budget(self, submit_application, raise_query,
                                            load_application, deterministic_clock):
        arn = submit_application().arn
        deterministic_clock.advance(days=2)

        raise_query(arn)

        app = load_application(arn)
        assert app.sla_paused
        assert app.sla_paused_at == datetime(2026, 3, 4, 9, tzinfo=UTC)
        # Wednesday 09:00 pause, Thursday 09:00 due: one whole day left
        assert app.sla_remaining_days == 1

    def test_resume_counts_from_response(self, submit_application, raise_query, respond,
                                         load_application, tasks_for, deterministic_clock):
        arn = submit_application().arn
        deterministic_clock.advance(days=2)
        query_id = raise_query(arn).query_id
        deterministic_clock.advance(days=5)

        result = respond(arn, query_id)

        expected_due = datetime(2026, 3, 10, 9, tzinfo=UTC)
        app = load_application(arn)
        assert not app.sla_paused
        assert app.sla_remaining_days is None
        assert app.sla_due_at == expected_due
        new_task = next(t for t in tasks_for(arn) if str(t.id) == result.task_id)
        assert new_task.sla_due_at == expected_due

    def test_instant_response_never_extends_deadline(self, submit_application, raise_query,
                                                      respond, load_application,
                                                      deterministic_clock):
        arn = submit_application().arn
        original_due = load_application(arn).sla_due_at
        deterministic_clock.advance(hours=25)

        respond(arn, raise_query(arn).query_id)

        app = load_application(arn)
        assert original_due == datetime(2026, 3, 5, 9, tzinfo=UTC)
        assert app.sla_due_at == datetime(2026, 3, 4, 10, tzinfo=UTC)
        assert app.sla_due_at <= original_due

    def test_no_breach_while_query_open(self, submit_application, raise_query, session_factory,
                                         deterministic_clock):
        arn = submit_application().arn
        raise_query(arn)
        deterministic_clock.advance(days=10)

        with session_scope(session_factory) as s:
            breached = TaskService(s, deterministic_clock).find_breached_tasks(
                deterministic_clock.now()
            )
        assert breached == []

    def test_editable_fields(self, workflow_service):
        submitted = workflow_service.submit_application(
            "no_due_certificate", "MC-01", APPLICANT, VALID_DATA,
        )
        arn = submitted["arn"]
        assert workflow_service.editable_fields(arn) == []

        workflow_service.raise_query(
            arn, submitted["task_id"], "Fix the ward", ["property.ward", PLOT_FIELD], [],
            CLERK, ["CLERK"],
        )

        assert workflow_service.editable_fields(arn) == ["property.plot_no", "property.ward"]
