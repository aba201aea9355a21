"""
Sweeper passes: SLA breaches, query expiry, SYSTEM-state advancement
and outbox dispatch, all driven by the injected clock.
"""

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from govflow_kernel.db.engine import session_scope
from govflow_kernel.db.triggers import (
    install_immutability_triggers,
    uninstall_immutability_triggers,
)
from govflow_kernel.models.audit_event import AuditEvent
from govflow_kernel.models.query_cycle import QueryCycle, QueryStatus
from govflow_kernel.models.task import TaskStatus
from govflow_kernel.services.task_service import TaskService
from govflow_services.sweeper import SLA_BREACH_EVENT, Sweeper
from tests.conftest import (
    ACCOUNT_OFFICER,
    APPLICANT,
    AUTHORITY,
    CLERK,
    SENIOR_ASSISTANT,
    SERVICE_KEY,
    VALID_DATA,
)


@pytest.fixture
def sweeper(session_factory, executor, dispatcher, deterministic_clock, alarm):
    return Sweeper(
        session_factory,
        executor,
        dispatcher,
        clock=deterministic_clock,
        alarm=alarm,
        dispatch_max_attempts=3,
    )


@pytest.fixture
def queried(submit_application, executor):
    """An application waiting on the citizen; returns (arn, query_id)."""
    arn = submit_application().arn
    result = executor.raise_query(
        arn, None, "Upload the latest tax receipt", [], ["tax_receipt"], CLERK, ["CLERK"]
    )
    assert result.success, result.to_dict()
    return arn, result.query_id


def _events(session_factory, arn, event_type):
    with session_scope(session_factory) as s:
        return list(
            s.execute(
                select(AuditEvent)
                .where(AuditEvent.arn == arn, AuditEvent.event_type == event_type)
                .order_by(AuditEvent.seq)
            ).scalars()
        )


class TestSlaBreaches:

    def test_nothing_before_deadline(self, submit_application, sweeper, deterministic_clock):
        submit_application()
        deterministic_clock.advance(days=3)

        assert sweeper.run_once().breached_tasks == []

    def test_overdue_task_flagged_once(self, submit_application, sweeper, deterministic_clock,
                                       tasks_for, session_factory):
        result = submit_application()
        deterministic_clock.advance(days=3, hours=1)

        first = sweeper.run_once()
        second = sweeper.run_once()

        assert first.breached_tasks == [result.task_id]
        assert second.breached_tasks == []
        (task,) = tasks_for(result.arn)
        assert task.sla_breached_at == deterministic_clock.now()
        assert task.status == TaskStatus.PENDING
        (event,) = _events(session_factory, result.arn, "SLA_BREACHED")
        assert event.payload["state_id"] == "PENDING_AT_CLERK"

    def test_breach_notifies_role_pool(self, submit_application, sweeper, deterministic_clock,
                                       notifications):
        submit_application()
        deterministic_clock.advance(days=4)

        report = sweeper.run_once()

        assert len(report.dispatch.succeeded) == 3
        (breach,) = notifications.of_type(SLA_BREACH_EVENT)
        assert breach.recipients == (f"role:CLERK@{AUTHORITY}",)
        assert breach.template_data["state_id"] == "PENDING_AT_CLERK"
        assert any(":SLA_BREACH:breach_pending_at_clerk:" in key for key in report.dispatch.succeeded)

    def test_breach_notifies_assignee(self, submit_application, sweeper, deterministic_clock,
                                      notifications, session_factory):
        result = submit_application()
        with session_scope(session_factory) as s:
            TaskService(s, deterministic_clock).claim_task(result.task_id, CLERK)
        deterministic_clock.advance(days=4)

        sweeper.run_once()

        (breach,) = notifications.of_type(SLA_BREACH_EVENT)
        assert breach.recipients == (CLERK,)

    def test_paused_clock_never_breaches(self, queried, sweeper, deterministic_clock):
        deterministic_clock.advance(days=10)
        assert sweeper.run_once().breached_tasks == []

    def test_database_error_on_one_task_spares_the_rest(self, submit_application, sweeper,
                                                         deterministic_clock, monkeypatch,
                                                         captured_logs):
        first = submit_application()
        second = submit_application()
        deterministic_clock.advance(days=4)
        record_breach = sweeper._record_breach

        def _flaky(task_id, arn, now):
            if arn == first.arn:
                raise OperationalError("UPDATE tasks", {}, Exception("database is locked"))
            return record_breach(task_id, arn, now)

        monkeypatch.setattr(sweeper, "_record_breach", _flaky)

        report = sweeper.run_once()

        assert report.breached_tasks == [second.task_id]
        assert report.dispatch is not None
        assert any(r["message"] == "sla_breach_sweep_item_failed" for r in captured_logs())

    def test_pending_counts(self, submit_application, sweeper, deterministic_clock):
        submit_application()
        assert sweeper.pending_counts() == {"breached_tasks": 0, "expired_queries": 0}

        deterministic_clock.advance(days=4)
        assert sweeper.pending_counts() == {"breached_tasks": 1, "expired_queries": 0}


class TestQueryExpiry:

    def test_open_until_window_passes(self, queried, sweeper, deterministic_clock,
                                      load_application):
        arn, _ = queried
        deterministic_clock.advance(days=15)

        assert sweeper.run_once().expired_queries == []
        assert load_application(arn).state == "QUERY_PENDING"

    def test_lapsed_query_rejects_and_closes(self, queried, sweeper, deterministic_clock,
                                             load_application, session_factory):
        arn, query_id = queried
        deterministic_clock.advance(days=15, minutes=1)

        report = sweeper.run_once()

        assert report.expired_queries == [query_id]
        (lapse,) = report.expiry_transitions
        assert lapse.success
        assert lapse.transition_id == "QUERY_LAPSE"
        assert lapse.new_state == "REJECTED"
        assert [r.new_state for r in report.advanced] == ["CLOSED"]
        assert load_application(arn).state == "CLOSED"

        with session_scope(session_factory) as s:
            cycle = s.execute(select(QueryCycle).where(QueryCycle.arn == arn)).scalar_one()
            assert cycle.status == QueryStatus.EXPIRED
        (expired_event,) = _events(session_factory, arn, "QUERY_EXPIRED")
        assert expired_event.actor_type == "SYSTEM"

    def test_late_response_refused(self, queried, sweeper, deterministic_clock, executor):
        arn, query_id = queried
        deterministic_clock.advance(days=16)
        sweeper.run_once()

        late = executor.respond_to_query(
            arn, query_id, {}, APPLICANT, updated_documents={"tax_receipt": "doc://tax-2026"}
        )

        assert not late.success


class TestSystemAdvance:

    def test_submitted_application_reaches_clerk(self, executor, officers, sweeper,
                                                 load_application):
        arn = executor.submit(SERVICE_KEY, AUTHORITY, APPLICANT, VALID_DATA).arn

        report = sweeper.run_once()

        assert [r.transition_id for r in report.advanced] == ["ASSIGN_CLERK"]
        assert load_application(arn).state == "PENDING_AT_CLERK"

    def test_approved_application_closes(self, submit_application, fire, sweeper,
                                         load_application):
        arn = submit_application().arn
        fire(arn, "CLERK_FORWARD", CLERK)
        fire(arn, "SA_FORWARD", SENIOR_ASSISTANT)
        fire(arn, "AO_APPROVE", ACCOUNT_OFFICER)

        report = sweeper.run_once()

        assert [r.transition_id for r in report.advanced] == ["CLOSE_APPROVED"]
        assert load_application(arn).state == "CLOSED"
        assert sweeper.run_once().advanced == []


class TestIntegrityGate:

    def test_raised_alarm_halts_pass(self, executor, officers, sweeper, alarm,
                                     deterministic_clock, load_application):
        arn = executor.submit(SERVICE_KEY, AUTHORITY, APPLICANT, VALID_DATA).arn
        alarm.raise_alarm("HASH_MISMATCH", deterministic_clock.now())

        report = sweeper.run_once()

        assert report.halted
        assert report.advanced == []
        assert report.dispatch is None
        assert load_application(arn).state == "SUBMITTED"

    def test_verification_on_intact_chain(self, submit_application, session_factory, executor,
                                          dispatcher, deterministic_clock, alarm):
        submit_application()
        sweeper = Sweeper(session_factory, executor, dispatcher, clock=deterministic_clock,
                          alarm=alarm, verify_chain=True)

        report = sweeper.run_once()

        assert report.verification.ok
        assert report.verification.checked_count == 2
        assert not report.halted

    def test_verification_failure_raises_alarm(self, submit_application, session_factory, engine,
                                               executor, dispatcher, deterministic_clock, alarm):
        submit_application()
        uninstall_immutability_triggers(engine)
        try:
            with engine.begin() as conn:
                conn.execute(text("UPDATE audit_events SET actor_id = 'intruder' WHERE seq = 1"))
        finally:
            install_immutability_triggers(engine)
        sweeper = Sweeper(session_factory, executor, dispatcher, clock=deterministic_clock,
                          alarm=alarm, verify_chain=True)

        report = sweeper.run_once()

        assert not report.verification.ok
        assert report.halted
        assert alarm.state.reason == "HASH_MISMATCH"


class TestBackgroundLoop:

    def test_start_and_stop(self, session_factory, executor, deterministic_clock, alarm):
        sweeper = Sweeper(session_factory, executor, clock=deterministic_clock, alarm=alarm,
                          interval_seconds=3600)

        sweeper.start()
        assert sweeper.is_running
        sweeper.stop(timeout=10)

        assert not sweeper.is_running
