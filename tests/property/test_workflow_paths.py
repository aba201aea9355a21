"""
Property tests: random officer/citizen move sequences on one application.

Whatever the sequence, a failed move changes nothing, a successful move
lands exactly where its result says, an officer stage always has exactly
one open task for its role, and the audit chain still verifies.  Every
forward/reject path through the three officer stages closes with exactly
one decision and no open tasks.
"""

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import func, select

from govflow_kernel.db.engine import session_scope
from govflow_kernel.domain.workflow import ActorType, DisposalType
from govflow_kernel.models.application import Application
from govflow_kernel.models.audit_event import AuditEvent
from govflow_kernel.models.decision import Decision
from govflow_kernel.models.task import OPEN_TASK_STATUSES, Task
from govflow_kernel.services.auditor_service import AuditorService
from tests.conftest import (
    ACCOUNT_OFFICER,
    APPLICANT,
    AUTHORITY,
    CLERK,
    SENIOR_ASSISTANT,
    SERVICE_KEY,
    VALID_DATA,
)

STAGE_OFFICER = {
    "PENDING_AT_CLERK": (CLERK, "CLERK"),
    "PENDING_AT_SENIOR_ASSISTANT": (SENIOR_ASSISTANT, "SENIOR_ASSISTANT"),
    "PENDING_AT_ACCOUNT_OFFICER": (ACCOUNT_OFFICER, "ACCOUNT_OFFICER"),
}

OFFICER_EDGES = [
    ("CLERK_FORWARD", CLERK, "CLERK"),
    ("CLERK_REJECT", CLERK, "CLERK"),
    ("SA_FORWARD", SENIOR_ASSISTANT, "SENIOR_ASSISTANT"),
    ("SA_REJECT", SENIOR_ASSISTANT, "SENIOR_ASSISTANT"),
    ("AO_APPROVE", ACCOUNT_OFFICER, "ACCOUNT_OFFICER"),
    ("AO_REJECT", ACCOUNT_OFFICER, "ACCOUNT_OFFICER"),
    # wrong role for the edge
    ("AO_APPROVE", CLERK, "CLERK"),
]

moves = st.one_of(
    st.sampled_from(OFFICER_EDGES).map(lambda edge: ("fire",) + edge),
    st.just(("query",)),
    st.just(("respond",)),
    st.just(("advance",)),
)


def _snapshot(session_factory, arn):
    with session_scope(session_factory) as s:
        app = s.execute(select(Application).where(Application.arn == arn)).scalar_one()
        open_tasks = s.execute(
            select(Task.role_required).where(Task.arn == arn, Task.status.in_(OPEN_TASK_STATUSES))
        ).scalars().all()
        events = s.execute(
            select(func.count()).select_from(AuditEvent).where(AuditEvent.arn == arn)
        ).scalar_one()
        return app.state, app.row_version, app.query_count, list(open_tasks), events


class TestRandomMoveSequences:

    @given(sequence=st.lists(moves, min_size=1, max_size=12))
    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    def test_state_machine_invariants(self, sequence, submit_application, executor,
                                      registry, session_factory, deterministic_clock):
        definition = registry.load_workflow(SERVICE_KEY)
        arn = submit_application().arn
        query_id = None
        successes = 0

        for move in sequence:
            before = _snapshot(session_factory, arn)
            state = before[0]

            if move[0] == "fire":
                _, transition_id, user, role = move
                result = executor.execute_transition(arn, transition_id, user, [role])
            elif move[0] == "query":
                user, role = STAGE_OFFICER.get(state, (CLERK, "CLERK"))
                result = executor.raise_query(
                    arn, None, "Confirm ward", ["property.ward"], [], user, [role]
                )
                if result.success:
                    query_id = result.query_id
            elif move[0] == "respond":
                result = executor.respond_to_query(
                    arn, query_id or "no-query", {"property": {"ward": "7"}}, APPLICANT
                )
            else:
                result = executor.advance(arn)
                if result is None:
                    resting = definition.state(state)
                    assert resting.actor_type != ActorType.SYSTEM or resting.terminal
                    continue

            after = _snapshot(session_factory, arn)
            if result.success:
                successes += 1
                assert result.previous_state == state
                assert result.new_state == after[0]
                assert after[1] == before[1] + 1
                assert after[4] == before[4] + 1
            else:
                assert result.error_code is not None
                assert after == before

            new_state = definition.state(after[0])
            assert new_state is not None
            expected_roles = [new_state.effective_task_role] if new_state.requires_task else []
            assert after[3] == expected_roles
            assert after[2] <= definition.query_policy.max_cycles

        final = _snapshot(session_factory, arn)
        assert final[4] == 2 + successes
        with session_scope(session_factory) as s:
            assert AuditorService(s, deterministic_clock).verify_integrity().ok


STAGES = [
    ("CLERK_FORWARD", "CLERK_REJECT", CLERK, "CLERK"),
    ("SA_FORWARD", "SA_REJECT", SENIOR_ASSISTANT, "SENIOR_ASSISTANT"),
    ("AO_APPROVE", "AO_REJECT", ACCOUNT_OFFICER, "ACCOUNT_OFFICER"),
]


class TestDecisionPaths:

    @given(plan=st.lists(st.tuples(st.booleans(), st.booleans()), min_size=3, max_size=3))
    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    def test_every_path_ends_disposed(self, plan, submit_application, executor, advance_system,
                                      session_factory, load_application):
        """Each stage optionally queries, then forwards or rejects."""
        arn = submit_application().arn
        transitions = 2
        approved = True

        for (query_first, forward), (fwd_edge, rej_edge, user, role) in zip(plan, STAGES):
            if query_first:
                raised = executor.raise_query(arn, None, "Confirm ward", ["property.ward"], [],
                                              user, [role])
                assert raised.success, raised.to_dict()
                answered = executor.respond_to_query(arn, raised.query_id,
                                                     {"property": {"ward": "7"}}, APPLICANT)
                assert answered.success, answered.to_dict()
                transitions += 2

            result = executor.execute_transition(arn, fwd_edge if forward else rej_edge,
                                                 user, [role])
            assert result.success, result.to_dict()
            transitions += 1
            if not forward:
                approved = False
                break

        assert advance_system(arn).new_state == "CLOSED"
        transitions += 1

        app = load_application(arn)
        expected = DisposalType.APPROVED if approved else DisposalType.REJECTED
        assert app.state == "CLOSED"
        assert app.disposal_type == expected
        _, _, _, open_roles, events = _snapshot(session_factory, arn)
        assert open_roles == []
        assert events == transitions
        with session_scope(session_factory) as s:
            decisions = s.execute(select(Decision).where(Decision.arn == arn)).scalars().all()
        assert len(decisions) == 1


class TestTerminalStates:

    @given(edge=st.sampled_from(OFFICER_EDGES))
    @settings(
        max_examples=10,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    def test_closed_application_accepts_nothing(self, edge, executor, officers, advance_system,
                                                fire, session_factory):
        arn = executor.submit(SERVICE_KEY, AUTHORITY, APPLICANT, VALID_DATA).arn
        advance_system(arn)
        fire(arn, "CLERK_REJECT", CLERK)
        advance_system(arn)
        before = _snapshot(session_factory, arn)
        assert before[0] == "CLOSED"

        transition_id, user, role = edge
        result = executor.execute_transition(arn, transition_id, user, [role])

        assert not result.success
        assert result.error_code == "TRANSITION_NOT_FOUND"
        assert executor.advance(arn) is None
        assert _snapshot(session_factory, arn) == before


@pytest.mark.parametrize("count", [1, 3])
def test_submissions_get_distinct_arns(executor, officers, count):
    arns = {executor.submit(SERVICE_KEY, AUTHORITY, APPLICANT, VALID_DATA).arn for _ in range(count)}
    assert len(arns) == count
