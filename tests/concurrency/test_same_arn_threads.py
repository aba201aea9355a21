"""
Concurrent transitions on real threads.

Many threads fire the same edge on the same application at once: exactly
one wins, the rest fail cleanly, and the audit chain stays gap-free.
Different applications proceed in parallel.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import select

from govflow_kernel.db.engine import session_scope
from govflow_kernel.exceptions import TaskAlreadyClaimedError
from govflow_kernel.models.audit_event import AuditEvent
from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.services.task_service import TaskService
from govflow_services.transition_executor import TransitionExecutor
from tests.conftest import APPLICANT, AUTHORITY, CLERK, SERVICE_KEY, VALID_DATA

THREADS = 6


def _race(fn, args_list):
    barrier = Barrier(len(args_list))

    def _run(args):
        barrier.wait(timeout=10)
        return fn(*args)

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        return list(pool.map(_run, args_list))


def _transition_ids(session_factory, arn):
    with session_scope(session_factory) as s:
        events = s.execute(
            select(AuditEvent).where(AuditEvent.arn == arn).order_by(AuditEvent.seq)
        ).scalars()
        return [e.payload["transition_id"] for e in events]


class TestSameApplication:

    def test_one_winner_with_local_locks(self, submit_application, executor, session_factory,
                                         load_application):
        arn = submit_application().arn

        results = _race(
            lambda: executor.execute_transition(arn, "CLERK_FORWARD", CLERK, ["CLERK"]),
            [()] * THREADS,
        )

        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert all(r.error_code == "TRANSITION_NOT_FOUND" for r in results if not r.success)
        assert load_application(arn).state == "PENDING_AT_SENIOR_ASSISTANT"
        assert _transition_ids(session_factory, arn).count("CLERK_FORWARD") == 1

    def test_one_winner_on_database_locking_alone(self, submit_application, session_factory,
                                                  registry, deterministic_clock, lookup_provider,
                                                  dispatcher, alarm, load_application):
        arn = submit_application().arn
        unlocked = TransitionExecutor(
            session_factory, registry, clock=deterministic_clock,
            lookup_provider=lookup_provider, dispatcher=dispatcher, alarm=alarm,
            use_local_locks=False,
        )

        results = _race(
            lambda: unlocked.execute_transition(arn, "CLERK_FORWARD", CLERK, ["CLERK"]),
            [()] * THREADS,
        )

        assert sum(r.success for r in results) == 1
        assert load_application(arn).row_version == 4
        assert _transition_ids(session_factory, arn).count("CLERK_FORWARD") == 1

    def test_competing_edges(self, submit_application, executor, load_application):
        arn = submit_application().arn

        results = _race(
            lambda tid: executor.execute_transition(arn, tid, CLERK, ["CLERK"]),
            [("CLERK_FORWARD",), ("CLERK_REJECT",)] * (THREADS // 2),
        )

        (winner,) = [r for r in results if r.success]
        assert load_application(arn).state == winner.new_state


class TestParallelApplications:

    def test_independent_arns_all_succeed(self, submit_application, executor, session_factory,
                                          deterministic_clock):
        arns = [submit_application().arn for _ in range(THREADS)]

        results = _race(
            lambda arn: executor.execute_transition(arn, "CLERK_FORWARD", CLERK, ["CLERK"]),
            [(arn,) for arn in arns],
        )

        assert all(r.success for r in results)
        with session_scope(session_factory) as s:
            verification = AuditorService(s, deterministic_clock).verify_integrity()
            seqs = list(s.execute(select(AuditEvent.seq).order_by(AuditEvent.seq)).scalars())
        assert verification.ok
        assert seqs == list(range(1, 3 * THREADS + 1))

    def test_parallel_submissions_get_distinct_arns(self, executor, officers):
        results = _race(
            lambda: executor.submit(SERVICE_KEY, AUTHORITY, APPLICANT, VALID_DATA),
            [()] * THREADS,
        )

        assert all(r.success for r in results)
        assert len({r.arn for r in results}) == THREADS


class TestClaimRace:

    @pytest.fixture
    def clerks(self, session_factory, deterministic_clock):
        ids = [f"clerk-{n}" for n in range(2, THREADS + 2)]
        with session_scope(session_factory) as s:
            service = TaskService(s, deterministic_clock)
            for user_id in ids:
                service.post_officer(user_id, AUTHORITY, "CLERK")
        return ids

    def test_single_claim_wins(self, submit_application, clerks, session_factory,
                               deterministic_clock, tasks_for):
        result = submit_application()

        def _claim(user_id):
            try:
                with session_scope(session_factory) as s:
                    TaskService(s, deterministic_clock).claim_task(result.task_id, user_id)
                return user_id
            except TaskAlreadyClaimedError:
                return None

        winners = [w for w in _race(_claim, [(c,) for c in clerks]) if w]

        assert len(winners) == 1
        (task,) = tasks_for(result.arn)
        assert task.assignee_id == winners[0]
