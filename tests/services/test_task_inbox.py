"""
Officer role pools: inbox listing, claim and release.

Tasks sit unassigned in the pool of the state's role at the
application's authority until one posted officer claims them.
"""

import pytest

from govflow_kernel.db.engine import session_scope
from govflow_kernel.exceptions import (
    ForbiddenError,
    TaskAlreadyClaimedError,
    TaskNotFoundError,
    ValidationError,
)
from govflow_kernel.models.task import TaskStatus
from govflow_kernel.services.task_service import MAX_INBOX_LIMIT, TaskService
from tests.conftest import AUTHORITY, CLERK, SENIOR_ASSISTANT

SECOND_CLERK = "clerk-2"


@pytest.fixture
def task_service(session_factory, deterministic_clock):
    """Runs one TaskService call in its own committed transaction."""

    def _call(method, *args, **kwargs):
        with session_scope(session_factory) as s:
            return getattr(TaskService(s, deterministic_clock), method)(*args, **kwargs)

    return _call


@pytest.fixture
def second_clerk(task_service):
    task_service("post_officer", SECOND_CLERK, AUTHORITY, "CLERK")
    return SECOND_CLERK


class TestInboxListing:

    def test_new_task_lands_in_role_pool(self, submit_application, task_service):
        result = submit_application()

        inbox = task_service("get_inbox_tasks", CLERK)

        assert [t.task_id for t in inbox] == [result.task_id]
        row = inbox[0]
        assert row.arn == result.arn
        assert row.state_id == "PENDING_AT_CLERK"
        assert row.role_required == "CLERK"
        assert row.status == "PENDING"
        assert row.assignee_id is None
        assert row.authority_id == AUTHORITY

    def test_other_roles_do_not_see_it(self, submit_application, task_service):
        submit_application()
        assert task_service("get_inbox_tasks", SENIOR_ASSISTANT) == []
        assert task_service("get_inbox_tasks", "nobody") == []

    def test_postings_are_per_authority(self, submit_application, task_service):
        submit_application()
        task_service("post_officer", "clerk-elsewhere", "MC-02", "CLERK")

        assert task_service("get_inbox_tasks", "clerk-elsewhere") == []
        assert task_service("get_inbox_tasks", CLERK, authority_id="MC-02") == []
        assert len(task_service("get_inbox_tasks", CLERK, authority_id=AUTHORITY)) == 1

    def test_most_urgent_first(self, submit_application, task_service, deterministic_clock):
        first = submit_application().task_id
        deterministic_clock.advance(hours=1)
        second = submit_application().task_id

        inbox = task_service("get_inbox_tasks", CLERK)

        assert [t.task_id for t in inbox] == [first, second]
        assert inbox[0].sla_due_at < inbox[1].sla_due_at

    def test_pagination(self, submit_application, task_service, deterministic_clock):
        ids = []
        for _ in range(3):
            ids.append(submit_application().task_id)
            deterministic_clock.advance(minutes=5)

        assert [t.task_id for t in task_service("get_inbox_tasks", CLERK, limit=2)] == ids[:2]
        assert [t.task_id for t in task_service("get_inbox_tasks", CLERK, limit=2, offset=2)] == ids[2:]
        assert task_service("get_inbox_tasks", CLERK, offset=3) == []

    def test_forwarded_task_moves_pools(self, submit_application, fire, task_service):
        arn = submit_application().arn
        fire(arn, "CLERK_FORWARD", CLERK)

        assert task_service("get_inbox_tasks", CLERK) == []
        (row,) = task_service("get_inbox_tasks", SENIOR_ASSISTANT)
        assert row.state_id == "PENDING_AT_SENIOR_ASSISTANT"

    @pytest.mark.parametrize("kwargs,field", [
        ({"limit": 0}, "limit"),
        ({"limit": MAX_INBOX_LIMIT + 1}, "limit"),
        ({"limit": True}, "limit"),
        ({"offset": -1}, "offset"),
        ({"status": "BOGUS"}, "status"),
        ({"status": TaskStatus.COMPLETED}, "status"),
    ])
    def test_invalid_arguments(self, task_service, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            task_service("get_inbox_tasks", CLERK, **kwargs)
        assert exc_info.value.field == field


class TestClaimAndRelease:

    def test_claim_moves_task_to_personal_inbox(self, submit_application, task_service):
        task_id = submit_application().task_id

        claimed = task_service("claim_task", task_id, CLERK)

        assert claimed.status == TaskStatus.IN_PROGRESS
        assert claimed.assignee_id == CLERK
        assert task_service("get_inbox_tasks", CLERK) == []
        mine = task_service("get_inbox_tasks", CLERK, status="IN_PROGRESS")
        assert [t.task_id for t in mine] == [task_id]

    def test_second_claim_loses(self, submit_application, task_service, second_clerk):
        task_id = submit_application().task_id
        task_service("claim_task", task_id, CLERK)

        with pytest.raises(TaskAlreadyClaimedError) as exc_info:
            task_service("claim_task", task_id, second_clerk)
        assert exc_info.value.assignee_id == CLERK
        assert task_service("get_inbox_tasks", second_clerk, status="IN_PROGRESS") == []

    def test_unposted_officer_cannot_claim(self, submit_application, task_service):
        task_id = submit_application().task_id
        with pytest.raises(ForbiddenError):
            task_service("claim_task", task_id, SENIOR_ASSISTANT)

    def test_unknown_task(self, task_service):
        with pytest.raises(TaskNotFoundError):
            task_service("claim_task", "not-a-uuid", CLERK)

    def test_release_returns_task_to_pool(self, submit_application, task_service, second_clerk):
        task_id = submit_application().task_id
        task_service("claim_task", task_id, CLERK)

        released = task_service("release_task", task_id, CLERK)

        assert released.status == TaskStatus.PENDING
        assert released.assignee_id is None
        assert [t.task_id for t in task_service("get_inbox_tasks", second_clerk)] == [task_id]

    def test_only_assignee_may_release(self, submit_application, task_service, second_clerk):
        task_id = submit_application().task_id
        task_service("claim_task", task_id, CLERK)
        with pytest.raises(ForbiddenError):
            task_service("release_task", task_id, second_clerk)

    def test_unclaimed_task_cannot_be_released(self, submit_application, task_service):
        task_id = submit_application().task_id
        with pytest.raises(ForbiddenError):
            task_service("release_task", task_id, CLERK)


class TestClaimedTaskTransitions:

    def test_other_officer_cannot_act_on_claimed_task(self, submit_application, fire,
                                                      task_service, second_clerk, executor):
        result = submit_application()
        task_service("claim_task", result.task_id, CLERK)

        blocked = executor.execute_transition(result.arn, "CLERK_FORWARD", second_clerk, ["CLERK"])
        assert not blocked.success
        assert blocked.error_code == "FORBIDDEN"

        assert fire(result.arn, "CLERK_FORWARD", CLERK).success

    def test_unclaimed_task_completed_by_acting_officer(self, submit_application, fire,
                                                         tasks_for):
        arn = submit_application().arn
        fire(arn, "CLERK_FORWARD", CLERK)

        completed = next(t for t in tasks_for(arn) if t.state_id == "PENDING_AT_CLERK")
        assert completed.status == TaskStatus.COMPLETED
        assert completed.assignee_id == CLERK
        assert completed.completed_by == CLERK
        assert completed.decision == "FORWARD"

    def test_one_open_task_per_application(self, submit_application, fire, tasks_for):
        arn = submit_application().arn
        fire(arn, "CLERK_FORWARD", CLERK)
        fire(arn, "SA_FORWARD", SENIOR_ASSISTANT)

        open_tasks = [t for t in tasks_for(arn) if t.status != TaskStatus.COMPLETED]
        assert [t.state_id for t in open_tasks] == ["PENDING_AT_ACCOUNT_OFFICER"]


class TestFacadeTaskCalls:

    def test_claim_returns_error_dict(self, workflow_service, second_clerk):
        submitted = workflow_service.submit_application(
            "no_due_certificate", AUTHORITY, "citizen-1",
            {"property": {"plot_no": "P-1"}, "fee_paid": True},
        )
        task_id = submitted["task_id"]

        ok = workflow_service.claim_task(task_id, CLERK)
        lost = workflow_service.claim_task(task_id, second_clerk)

        assert ok == {"task_id": task_id, "status": "IN_PROGRESS", "assignee_id": CLERK}
        assert lost["code"] == "TASK_ALREADY_CLAIMED"
        assert lost["error"] == "CONCURRENCY_CONFLICT"

    def test_release_by_stranger_is_forbidden(self, workflow_service):
        submitted = workflow_service.submit_application(
            "no_due_certificate", AUTHORITY, "citizen-1",
            {"property": {"plot_no": "P-1"}, "fee_paid": True},
        )
        assert workflow_service.release_task(submitted["task_id"], CLERK)["code"] == "FORBIDDEN"
