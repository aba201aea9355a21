"""
Pytest fixtures for the workflow engine test suite.

Provides:
- A fresh SQLite file database per test (tables and triggers installed)
- A deterministic clock, the built-in workflow registry and officer postings
- Executor, dispatcher and facade instances wired against that database
- Structured log capture

Environment Variables:
- GOVFLOW_TEST_DATABASE_URL: run against another database (e.g. PostgreSQL)
  instead of the per-test SQLite file.
"""

import json
import logging
import os
from io import StringIO

import pytest
from sqlalchemy import select

from govflow_config import DEFAULT_SETS_DIR, default_registry
from govflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from govflow_kernel.db.immutability import register_immutability_listeners
from govflow_kernel.domain.clock import DeterministicClock
from govflow_kernel.domain.workflow import ActorType
from govflow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from govflow_kernel.models.application import Application
from govflow_kernel.models.task import Task
from govflow_kernel.services.task_service import TaskService
from govflow_services.action_dispatcher import ActionDispatcher, DispatcherConfig
from govflow_services.action_handlers import build_default_handlers
from govflow_services.health import IntegrityAlarm
from govflow_services.integrations import (
    RecordingIntegrationClient,
    RecordingNotificationService,
    RecordingOutputGenerator,
    StaticLookupProvider,
)
from govflow_services.transition_executor import SYSTEM_ACTOR_ID, TransitionExecutor
from govflow_services.workflow_service import WorkflowService

SERVICE_KEY = "no_due_certificate"
AUTHORITY = "MC-01"
APPLICANT = "citizen-1"

CLERK = "clerk-1"
SENIOR_ASSISTANT = "sa-1"
ACCOUNT_OFFICER = "ao-1"

OFFICERS = {
    CLERK: "CLERK",
    SENIOR_ASSISTANT: "SENIOR_ASSISTANT",
    ACCOUNT_OFFICER: "ACCOUNT_OFFICER",
}

VALID_DATA = {
    "applicant": {"name": "Asha Rao", "mobile": "9000000001"},
    "property": {"plot_no": "P-17", "ward": "4"},
    "fee_paid": True,
}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture govflow logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, executor):
            executor.execute_transition(...)
            logs = captured_logs()
            assert any(r["message"] == "workflow_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("govflow")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def database_url(tmp_path):
    return os.environ.get("GOVFLOW_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'govflow.db'}"


@pytest.fixture
def engine(database_url):
    engine = init_engine_from_url(database_url)
    if engine.dialect.name != "sqlite":
        drop_tables()
    create_tables()
    register_immutability_listeners()
    yield get_engine()
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A session for direct assertions; rolled back at teardown."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def registry():
    return default_registry(DEFAULT_SETS_DIR)


@pytest.fixture
def officers(session_factory, deterministic_clock):
    """Posts one officer per role at the test authority."""
    with session_scope(session_factory) as s:
        service = TaskService(s, deterministic_clock)
        for user_id, role in OFFICERS.items():
            service.post_officer(user_id, AUTHORITY, role)
    return dict(OFFICERS)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def notifications():
    return RecordingNotificationService()


@pytest.fixture
def outputs():
    return RecordingOutputGenerator()


@pytest.fixture
def integrations():
    return RecordingIntegrationClient()


@pytest.fixture
def lookup_provider():
    return StaticLookupProvider({"dues_outstanding": 0})


@pytest.fixture
def alarm():
    return IntegrityAlarm()


@pytest.fixture
def dispatcher(session_factory, notifications, outputs, integrations, deterministic_clock, alarm):
    """Dispatcher without a worker pool; tests drive it explicitly."""
    return ActionDispatcher(
        session_factory,
        build_default_handlers(notifications, outputs, integrations),
        deterministic_clock,
        DispatcherConfig(max_attempts=3, base_delay=10.0, max_delay=60.0),
        alarm,
    )


@pytest.fixture
def executor(session_factory, registry, deterministic_clock, lookup_provider, dispatcher, alarm):
    return TransitionExecutor(
        session_factory,
        registry,
        clock=deterministic_clock,
        lookup_provider=lookup_provider,
        dispatcher=dispatcher,
        alarm=alarm,
        dispatch_max_attempts=3,
    )


@pytest.fixture
def workflow_service(
    session_factory, registry, deterministic_clock, lookup_provider,
    notifications, outputs, integrations, officers,
):
    return WorkflowService(
        session_factory,
        registry,
        clock=deterministic_clock,
        lookup_provider=lookup_provider,
        notifications=notifications,
        outputs=outputs,
        integrations=integrations,
        dispatcher_config=DispatcherConfig(max_attempts=3, base_delay=10.0, max_delay=60.0),
    )


# =============================================================================
# Helpers
# =============================================================================


@pytest.fixture
def submit_application(executor, officers):
    """Submit a valid application and advance it to PENDING_AT_CLERK."""

    def _submit(data=None, arn=None, documents=None):
        result = executor.submit(
            SERVICE_KEY, AUTHORITY, APPLICANT, data or VALID_DATA,
            arn=arn, documents=documents,
        )
        assert result.success, result.to_dict()
        advanced = executor.advance(result.arn)
        assert advanced is not None and advanced.success, advanced
        return advanced

    return _submit


@pytest.fixture
def fire(executor):
    """Fire an officer transition as the officer posted to its role."""

    def _fire(arn, transition_id, user_id, payload=None):
        return executor.execute_transition(
            arn, transition_id, user_id, [OFFICERS[user_id]], payload
        )

    return _fire


@pytest.fixture
def advance_system(executor):
    """Advance through SYSTEM states until the application rests."""

    def _advance(arn):
        last = None
        while True:
            result = executor.advance(arn)
            if result is None or not result.success:
                return last
            last = result

    return _advance


@pytest.fixture
def load_application(session_factory):
    def _load(arn):
        with session_scope(session_factory) as s:
            return s.execute(select(Application).where(Application.arn == arn)).scalar_one()

    return _load


@pytest.fixture
def tasks_for(session_factory):
    def _tasks(arn):
        with session_scope(session_factory) as s:
            return list(
                s.execute(select(Task).where(Task.arn == arn).order_by(Task.created_at)).scalars()
            )

    return _tasks


@pytest.fixture
def system_fire(executor):
    def _fire(arn, transition_id):
        return executor.execute_transition(
            arn, transition_id, SYSTEM_ACTOR_ID, (), actor_type=ActorType.SYSTEM
        )

    return _fire
