"""
govflow_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the kernel, engines and configuration:
    the transition executor, the action outbox dispatcher, the sweeper
    and the ``WorkflowService`` facade.  This is the only layer that
    calls external collaborators.

Architecture position:
    Services -- top layer.

        govflow_services/ -> govflow_config/   (allowed)
        govflow_services/ -> govflow_engines/  (allowed)
        govflow_services/ -> govflow_kernel/   (allowed)
        govflow_kernel/   -> govflow_services/ (FORBIDDEN)

Invariants enforced:
    - All wiring is centralised in WorkflowService; no service
      self-constructs its collaborators there.
"""

from govflow_services.action_dispatcher import (
    ActionDispatcher,
    DeadLetterInfo,
    DispatcherConfig,
    DispatchReport,
)
from govflow_services.action_handlers import (
    ActionInvocation,
    HandlerRegistry,
    build_default_handlers,
)
from govflow_services.health import IntegrityAlarm
from govflow_services.integrations import (
    RecordingIntegrationClient,
    RecordingNotificationService,
    RecordingOutputGenerator,
    StaticLookupProvider,
)
from govflow_services.sweeper import SweepReport, Sweeper
from govflow_services.transition_executor import TransitionExecutor
from govflow_services.workflow_service import WorkflowService

__all__ = [
    "ActionDispatcher",
    "ActionInvocation",
    "DeadLetterInfo",
    "DispatchReport",
    "DispatcherConfig",
    "HandlerRegistry",
    "IntegrityAlarm",
    "RecordingIntegrationClient",
    "RecordingNotificationService",
    "RecordingOutputGenerator",
    "StaticLookupProvider",
    "SweepReport",
    "Sweeper",
    "TransitionExecutor",
    "WorkflowService",
]
