"""
govflow_services.action_handlers -- one handler per ActionKind.

Responsibility:
    Maps the closed ``ActionKind`` set onto the external collaborators.
    Handlers are plain callables taking an ``ActionInvocation`` and
    returning an optional result reference (stored on the outbox row).

Architecture position:
    Services layer.  Called only by ``ActionDispatcher``, outside any
    database transaction.

Invariants enforced:
    - The registry covers every ActionKind; a missing handler is a
      construction error, not a runtime surprise.
    - Handlers receive the idempotency key so downstream systems can
      deduplicate retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from govflow_kernel.domain.workflow import ActionKind
from govflow_kernel.logging_config import get_logger
from govflow_services.integrations import (
    IntegrationClient,
    NotificationService,
    OutputGenerator,
)

logger = get_logger("services.action_handlers")

# Recipient placeholder resolved to the application's applicant
APPLICANT = "applicant"


@dataclass(frozen=True)
class ActionInvocation:
    """Everything a handler may use; built from one outbox row."""

    idempotency_key: str
    arn: str
    transition_id: str
    action_id: str
    kind: ActionKind
    params: Mapping[str, Any]
    context: Mapping[str, Any] = field(default_factory=dict)
    attempt: int = 1


ActionHandler = Callable[[ActionInvocation], "str | None"]


class HandlerRegistry:
    """ActionKind -> handler."""

    def __init__(self, handlers: Mapping[ActionKind, ActionHandler]):
        missing = [k.value for k in ActionKind if k not in handlers]
        if missing:
            raise ValueError(f"No handler registered for action kinds: {', '.join(missing)}")
        self._handlers = dict(handlers)

    def get(self, kind: ActionKind | str) -> ActionHandler:
        return self._handlers[ActionKind(kind)]

    def kinds(self) -> frozenset[ActionKind]:
        return frozenset(self._handlers)


def _resolve_recipients(recipients: Any, context: Mapping[str, Any]) -> list[str]:
    resolved: list[str] = []
    for recipient in recipients or ():
        if recipient == APPLICANT:
            applicant = context.get("applicant_id")
            if applicant:
                resolved.append(applicant)
        else:
            resolved.append(str(recipient))
    return resolved


def make_assign_task_handler(notifications: NotificationService) -> ActionHandler:
    def handle(invocation: ActionInvocation) -> str | None:
        role = invocation.params.get("role") or invocation.context.get("role_required")
        authority = invocation.context.get("authority_id")
        notifications.send(
            "TASK_ASSIGNED",
            [f"role:{role}@{authority}"],
            {
                "arn": invocation.arn,
                "role": role,
                "state": invocation.context.get("to_state"),
                "task_id": invocation.context.get("task_id"),
                "idempotency_key": invocation.idempotency_key,
            },
        )
        return None

    return handle


def make_notify_handler(notifications: NotificationService) -> ActionHandler:
    def handle(invocation: ActionInvocation) -> str | None:
        event_type = invocation.params.get("event_type")
        if not event_type:
            raise ValueError(f"NOTIFY action {invocation.action_id} has no event_type")
        recipients = _resolve_recipients(invocation.params.get("recipients"), invocation.context)
        template_data = {
            "arn": invocation.arn,
            "state": invocation.context.get("to_state"),
            "idempotency_key": invocation.idempotency_key,
            **dict(invocation.params.get("template_data") or {}),
        }
        notifications.send(event_type, recipients, template_data)
        return None

    return handle


def make_generate_output_handler(outputs: OutputGenerator) -> ActionHandler:
    def handle(invocation: ActionInvocation) -> str | None:
        template_id = invocation.params.get("template_id")
        if not template_id:
            raise ValueError(f"GENERATE_OUTPUT action {invocation.action_id} has no template_id")
        ref = outputs.generate(invocation.arn, template_id)
        logger.info(
            "output_generated",
            extra={"arn": invocation.arn, "template_id": template_id, "artifact_ref": ref},
        )
        return ref

    return handle


def make_call_integration_handler(integrations: IntegrationClient) -> ActionHandler:
    def handle(invocation: ActionInvocation) -> str | None:
        name = invocation.params.get("name")
        if not name:
            raise ValueError(f"CALL_INTEGRATION action {invocation.action_id} has no name")
        result = integrations.call(name, invocation.arn, dict(invocation.params.get("params") or {}))
        return None if result is None else str(result)[:500]

    return handle


def build_default_handlers(
    notifications: NotificationService,
    outputs: OutputGenerator,
    integrations: IntegrationClient,
) -> HandlerRegistry:
    return HandlerRegistry({
        ActionKind.ASSIGN_TASK: make_assign_task_handler(notifications),
        ActionKind.NOTIFY: make_notify_handler(notifications),
        ActionKind.GENERATE_OUTPUT: make_generate_output_handler(outputs),
        ActionKind.CALL_INTEGRATION: make_call_integration_handler(integrations),
    })
