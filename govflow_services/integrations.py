"""
govflow_services.integrations -- contracts for external collaborators.

Responsibility:
    Narrow Protocols for everything the engine delegates: output (PDF/QR)
    generation, notifications, third-party integrations and guard lookup
    data.  Recording in-memory implementations back tests and local runs.

Architecture position:
    Services layer.  The action handlers and the transition executor
    depend on these Protocols only; concrete adapters live outside the
    engine.

Failure modes:
    - Implementations raise whatever their transport raises; the action
      dispatcher records the error and retries.  Lookup failures are
      swallowed by the executor and leave guard variables unresolved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable


@runtime_checkable
class OutputGenerator(Protocol):
    """Renders certificates and letters; returns an artifact reference."""

    def generate(self, arn: str, template_id: str) -> str:
        ...


@runtime_checkable
class NotificationService(Protocol):
    """Delivers SMS / email / in-app notifications."""

    def send(self, event_type: str, recipients: Sequence[str], template_data: Mapping[str, Any]) -> None:
        ...


@runtime_checkable
class IntegrationClient(Protocol):
    """Calls a named external system (land records, payment status, ...)."""

    def call(self, name: str, arn: str, params: Mapping[str, Any]) -> Any:
        ...


@runtime_checkable
class LookupProvider(Protocol):
    """Supplies the ``lookup.*`` variables of guard expressions."""

    def fetch(self, arn: str, data: Mapping[str, Any]) -> dict[str, Any]:
        ...


# In-memory implementations


@dataclass
class SentNotification:
    event_type: str
    recipients: tuple[str, ...]
    template_data: dict[str, Any]


class RecordingNotificationService:
    """Keeps every notification in memory.

    ``fail_times`` makes the first N calls raise, for retry tests.
    """

    def __init__(self, fail_times: int = 0):
        self._lock = threading.Lock()
        self._fail_remaining = fail_times
        self.sent: list[SentNotification] = []

    def send(self, event_type: str, recipients: Sequence[str], template_data: Mapping[str, Any]) -> None:
        with self._lock:
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
                raise ConnectionError("notification gateway unavailable")
            self.sent.append(
                SentNotification(event_type, tuple(recipients), dict(template_data))
            )

    def of_type(self, event_type: str) -> list[SentNotification]:
        with self._lock:
            return [n for n in self.sent if n.event_type == event_type]


class RecordingOutputGenerator:
    """Returns deterministic artifact refs and counts calls per (arn, template)."""

    def __init__(self, fail_times: int = 0):
        self._lock = threading.Lock()
        self._fail_remaining = fail_times
        self.calls: list[tuple[str, str]] = []

    def generate(self, arn: str, template_id: str) -> str:
        with self._lock:
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
                raise RuntimeError(f"renderer failed for {template_id}")
            self.calls.append((arn, template_id))
            return f"artifact://{template_id}/{arn}"


class RecordingIntegrationClient:
    def __init__(self, responses: Mapping[str, Any] | None = None):
        self._lock = threading.Lock()
        self._responses = dict(responses or {})
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def call(self, name: str, arn: str, params: Mapping[str, Any]) -> Any:
        with self._lock:
            self.calls.append((name, arn, dict(params)))
            return self._responses.get(name)


@dataclass
class StaticLookupProvider:
    """Same lookup values for every application."""

    values: dict[str, Any] = field(default_factory=dict)

    def fetch(self, arn: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return dict(self.values)


class FailingLookupProvider:
    """Always raises; guards see unresolved lookup variables."""

    def fetch(self, arn: str, data: Mapping[str, Any]) -> dict[str, Any]:
        raise TimeoutError("lookup backend timed out")
