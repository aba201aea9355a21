"""Services for the workflow kernel (write side)."""

from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.services.lock_service import ApplicationLockRegistry
from govflow_kernel.services.query_service import QueryService
from govflow_kernel.services.sequence_service import SequenceService
from govflow_kernel.services.task_service import TaskService

__all__ = [
    "ApplicationLockRegistry",
    "AuditorService",
    "QueryService",
    "SequenceService",
    "TaskService",
]
