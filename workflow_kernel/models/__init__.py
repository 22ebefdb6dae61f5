"""ORM models for the workflow kernel."""

from workflow_kernel.models.workflow import (
    WorkflowHistoryModel,
    WorkflowInstanceModel,
    WorkflowTaskModel,
)

__all__ = [
    "WorkflowHistoryModel",
    "WorkflowInstanceModel",
    "WorkflowTaskModel",
]
