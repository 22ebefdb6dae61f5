"""
workflow_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure workflow engines
    (workflow_engines/) with repositories, the clock, the notifier and the
    actor directory.  This is the **only** layer that holds persistence
    handles or reads the current time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        workflow_services/ -> workflow_config/   (allowed)
        workflow_services/ -> workflow_engines/  (allowed)
        workflow_services/ -> workflow_kernel/   (allowed)
        workflow_engines/  -> workflow_services/ (FORBIDDEN)
        workflow_kernel/   -> workflow_services/ (FORBIDDEN)

Invariants enforced:
    - Layer isolation: workflow_kernel and workflow_engines never import
      from this package.
    - Ports: WorkflowManager depends only on the protocols in
      ``workflow_services.ports``; in-memory and SQLAlchemy adapters are
      interchangeable.

Failure modes:
    - ImportError at startup if a service's dependency graph is broken.
"""

from workflow_kernel.logging_config import get_logger

logger = get_logger("services")

from workflow_services.directory import StaticActorDirectory
from workflow_services.memory import (
    InMemoryDefinitionRepository,
    InMemoryHistoryRepository,
    InMemoryInstanceRepository,
    InMemoryTaskRepository,
)
from workflow_services.notifier import (
    TEMPLATE_TASK_ASSIGNED,
    TEMPLATE_TASK_COMPLETED,
    TEMPLATE_TASK_ESCALATED,
    LoggingNotifier,
    NullNotifier,
)
from workflow_services.ports import (
    ActorDirectory,
    DefinitionRepository,
    HistoryRepository,
    InstanceRepository,
    NotifierPort,
    TaskRepository,
)
from workflow_services.sql import (
    SqlHistoryRepository,
    SqlInstanceRepository,
    SqlTaskRepository,
)
from workflow_services.workflow_manager import WorkflowManager

__all__ = [
    "ActorDirectory",
    "DefinitionRepository",
    "HistoryRepository",
    "InMemoryDefinitionRepository",
    "InMemoryHistoryRepository",
    "InMemoryInstanceRepository",
    "InMemoryTaskRepository",
    "InstanceRepository",
    "LoggingNotifier",
    "NotifierPort",
    "NullNotifier",
    "SqlHistoryRepository",
    "SqlInstanceRepository",
    "SqlTaskRepository",
    "StaticActorDirectory",
    "TEMPLATE_TASK_ASSIGNED",
    "TEMPLATE_TASK_COMPLETED",
    "TEMPLATE_TASK_ESCALATED",
    "TaskRepository",
    "WorkflowManager",
]
