"""
workflow_engines.compensation -- Saga-style rollback of executed activities.

Responsibility:
    Run a sequence of activities for a workflow instance and, when one of
    them fails, undo the ones that already ran by invoking their
    compensating actions in strict reverse order.

Architecture position:
    Engines -- no persistence, no clock.  Activities are host-supplied
    callables; whatever I/O they do is theirs.

Invariants enforced:
    - Compensations run in strict reverse order of execution.
    - A failing compensation never stops the sweep; every remaining
      activity is still compensated.
    - Failures are collected in an explicit accumulator and reported once,
      naming every activity whose undo failed.

Failure modes:
    - CompensationPartialFailureError after a sweep with >= 1 failure.
    - ValueError when activities and results differ in length.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from workflow_kernel.domain.workflow import WorkflowInstance
from workflow_kernel.exceptions import CompensationPartialFailureError
from workflow_kernel.logging_config import get_logger

logger = get_logger("engines.compensation")


class Activity(ABC):
    """One forward step paired with its compensating action."""

    name: str = ""

    @abstractmethod
    def execute(self, instance: WorkflowInstance, context: Mapping[str, Any]) -> Any:
        """Perform the step; the return value is handed back to ``compensate``."""

    @abstractmethod
    def compensate(self, instance: WorkflowInstance, result: Any) -> None:
        """Undo the step given its execution result."""


class FunctionActivity(Activity):
    """Activity built from two plain callables."""

    def __init__(
        self,
        name: str,
        execute: Callable[[WorkflowInstance, Mapping[str, Any]], Any],
        compensate: Callable[[WorkflowInstance, Any], None] | None = None,
    ) -> None:
        self.name = name
        self._execute = execute
        self._compensate = compensate

    def execute(self, instance: WorkflowInstance, context: Mapping[str, Any]) -> Any:
        return self._execute(instance, context)

    def compensate(self, instance: WorkflowInstance, result: Any) -> None:
        if self._compensate is not None:
            self._compensate(instance, result)

    def __repr__(self) -> str:
        return f"FunctionActivity({self.name!r})"


def _activity_name(activity: Activity, index: int) -> str:
    return activity.name or f"{activity.__class__.__name__}[{index}]"


class CompensationEngine:
    """Executes and unwinds activity sequences."""

    def compensate(
        self,
        instance: WorkflowInstance,
        activities: Sequence[Activity],
        execution_results: Sequence[Any],
    ) -> None:
        """Compensate ``activities`` (given in execution order) in reverse.

        Args:
            instance: The instance the activities ran for.
            activities: Already executed activities, oldest first.
            execution_results: ``execute`` return values, index-aligned.

        Raises:
            CompensationPartialFailureError: one or more undo steps failed;
                all others were still attempted.
        """
        if len(activities) != len(execution_results):
            raise ValueError(
                f"{len(activities)} activities but {len(execution_results)} results"
            )

        failures: list[tuple[str, str]] = []
        compensated: list[str] = []

        for index in range(len(activities) - 1, -1, -1):
            activity = activities[index]
            name = _activity_name(activity, index)
            try:
                activity.compensate(instance, execution_results[index])
            except Exception as e:  # noqa: BLE001
                failures.append((name, f"{type(e).__name__}: {e}"))
                logger.error(
                    "compensation_failed",
                    extra={
                        "instance_id": str(instance.id),
                        "activity": name,
                        "error": str(e),
                    },
                )
                continue
            compensated.append(name)
            logger.info(
                "activity_compensated",
                extra={"instance_id": str(instance.id), "activity": name},
            )

        if failures:
            raise CompensationPartialFailureError(str(instance.id), failures, compensated)

    def run(
        self,
        instance: WorkflowInstance,
        activities: Sequence[Activity],
        context: Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Execute ``activities`` in order; unwind executed ones on failure.

        Returns the list of execution results when every activity succeeds.
        When an activity raises, the already executed activities are
        compensated and the original error is re-raised; if compensation is
        itself incomplete, CompensationPartialFailureError is raised with the
        original error as its cause.
        """
        context = context or {}
        executed: list[Activity] = []
        results: list[Any] = []

        for index, activity in enumerate(activities):
            name = _activity_name(activity, index)
            try:
                results.append(activity.execute(instance, context))
            except Exception as forward_error:
                logger.warning(
                    "activity_failed",
                    extra={
                        "instance_id": str(instance.id),
                        "activity": name,
                        "executed": len(executed),
                        "error": str(forward_error),
                    },
                )
                try:
                    self.compensate(instance, executed, results)
                except CompensationPartialFailureError as partial:
                    raise partial from forward_error
                raise
            executed.append(activity)
            logger.debug(
                "activity_executed",
                extra={"instance_id": str(instance.id), "activity": name},
            )

        return results
