"""Task runner delegates that log every outcome and raise on fatal conditions.

Used both for the organization task graph and for workload plugins; tasks
are reported by their target (`type/logical id` or `account/region`).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .errors import (
    CircularDependencyError,
    FailureToleranceExceededError,
    SelfDependencyError,
)
from .runner import GenericTaskRunner, TaskRunnerDelegates, TaskRunResult
from .tasks import Task

logger = logging.getLogger(__name__)


def build_delegates(
    logical_name: str,
    max_concurrent_tasks: int,
    failed_tasks_tolerance: int,
) -> TaskRunnerDelegates[Task]:
    """Delegates reporting under `logical_name`."""

    def on_task_ran_successfully(task: Task) -> None:
        logger.info(
            f"{logical_name}: {task.action} {task.logical_id} in {task.target} succeeded",
            extra={"logical_name": logical_name, "task": str(task), "target": task.target},
        )

    def on_task_ran_failed(task: Task, error: BaseException) -> None:
        logger.error(
            f"failed executing task {task.action} {task.logical_id} in {task.target}. "
            f"Reason: {error}",
            extra={
                "logical_name": logical_name,
                "task": str(task),
                "target": task.target,
                "error_type": type(error).__name__,
            },
        )

    def on_task_skipped(task: Task, failed_ancestor: Task) -> None:
        logger.error(
            f"skip executing task {task.action} {task.logical_id} in {task.target}. "
            "Reason: dependency has failed.",
            extra={
                "logical_name": logical_name,
                "task": str(task),
                "target": task.target,
                "failed_dependency": str(failed_ancestor),
            },
        )

    def throw_circular_dependency(tasks: list[Task]) -> None:
        targets = list(dict.fromkeys(t.target for t in tasks))
        raise CircularDependencyError(
            f"circular dependency on {logical_name} for targets {', '.join(targets)}",
            targets=targets,
        )

    def throw_dependency_on_self(task: Task) -> None:
        raise SelfDependencyError(
            f"{logical_name} has dependency on self target {task.target} ({task.action})"
        )

    def on_failure_tolerance_exceeded(total_failed: int, tolerance: int) -> None:
        raise FailureToleranceExceededError(
            f"number failed tasks {total_failed} exceeded tolerance for failed tasks {tolerance}",
            total_failed=total_failed,
            tolerance=tolerance,
        )

    return TaskRunnerDelegates(
        max_concurrent_tasks=max_concurrent_tasks,
        failed_tasks_tolerance=failed_tasks_tolerance,
        on_task_ran_successfully=on_task_ran_successfully,
        on_task_ran_failed=on_task_ran_failed,
        on_task_skipped_because_dependency_failed=on_task_skipped,
        throw_circular_dependency=throw_circular_dependency,
        throw_dependency_on_self=throw_dependency_on_self,
        on_failure_tolerance_exceeded=on_failure_tolerance_exceeded,
    )


async def run_tasks(
    tasks: Sequence[Task],
    logical_name: str,
    max_concurrent_tasks: int = 1,
    failed_tasks_tolerance: int = 0,
) -> TaskRunResult[Task]:
    """Run tasks with logging delegates.

    Raises:
        SelfDependencyError, CircularDependencyError: The graph is malformed.
        FailureToleranceExceededError: Too many tasks failed.
    """
    delegates = build_delegates(logical_name, max_concurrent_tasks, failed_tasks_tolerance)
    return await GenericTaskRunner.run_tasks(tasks, delegates)
