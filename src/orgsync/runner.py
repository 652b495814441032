"""Generic task runner.

Executes any graph of `Task` objects:
1. Pending edges are resolved against the finished graph
2. Self dependencies and cycles are rejected before anything runs
3. Ready tasks are dispatched with bounded concurrency
4. Failures skip every transitive dependent
5. The run aborts once more tasks failed than the tolerance allows

DESIGN:
- The runner knows nothing about organizations; workload plugins use the same
  contract with one task per account/region target.
- Scheduling is cooperative on one event loop. Only the scheduler coroutine
  touches readiness bookkeeping, task bodies run as asyncio tasks.
- Abort is coarse: no new dispatches, in-flight tasks finish and their
  outcomes are still recorded.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Generic, TypeVar

from .errors import (
    CircularDependencyError,
    FailureToleranceExceededError,
    SelfDependencyError,
    TaskRunnerError,
)
from .tasks import NO_RESULT, PendingEdge, Task, TaskStatus

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Task)


@dataclass
class TaskRunnerDelegates(Generic[T]):
    """Observers, reporters and limits for one run.

    The `throw_*` reporters and `on_failure_tolerance_exceeded` are expected
    to raise. If they return normally the runner raises its own error.
    """

    max_concurrent_tasks: int = 1
    failed_tasks_tolerance: int = 0
    on_task_ran_successfully: Callable[[T], None] | None = None
    on_task_ran_failed: Callable[[T, BaseException], None] | None = None
    on_task_skipped_because_dependency_failed: Callable[[T, T], None] | None = None
    throw_circular_dependency: Callable[[list[T]], None] | None = None
    throw_dependency_on_self: Callable[[T], None] | None = None
    on_failure_tolerance_exceeded: Callable[[int, int], None] | None = None


@dataclass
class TaskRunResult(Generic[T]):
    """Outcome of a run that was not aborted by a fatal error."""

    succeeded: list[T] = field(default_factory=list)
    failed: list[T] = field(default_factory=list)
    skipped: list[T] = field(default_factory=list)

    @property
    def total_failed(self) -> int:
        return len(self.failed)


class GenericTaskRunner(Generic[T]):
    """Runs one task graph to completion."""

    def __init__(self, tasks: Sequence[T], delegates: TaskRunnerDelegates[T]) -> None:
        if delegates.max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        if delegates.failed_tasks_tolerance < 0:
            raise ValueError("failed_tasks_tolerance cannot be negative")

        self._tasks: list[T] = list(dict.fromkeys(tasks))
        self._delegates = delegates
        self._dependencies: dict[T, list[T]] = {}
        self._dependents: dict[T, list[T]] = defaultdict(list)
        self._result: TaskRunResult[T] = TaskRunResult()
        self._aborted = False

    @classmethod
    async def run_tasks(
        cls, tasks: Sequence[T], delegates: TaskRunnerDelegates[T]
    ) -> TaskRunResult[T]:
        return await cls(tasks, delegates).run()

    async def run(self) -> TaskRunResult[T]:
        """Run every task, respecting dependencies.

        Raises:
            SelfDependencyError: A task depends on itself.
            CircularDependencyError: Tasks block each other.
            FailureToleranceExceededError: Too many tasks failed.
        """
        self._resolve_dependencies()
        self._check_self_dependencies()
        self._check_circular_dependencies()

        logger.debug(
            "Dispatching task graph",
            extra={
                "task_count": len(self._tasks),
                "max_concurrent_tasks": self._delegates.max_concurrent_tasks,
                "failed_tasks_tolerance": self._delegates.failed_tasks_tolerance,
            },
        )

        await self._dispatch()

        if self._aborted:
            total_failed = self._result.total_failed
            tolerance = self._delegates.failed_tasks_tolerance
            if self._delegates.on_failure_tolerance_exceeded is not None:
                self._delegates.on_failure_tolerance_exceeded(total_failed, tolerance)
            raise FailureToleranceExceededError(
                f"number failed tasks {total_failed} exceeded tolerance for failed tasks "
                f"{tolerance}",
                total_failed=total_failed,
                tolerance=tolerance,
            )

        unfinished = [t for t in self._tasks if not t.status.is_terminal]
        if unfinished:
            # Unreachable once the cycle check passed
            raise TaskRunnerError(
                f"tasks never became ready: {', '.join(str(t) for t in unfinished)}"
            )

        return self._result

    # -------------------------------------------------------------------------
    # Graph preparation
    # -------------------------------------------------------------------------

    def _resolve_dependencies(self) -> None:
        """Fold explicit dependencies and matched pending edges into one view."""
        known = set(self._tasks)
        index: dict[tuple[str, str, str], list[T]] = defaultdict(list)
        for task in self._tasks:
            index[(task.type, task.logical_id, task.action)].append(task)

        for task in self._tasks:
            matches: dict[PendingEdge, list[Task]] = {
                edge: list(index.get((edge.type, edge.logical_id, edge.action), []))
                for edge in task.pending_edges
            }
            task.bind_edges(matches)

            resolved: dict[T, None] = {}
            for dependency in task.dependencies:
                if dependency not in known:
                    raise TaskRunnerError(
                        f"task {task} depends on {dependency}, which is not part of the graph"
                    )
                resolved[dependency] = None  # type: ignore[index]
            for matched in matches.values():
                for dependency in matched:
                    resolved[dependency] = None  # type: ignore[index]

            self._dependencies[task] = list(resolved)
            for dependency in resolved:
                self._dependents[dependency].append(task)

    def _check_self_dependencies(self) -> None:
        for task in self._tasks:
            if task in self._dependencies[task]:
                logger.error("Task depends on itself", extra={"task": str(task)})
                if self._delegates.throw_dependency_on_self is not None:
                    self._delegates.throw_dependency_on_self(task)
                raise SelfDependencyError(f"task {task} has a dependency on itself")

    def _check_circular_dependencies(self) -> None:
        """Reject graphs where some tasks can never become ready.

        Kahn's algorithm removes everything reachable from the roots; a second
        pass in the other direction drops tasks that merely wait on a cycle,
        leaving the tasks that form (or sit between) cycles.
        """
        in_degree: dict[T, int] = {t: len(self._dependencies[t]) for t in self._tasks}
        queue = deque(t for t in self._tasks if in_degree[t] == 0)
        remaining = set(self._tasks)

        while queue:
            current = queue.popleft()
            remaining.discard(current)
            for dependent in self._dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if not remaining:
            return

        out_degree: dict[T, int] = {
            t: sum(1 for d in self._dependents[t] if d in remaining) for t in remaining
        }
        queue = deque(t for t in self._tasks if t in remaining and out_degree[t] == 0)
        while queue:
            current = queue.popleft()
            remaining.discard(current)
            for dependency in self._dependencies[current]:
                if dependency in remaining:
                    out_degree[dependency] -= 1
                    if out_degree[dependency] == 0:
                        queue.append(dependency)

        cycle = [t for t in self._tasks if t in remaining]
        targets = list(dict.fromkeys(t.target for t in cycle))
        logger.error("Circular dependency detected", extra={"targets": targets})
        if self._delegates.throw_circular_dependency is not None:
            self._delegates.throw_circular_dependency(cycle)
        raise CircularDependencyError(
            f"circular dependency detected involving: {', '.join(targets)}", targets=targets
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _is_ready(self, task: T) -> bool:
        return all(d.status.is_terminal for d in self._dependencies[task])

    async def _dispatch(self) -> None:
        pending: list[T] = list(self._tasks)
        running: dict[asyncio.Task[object], T] = {}

        try:
            while True:
                if not self._aborted:
                    for task in list(pending):
                        if task.status is TaskStatus.SKIPPED:
                            pending.remove(task)
                            continue
                        if not self._is_ready(task):
                            task.status = TaskStatus.WAITING
                            continue
                        if len(running) >= self._delegates.max_concurrent_tasks:
                            task.status = TaskStatus.READY
                            continue
                        pending.remove(task)
                        task.status = TaskStatus.RUNNING
                        logger.debug("Task started", extra={"task": str(task)})
                        running[asyncio.ensure_future(task.perform())] = task

                if not running:
                    return

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                notifications: list[Callable[[], None]] = []
                for future in done:
                    notifications.extend(self._complete(running.pop(future), future))
                for notify in notifications:
                    notify()
        except asyncio.CancelledError:
            for future in running:
                future.cancel()
            raise
        except Exception:
            # An observer raised; in-flight tasks still finish and are recorded
            if running:
                await asyncio.wait(running.keys())
                for future, task in running.items():
                    self._complete(task, future)
            raise

    def _complete(self, task: T, future: asyncio.Task[object]) -> list[Callable[[], None]]:
        """Record the outcome of a finished task.

        Observer calls are returned, not made, so every outcome in a batch is
        recorded before any observer can raise.
        """
        error = future.exception()
        if error is None:
            value = future.result()
            task.result.set(value if value is not None else NO_RESULT)  # type: ignore[arg-type]
            task.status = TaskStatus.SUCCEEDED
            self._result.succeeded.append(task)
            logger.debug("Task succeeded", extra={"task": str(task)})
            if self._delegates.on_task_ran_successfully is not None:
                return [partial(self._delegates.on_task_ran_successfully, task)]
            return []

        if not isinstance(error, Exception):
            raise error

        task.error = error
        task.status = TaskStatus.FAILED
        self._result.failed.append(task)
        logger.debug(
            "Task failed",
            extra={"task": str(task), "error": str(error), "error_type": type(error).__name__},
        )
        notifications: list[Callable[[], None]] = []
        if self._delegates.on_task_ran_failed is not None:
            notifications.append(partial(self._delegates.on_task_ran_failed, task, error))

        notifications.extend(self._skip_dependents(task))

        if self._result.total_failed > self._delegates.failed_tasks_tolerance and not self._aborted:
            self._aborted = True
            logger.debug(
                "Failure tolerance exceeded, no further tasks will be dispatched",
                extra={
                    "total_failed": self._result.total_failed,
                    "tolerance": self._delegates.failed_tasks_tolerance,
                },
            )
        return notifications

    def _skip_dependents(self, failed: T) -> list[Callable[[], None]]:
        notifications: list[Callable[[], None]] = []
        observer = self._delegates.on_task_skipped_because_dependency_failed
        queue = deque(self._dependents[failed])
        while queue:
            dependent = queue.popleft()
            if dependent.status not in (TaskStatus.PENDING, TaskStatus.WAITING, TaskStatus.READY):
                continue
            dependent.status = TaskStatus.SKIPPED
            self._result.skipped.append(dependent)
            if observer is not None:
                notifications.append(partial(observer, dependent, failed))
            queue.extend(self._dependents[dependent])
        return notifications


async def run_tasks(tasks: Sequence[T], delegates: TaskRunnerDelegates[T]) -> TaskRunResult[T]:
    """Run a task graph with the given delegates."""
    return await GenericTaskRunner.run_tasks(tasks, delegates)
