"""Task contract shared by the task provider, the plugin binder and the runner.

A task is an atomic unit of remote work. The runner only relies on what is
defined here: identity (type, logical id, action, target), explicit
dependencies, late-bound pending edges, a single-assignment result slot and
an async `perform()`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskAction(str, Enum):
    """What a task does to its resource."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    RELATE = "Relate"
    FORGET = "Forget"
    COMMIT_HASH = "CommitHash"


class TaskStatus(str, Enum):
    """Lifecycle of a task inside one run."""

    PENDING = "pending"
    WAITING = "waiting"  # Blocked on dependencies
    READY = "ready"  # Dependencies terminal, waiting for a free slot
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # An ancestor failed, never attempted

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class NoResult:
    """The task produced nothing dependents can use."""


@dataclass(frozen=True)
class PhysicalIdResult:
    """The task created or ensured a remote resource."""

    physical_id: str


@dataclass(frozen=True)
class AttachResult:
    """The task related two remote resources."""

    target_id: str
    related_id: str


TaskResult = NoResult | PhysicalIdResult | AttachResult

NO_RESULT = NoResult()


class ResultSlot:
    """Single-assignment holder for a task result.

    Only the runner assigns it, from the value `perform()` returns.
    """

    __slots__ = ("_value",)

    def __init__(self) -> None:
        self._value: TaskResult | None = None

    @property
    def is_set(self) -> bool:
        return self._value is not None

    def set(self, value: TaskResult) -> None:
        if self._value is not None:
            raise RuntimeError("task result has already been assigned")
        self._value = value

    def get(self) -> TaskResult:
        if self._value is None:
            raise RuntimeError("task result read before the task completed")
        return self._value

    def physical_id(self) -> str | None:
        """The produced physical id, if the task produced one."""
        value = self._value
        return value.physical_id if isinstance(value, PhysicalIdResult) else None

    def __repr__(self) -> str:
        return f"ResultSlot({self._value!r})"


# =============================================================================
# Edges
# =============================================================================


@dataclass(frozen=True)
class PendingEdge:
    """A dependency on a task that may not exist when the edge is authored.

    Resolved once against the finished graph right before dispatch: the task
    carrying the edge waits for every task whose type, logical id and action
    match. When nothing matches the edge is satisfied.
    """

    type: str
    logical_id: str
    action: str = TaskAction.CREATE.value

    def __post_init__(self) -> None:
        for name in ("type", "action"):
            value = getattr(self, name)
            if isinstance(value, Enum):
                object.__setattr__(self, name, value.value)

    def __str__(self) -> str:
        return f"{self.action} {self.type}/{self.logical_id}"


# =============================================================================
# Task
# =============================================================================


def _value(x: Any) -> str:
    return x.value if isinstance(x, Enum) else str(x)


@dataclass(eq=False, kw_only=True)
class Task:
    """Base class for all runnable tasks.

    Subclasses implement `perform()`. Identity fields are fixed at construction;
    `status`, `error` and `result` are written by the runner only.
    """

    type: str
    logical_id: str
    action: str
    dependencies: list[Task] = field(default_factory=list)
    pending_edges: tuple[PendingEdge, ...] = ()

    status: TaskStatus = field(default=TaskStatus.PENDING, init=False)
    error: BaseException | None = field(default=None, init=False, repr=False)
    result: ResultSlot = field(default_factory=ResultSlot, init=False, repr=False)
    _edge_matches: dict[PendingEdge, list[Task]] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.type = _value(self.type)
        self.action = _value(self.action)

    @property
    def target(self) -> str:
        """Identity used when reporting on this task."""
        return f"{self.type}/{self.logical_id}"

    def matches(self, edge: PendingEdge) -> bool:
        return (
            self.type == edge.type
            and self.logical_id == edge.logical_id
            and self.action == edge.action
        )

    def bind_edges(self, matches: dict[PendingEdge, list[Task]]) -> None:
        """Record which tasks each pending edge resolved to."""
        self._edge_matches = {edge: list(matches.get(edge, [])) for edge in self.pending_edges}

    def edge_matches(self, edge: PendingEdge) -> list[Task]:
        return list(self._edge_matches.get(edge, []))

    async def perform(self) -> TaskResult | None:
        raise NotImplementedError("Subclasses must implement perform")

    def __str__(self) -> str:
        return f"{self.action} {self.target}"
