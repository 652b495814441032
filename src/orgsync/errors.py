"""Exception hierarchy for organization reconciliation.

Every error raised deliberately by orgsync derives from OrgFormationError so
that callers (CLI, entry point) can report it as a single fatal message.
"""

from __future__ import annotations


class OrgFormationError(Exception):
    """Base class for all orgsync errors."""

    pass


class ConfigurationError(OrgFormationError):
    """Raised when configuration validation fails."""

    pass


class OrganizationMismatchError(ConfigurationError):
    """Raised when state and template belong to different organizations."""

    pass


class TemplateLoadError(OrgFormationError):
    """Raised when an organization template cannot be loaded or validated."""

    pass


class StateError(OrgFormationError):
    """Raised when persisted state cannot be read or written."""

    pass


class TaskExecutionError(OrgFormationError):
    """Raised from inside a task body when the task cannot complete."""

    pass


class TaskRunnerError(OrgFormationError):
    """Base class for errors signaled by the task runner."""

    pass


class SelfDependencyError(TaskRunnerError):
    """Raised when a task depends on itself."""

    pass


class CircularDependencyError(TaskRunnerError):
    """Raised when a set of tasks block each other."""

    def __init__(self, message: str, targets: list[str] | None = None) -> None:
        super().__init__(message)
        self.targets = targets or []


class FailureToleranceExceededError(TaskRunnerError):
    """Raised when more tasks failed than the configured tolerance allows."""

    def __init__(self, message: str, total_failed: int, tolerance: int) -> None:
        super().__init__(message)
        self.total_failed = total_failed
        self.tolerance = tolerance
