"""Organization reconciliation.

One reconciliation pass:
1. Load the template and the persisted state
2. Bind template resources against state and expand bindings into tasks
3. Run the tasks through the default runner
4. Flush state, on every exit path once the run has started

The previous template and the master account id are only recorded after a
run in which every task succeeded. Resources left uncommitted by a failed run
are diffed against the last fully applied template again on the next run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .binder import OrganizationBinder
from .config import Config
from .default_runner import run_tasks
from .models import OrganizationTemplate
from .state import PersistedState
from .task_provider import TaskProvider
from .tasks import Task, TaskStatus
from .template_loader import load_template
from .writer import DryRunWriter, OrganizationWriter

logger = logging.getLogger(__name__)

ORGANIZATION_LOGICAL_NAME = "organization"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    template_file: str
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    tasks_total: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    state_saved: bool = False

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def up_to_date(self) -> bool:
        return self.tasks_total == 0

    @property
    def success(self) -> bool:
        return self.tasks_succeeded == self.tasks_total

    def record(self, tasks: list[Task]) -> None:
        self.tasks_total = len(tasks)
        self.tasks_succeeded = sum(1 for t in tasks if t.status is TaskStatus.SUCCEEDED)
        self.tasks_failed = sum(1 for t in tasks if t.status is TaskStatus.FAILED)
        self.tasks_skipped = sum(1 for t in tasks if t.status is TaskStatus.SKIPPED)


def build_tasks(
    template: OrganizationTemplate, state: PersistedState, writer: OrganizationWriter
) -> list[Task]:
    """Bind the template against state and expand every binding into tasks.

    Raises:
        OrganizationMismatchError: State belongs to another organization.
        TemplateLoadError: The previous template stored in state is invalid.
    """
    provider = TaskProvider(state, writer)
    binder = OrganizationBinder(template, state, provider)
    return binder.enum_build_tasks()


def plan_organization(config: Config) -> list[Task]:
    """Tasks an update would run, without running them."""
    template = load_template(config.template_file)
    state = PersistedState.load(config.state_file)
    return build_tasks(template, state, DryRunWriter())


async def update_organization(config: Config, writer: OrganizationWriter) -> ReconcileResult:
    """Reconcile the organization described by `config.template_file`.

    Raises:
        OrgFormationError: Any configuration, template, state or runner error.
            Task failures within tolerance do not raise; they are counted in
            the result.
    """
    result = ReconcileResult(template_file=str(config.template_file), dry_run=config.dry_run)

    template = load_template(config.template_file)
    state = PersistedState.load(config.state_file)
    tasks = build_tasks(template, state, writer)

    if not tasks:
        result.end_time = datetime.now(UTC)
        logger.info(
            "organization up to date, no work to be done.",
            extra={"template_file": result.template_file},
        )
        return result

    try:
        await run_tasks(
            tasks,
            ORGANIZATION_LOGICAL_NAME,
            max_concurrent_tasks=config.max_concurrent_tasks,
            failed_tasks_tolerance=config.failed_tasks_tolerance,
        )
    finally:
        result.record(tasks)
        if result.success:
            state.set_previous_template(template.source)
            state.master_account_id = template.master_account_id
        result.end_time = datetime.now(UTC)
        if config.dry_run:
            logger.info("Dry run, state not saved", extra={"state_file": str(config.state_file)})
        else:
            result.state_saved = state.save()
        _log_result(result)

    return result


def _log_result(result: ReconcileResult) -> None:
    """Log reconciliation result with structured data."""
    extra: dict[str, Any] = {
        "template_file": result.template_file,
        "dry_run": result.dry_run,
        "duration_seconds": result.duration_seconds,
        "tasks_total": result.tasks_total,
        "tasks_succeeded": result.tasks_succeeded,
        "tasks_failed": result.tasks_failed,
        "tasks_skipped": result.tasks_skipped,
        "state_saved": result.state_saved,
    }

    if result.tasks_failed or result.tasks_skipped:
        logger.warning("Reconciliation finished with failures", extra=extra)
    else:
        logger.info("Reconciliation result", extra=extra)
