"""Workload plugins.

A workload (e.g. a deployment package) is rolled out to a set of
account/region targets. Each target is bound against its persisted target
record with the same four-way rule as organization resources and becomes at
most one task; the tasks are independent and run through the default runner.

This module is a library API: the command line only reconciles the
organization. Callers supply a `WorkloadPlugin` and call `perform_workload()`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .binder import BindingAction
from .default_runner import run_tasks
from .errors import StateError
from .models import md5_of
from .runner import TaskRunResult
from .state import PersistedState, TargetRecord
from .tasks import NO_RESULT, NoResult, Task, TaskAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkloadTarget:
    """One account/region a workload is deployed to."""

    account_id: str
    region: str | None = None

    @property
    def key(self) -> str:
        return f"{self.account_id}/{self.region}" if self.region else self.account_id


@dataclass(frozen=True)
class Workload:
    """A named workload, its content hash and where it should be deployed."""

    name: str
    hash: str
    targets: tuple[WorkloadTarget, ...] = ()


@dataclass(frozen=True)
class PluginBinding:
    action: BindingAction
    workload: Workload
    target: WorkloadTarget
    record: TargetRecord | None = None


@runtime_checkable
class WorkloadPlugin(Protocol):
    """Deploys a workload to a single target."""

    type: str

    async def perform_create_or_update(self, binding: PluginBinding) -> None: ...

    async def perform_delete(self, binding: PluginBinding) -> None: ...


def workload_hash(
    equality_values: dict[str, Any], organization_file_hash: str | None = None
) -> str:
    """Content hash of a workload: every value that should trigger a redeploy."""
    return md5_of({"organizationFileHash": organization_file_hash, **equality_values})


@dataclass(eq=False, kw_only=True)
class PluginTask(Task):
    """Creates, updates or deletes a workload on one target."""

    plugin: WorkloadPlugin = field(repr=False)
    binding: PluginBinding
    state: PersistedState = field(repr=False)

    @property
    def target(self) -> str:
        return self.binding.target.key

    async def perform(self) -> NoResult:
        binding = self.binding
        if binding.action is BindingAction.DELETE:
            await self.plugin.perform_delete(binding)
            assert binding.record is not None
            self.state.remove_target(binding.record)
        else:
            await self.plugin.perform_create_or_update(binding)
            self.state.set_target(
                TargetRecord(
                    type=self.plugin.type,
                    name=binding.workload.name,
                    account_id=binding.target.account_id,
                    region=binding.target.region,
                    last_committed_hash=binding.workload.hash,
                )
            )
        return NO_RESULT


class PluginBinder:
    """Binds a workload's targets against persisted target records."""

    def __init__(self, workload: Workload, state: PersistedState, plugin: WorkloadPlugin) -> None:
        self._workload = workload
        self._state = state
        self._plugin = plugin

    def enum_bindings(self) -> list[PluginBinding]:
        bindings: list[PluginBinding] = []
        declared: set[str] = set()

        for target in dict.fromkeys(self._workload.targets):
            declared.add(target.key)
            record = self._state.get_target(
                self._plugin.type, self._workload.name, target.account_id, target.region
            )
            if record is None:
                action = BindingAction.CREATE
            elif record.last_committed_hash != self._workload.hash:
                action = BindingAction.UPDATE
            else:
                action = BindingAction.NONE
            bindings.append(PluginBinding(action, self._workload, target, record))

        for record in self._state.enum_targets(self._plugin.type, self._workload.name):
            if record.key not in declared:
                target = WorkloadTarget(account_id=record.account_id, region=record.region)
                bindings.append(PluginBinding(BindingAction.DELETE, self._workload, target, record))

        return bindings

    def enum_tasks(self) -> list[PluginTask]:
        return [
            PluginTask(
                type=self._plugin.type,
                logical_id=self._workload.name,
                action=TaskAction(binding.action.value),
                plugin=self._plugin,
                binding=binding,
                state=self._state,
            )
            for binding in self.enum_bindings()
            if binding.action is not BindingAction.NONE
        ]


async def perform_workload(
    workload: Workload,
    plugin: WorkloadPlugin,
    state: PersistedState,
    max_concurrent_tasks: int = 1,
    failed_tasks_tolerance: int = 0,
    state_file: Path | None = None,
) -> TaskRunResult[Task] | None:
    """Bring a workload up to date on all its targets.

    Returns None when every target is already up to date. State is flushed
    after every run that started, including failed ones.

    Raises:
        StateError: Work is pending but neither `state_file` nor the state
            itself names a file to save to. Nothing is deployed.
    """
    tasks = PluginBinder(workload, state, plugin).enum_tasks()

    if not tasks:
        logger.info(
            f"{plugin.type} workload {workload.name} already up to date.",
            extra={"workload": workload.name, "plugin_type": plugin.type},
        )
        return None

    if state_file is None and state.path is None:
        raise StateError(f"No state file to record {plugin.type} workload {workload.name}")

    try:
        result = await run_tasks(
            tasks,
            workload.name,
            max_concurrent_tasks=max_concurrent_tasks,
            failed_tasks_tolerance=failed_tasks_tolerance,
        )
    finally:
        state.save(state_file)

    logger.info("done", extra={"workload": workload.name, "task_count": len(tasks)})
    return result
