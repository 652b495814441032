"""Expands classified bindings into task subgraphs.

Per resource the expansion is:
- Create: Create -> Relate per reference -> CommitHash
- Update: [Update] -> attach/detach Relate per changed reference -> CommitHash
- Delete: Delete (organizational units, policies) or Forget (accounts, root)

CommitHash is the per-resource commit barrier: it depends on every other
task of the resource and is the only task that records a committed hash.

References to resources that have no committed binding yet are wired with a
PendingEdge on the referenced resource's Create task, so resources created in
the same run can be related without knowing each other's physical ids.
An account moving between units is attached only after its detach from the
old unit has run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import TaskExecutionError
from .models import (
    AccountResource,
    OrganizationalUnitResource,
    OrganizationRootResource,
    OrganizationTemplate,
    PolicyAttachingResource,
    Reference,
    Resource,
    ResourceType,
    ServiceControlPolicyResource,
)
from .state import PersistedState, StateBinding
from .tasks import (
    NO_RESULT,
    AttachResult,
    NoResult,
    PendingEdge,
    PhysicalIdResult,
    Task,
    TaskAction,
)
from .template_loader import parse_template
from .writer import OrganizationWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskContext:
    """Everything a task body may touch."""

    writer: OrganizationWriter
    state: PersistedState
    previous_template: OrganizationTemplate


@dataclass(frozen=True)
class ResolvedReferences:
    """A reference collection split into known physical ids and pending refs."""

    physical_ids: list[str]
    unresolved: list[Reference]


# =============================================================================
# Task kinds
# =============================================================================


@dataclass(eq=False, kw_only=True)
class OrganizationTask(Task):
    context: TaskContext = field(repr=False)


@dataclass(eq=False, kw_only=True)
class CreateResourceTask(OrganizationTask):
    """Creates (or ensures) the remote resource and yields its physical id."""

    resource: Resource = field(repr=False)

    async def perform(self) -> PhysicalIdResult:
        writer = self.context.writer
        resource = self.resource
        if isinstance(resource, OrganizationRootResource):
            physical_id = await writer.ensure_root()
        elif isinstance(resource, OrganizationalUnitResource):
            physical_id = await writer.create_organizational_unit(resource)
        elif isinstance(resource, AccountResource):
            physical_id = await writer.create_account(resource)
        elif isinstance(resource, ServiceControlPolicyResource):
            physical_id = await writer.create_policy(resource)
        else:
            raise TaskExecutionError(f"cannot create resources of type {self.type}")

        if not physical_id:
            raise TaskExecutionError(f"writer returned no physical id for {self.target}")
        return PhysicalIdResult(physical_id)


@dataclass(eq=False, kw_only=True)
class UpdateResourceTask(OrganizationTask):
    """Applies changed scalar attributes to an existing remote resource."""

    resource: Resource = field(repr=False)
    physical_id: str

    async def perform(self) -> PhysicalIdResult:
        writer = self.context.writer
        resource = self.resource
        if isinstance(resource, OrganizationRootResource):
            # The root has no mutable attributes
            return PhysicalIdResult(await writer.ensure_root())
        if isinstance(resource, OrganizationalUnitResource):
            await writer.update_organizational_unit(resource, self.physical_id)
        elif isinstance(resource, AccountResource):
            await writer.update_account(resource, self.physical_id)
        elif isinstance(resource, ServiceControlPolicyResource):
            await writer.update_policy(resource, self.physical_id)
        else:
            raise TaskExecutionError(f"cannot update resources of type {self.type}")
        return PhysicalIdResult(self.physical_id)


@dataclass(eq=False, kw_only=True)
class DeleteResourceTask(OrganizationTask):
    """Deletes the remote resource and drops its binding."""

    binding: StateBinding

    async def perform(self) -> NoResult:
        writer = self.context.writer
        physical_id = self.binding.physical_id
        if not physical_id:
            raise TaskExecutionError(f"{self.target} has no physical id to delete")

        if self.type == ResourceType.ORGANIZATIONAL_UNIT.value:
            await writer.delete_organizational_unit(physical_id)
        elif self.type == ResourceType.SERVICE_CONTROL_POLICY.value:
            await writer.delete_policy(physical_id)
        else:
            raise TaskExecutionError(f"cannot delete resources of type {self.type}")

        self.context.state.remove_binding(self.binding)
        return NO_RESULT


@dataclass(eq=False, kw_only=True)
class ForgetResourceTask(OrganizationTask):
    """Drops the binding of a resource that cannot be deleted remotely."""

    binding: StateBinding

    async def perform(self) -> NoResult:
        self.context.state.remove_binding(self.binding)
        return NO_RESULT


@dataclass(eq=False, kw_only=True)
class CommitHashTask(OrganizationTask):
    """Records the resource's hash and physical id once all its work is done.

    The physical id is either known up front (update) or taken from the
    Create task's result (create).
    """

    resource_hash: str
    physical_id: str | None = None
    source: Task | None = field(default=None, repr=False)

    async def perform(self) -> NoResult:
        physical_id = self.physical_id
        if physical_id is None and self.source is not None:
            physical_id = self.source.result.physical_id()
        if physical_id is None:
            raise TaskExecutionError(f"no physical id to commit for {self.target}")

        self.context.state.set_binding(
            StateBinding(
                type=self.type,
                logical_id=self.logical_id,
                last_committed_hash=self.resource_hash,
                physical_id=physical_id,
            )
        )
        return NO_RESULT


@dataclass(eq=False, kw_only=True)
class RelateTask(OrganizationTask):
    """Base for attach/detach between the task's resource and a referenced one.

    The target id is fixed (bound resource) or read from `target_task`'s
    result (resource created in this run).
    """

    related_type: ResourceType
    related: Reference
    target_id: str | None = None
    target_task: Task | None = field(default=None, repr=False)

    def resolve_target_id(self) -> str:
        if self.target_id is not None:
            return self.target_id
        if self.target_task is not None:
            physical_id = self.target_task.result.physical_id()
            if physical_id:
                return physical_id
        raise TaskExecutionError(f"unable to resolve physical id of {self.target}")

    def planned_related_id(self) -> str | None:
        """Physical id of the related resource if known before the run starts."""
        if self.related.physical_id is not None:
            return self.related.physical_id
        binding = self.context.state.get_binding(self.related_type, self.related.logical_id or "")
        return binding.physical_id if binding is not None else None

    def resolve_related_id(self) -> str:
        if self.related.physical_id is not None:
            return self.related.physical_id

        for edge in self.pending_edges:
            for matched in self.edge_matches(edge):
                if matched.result.is_set:
                    physical_id = matched.result.physical_id()
                    if physical_id:
                        return physical_id

        binding = self.context.state.get_binding(self.related_type, self.related.logical_id or "")
        if binding is not None and binding.physical_id:
            return binding.physical_id

        raise TaskExecutionError(
            f"unable to resolve physical id of {self.related_type.value} "
            f"{self.related.logical_id}, referenced from {self.target}"
        )

    def __str__(self) -> str:
        return f"{self.action} {self.target} -> {self.related}"


@dataclass(eq=False, kw_only=True)
class AttachPolicyTask(RelateTask):
    async def perform(self) -> AttachResult:
        target_id = self.resolve_target_id()
        policy_id = self.resolve_related_id()
        await self.context.writer.attach_policy(target_id, policy_id)
        return AttachResult(target_id=target_id, related_id=policy_id)


@dataclass(eq=False, kw_only=True)
class DetachPolicyTask(RelateTask):
    async def perform(self) -> NoResult:
        await self.context.writer.detach_policy(
            self.resolve_target_id(), self.resolve_related_id()
        )
        return NO_RESULT


@dataclass(eq=False, kw_only=True)
class AttachAccountTask(RelateTask):
    async def perform(self) -> AttachResult:
        target_id = self.resolve_target_id()
        account_id = self.resolve_related_id()
        await self.context.writer.attach_account(target_id, account_id)
        return AttachResult(target_id=target_id, related_id=account_id)


@dataclass(eq=False, kw_only=True)
class DetachAccountTask(RelateTask):
    async def perform(self) -> NoResult:
        await self.context.writer.detach_account(
            self.resolve_target_id(), self.resolve_related_id()
        )
        return NO_RESULT


# =============================================================================
# Provider
# =============================================================================


class TaskProvider:
    """Builds the tasks for one binding at a time.

    The previous template (as committed after the last successful run) is
    rehydrated from state so updates can diff against it.
    """

    def __init__(self, state: PersistedState, writer: OrganizationWriter) -> None:
        previous_source = state.get_previous_template()
        if previous_source:
            previous = parse_template(previous_source, source_name="previous template")
        else:
            previous = OrganizationTemplate.empty()

        self._context = TaskContext(writer=writer, state=state, previous_template=previous)

    @property
    def context(self) -> TaskContext:
        return self._context

    # -------------------------------------------------------------------------
    # Service control policies
    # -------------------------------------------------------------------------

    def create_policy_create_tasks(
        self, resource: ServiceControlPolicyResource, resource_hash: str
    ) -> list[Task]:
        create = self._create_task(resource)
        return [create, self._commit_task(resource, resource_hash, [create], source=create)]

    def create_policy_update_tasks(
        self, resource: ServiceControlPolicyResource, physical_id: str, resource_hash: str
    ) -> list[Task]:
        update = self._update_task(resource, physical_id)
        commit = self._commit_task(resource, resource_hash, [update], physical_id=physical_id)
        return [update, commit]

    def create_policy_delete_tasks(self, binding: StateBinding) -> list[Task]:
        return [self._delete_task(binding)]

    # -------------------------------------------------------------------------
    # Accounts (member and master)
    # -------------------------------------------------------------------------

    def create_account_create_tasks(
        self, resource: AccountResource, resource_hash: str
    ) -> list[Task]:
        create = self._create_task(resource)
        tasks: list[Task] = [create]
        tasks.extend(self._policy_attachments_for_create(resource, create))
        return [*tasks, self._commit_task(resource, resource_hash, tasks, source=create)]

    def create_account_update_tasks(
        self, resource: AccountResource, physical_id: str, resource_hash: str
    ) -> list[Task]:
        previous = self._previous(resource)
        tasks: list[Task] = []

        if (
            previous is None
            or previous.account_name != resource.account_name
            or previous.root_email != resource.root_email
            or previous.tags != resource.tags
        ):
            tasks.append(self._update_task(resource, physical_id))

        tasks.extend(self._policy_changes_for_update(resource, previous, physical_id))
        return [*tasks, self._commit_task(resource, resource_hash, tasks, physical_id=physical_id)]

    # -------------------------------------------------------------------------
    # Organizational units
    # -------------------------------------------------------------------------

    def create_organizational_unit_create_tasks(
        self, resource: OrganizationalUnitResource, resource_hash: str
    ) -> list[Task]:
        create = self._create_task(resource)
        tasks: list[Task] = [create]
        tasks.extend(self._policy_attachments_for_create(resource, create))
        for account in resource.accounts:
            tasks.append(
                self._relate_task(
                    AttachAccountTask,
                    resource,
                    ResourceType.ACCOUNT,
                    account,
                    target_task=create,
                )
            )
        return [*tasks, self._commit_task(resource, resource_hash, tasks, source=create)]

    def create_organizational_unit_update_tasks(
        self, resource: OrganizationalUnitResource, physical_id: str, resource_hash: str
    ) -> list[Task]:
        previous = self._previous(resource)
        tasks: list[Task] = []

        if (
            previous is None
            or previous.organizational_unit_name != resource.organizational_unit_name
        ):
            tasks.append(self._update_task(resource, physical_id))

        tasks.extend(self._policy_changes_for_update(resource, previous, physical_id))
        tasks.extend(
            self._reference_changes(
                resource,
                ResourceType.ACCOUNT,
                previous.accounts if previous is not None else [],
                resource.accounts,
                physical_id,
                attach=AttachAccountTask,
                detach=DetachAccountTask,
            )
        )
        return [*tasks, self._commit_task(resource, resource_hash, tasks, physical_id=physical_id)]

    def create_organizational_unit_delete_tasks(self, binding: StateBinding) -> list[Task]:
        return [self._delete_task(binding)]

    # -------------------------------------------------------------------------
    # Organization root
    # -------------------------------------------------------------------------

    def create_root_create_tasks(
        self, resource: OrganizationRootResource, resource_hash: str
    ) -> list[Task]:
        create = self._create_task(resource)
        tasks: list[Task] = [create]
        tasks.extend(self._policy_attachments_for_create(resource, create))
        return [*tasks, self._commit_task(resource, resource_hash, tasks, source=create)]

    def create_root_update_tasks(
        self, resource: OrganizationRootResource, physical_id: str, resource_hash: str
    ) -> list[Task]:
        previous = self._previous(resource)
        tasks: list[Task] = []
        if previous is None:
            tasks.append(self._update_task(resource, physical_id))
        tasks.extend(self._policy_changes_for_update(resource, previous, physical_id))
        return [*tasks, self._commit_task(resource, resource_hash, tasks, physical_id=physical_id)]

    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------

    def create_forget_resource_tasks(self, binding: StateBinding) -> list[Task]:
        return [
            ForgetResourceTask(
                type=binding.type,
                logical_id=binding.logical_id,
                action=TaskAction.FORGET,
                context=self._context,
                binding=binding,
            )
        ]

    def order_account_moves(self, tasks: Sequence[Task]) -> None:
        """Make every account attach wait for detaches of the same account.

        A detach moves the account back under the root, so an account moving
        between units must leave its old unit before it joins the new one.
        """
        detaches: dict[str, list[Task]] = defaultdict(list)
        for task in tasks:
            if isinstance(task, DetachAccountTask):
                account_id = task.planned_related_id()
                if account_id:
                    detaches[account_id].append(task)

        for task in tasks:
            if not isinstance(task, AttachAccountTask):
                continue
            for detach in detaches.get(task.planned_related_id() or "", []):
                if detach not in task.dependencies:
                    task.dependencies.append(detach)

    def resolve_ids(
        self, references: Sequence[Reference], related_type: ResourceType
    ) -> ResolvedReferences:
        """Split references into sorted physical ids and unbound logical refs.

        Logical refs that already have a committed binding are folded into
        the physical ids.
        """
        physical_ids: list[str] = []
        unresolved: list[Reference] = []
        for reference in references:
            if reference.physical_id is not None:
                physical_ids.append(reference.physical_id)
                continue
            binding = self._context.state.get_binding(related_type, reference.logical_id or "")
            if binding is not None and binding.physical_id:
                physical_ids.append(binding.physical_id)
            else:
                unresolved.append(reference)
        return ResolvedReferences(physical_ids=sorted(physical_ids), unresolved=unresolved)

    def _previous(self, resource: Resource) -> Any:
        return self._context.previous_template.organization.find(
            resource.type, resource.logical_id
        )

    def _create_task(self, resource: Resource) -> CreateResourceTask:
        return CreateResourceTask(
            type=resource.type,
            logical_id=resource.logical_id,
            action=TaskAction.CREATE,
            context=self._context,
            resource=resource,
        )

    def _update_task(self, resource: Resource, physical_id: str) -> UpdateResourceTask:
        return UpdateResourceTask(
            type=resource.type,
            logical_id=resource.logical_id,
            action=TaskAction.UPDATE,
            context=self._context,
            resource=resource,
            physical_id=physical_id,
        )

    def _delete_task(self, binding: StateBinding) -> DeleteResourceTask:
        return DeleteResourceTask(
            type=binding.type,
            logical_id=binding.logical_id,
            action=TaskAction.DELETE,
            context=self._context,
            binding=binding,
        )

    def _commit_task(
        self,
        resource: Resource,
        resource_hash: str,
        dependencies: list[Task],
        physical_id: str | None = None,
        source: Task | None = None,
    ) -> CommitHashTask:
        return CommitHashTask(
            type=resource.type,
            logical_id=resource.logical_id,
            action=TaskAction.COMMIT_HASH,
            dependencies=list(dependencies),
            context=self._context,
            resource_hash=resource_hash,
            physical_id=physical_id,
            source=source,
        )

    def _relate_task(
        self,
        task_class: type[RelateTask],
        resource: Resource,
        related_type: ResourceType,
        related: Reference,
        target_id: str | None = None,
        target_task: Task | None = None,
    ) -> RelateTask:
        pending_edges: tuple[PendingEdge, ...] = ()
        if related.logical_id is not None:
            binding = self._context.state.get_binding(related_type, related.logical_id)
            if binding is None or not binding.physical_id:
                pending_edges = (PendingEdge(related_type, related.logical_id, TaskAction.CREATE),)

        return task_class(
            type=resource.type,
            logical_id=resource.logical_id,
            action=TaskAction.RELATE,
            dependencies=[target_task] if target_task is not None else [],
            pending_edges=pending_edges,
            context=self._context,
            related_type=related_type,
            related=related,
            target_id=target_id,
            target_task=target_task,
        )

    def _policy_attachments_for_create(
        self, resource: PolicyAttachingResource, create: Task
    ) -> list[Task]:
        return [
            self._relate_task(
                AttachPolicyTask,
                resource,
                ResourceType.SERVICE_CONTROL_POLICY,
                policy,
                target_task=create,
            )
            for policy in resource.service_control_policies
        ]

    def _policy_changes_for_update(
        self,
        resource: PolicyAttachingResource,
        previous: PolicyAttachingResource | None,
        physical_id: str,
    ) -> list[Task]:
        return self._reference_changes(
            resource,
            ResourceType.SERVICE_CONTROL_POLICY,
            previous.service_control_policies if previous is not None else [],
            resource.service_control_policies,
            physical_id,
            attach=AttachPolicyTask,
            detach=DetachPolicyTask,
        )

    def _reference_changes(
        self,
        resource: Resource,
        related_type: ResourceType,
        previous_references: Sequence[Reference],
        current_references: Sequence[Reference],
        physical_id: str,
        attach: type[RelateTask],
        detach: type[RelateTask],
    ) -> list[Task]:
        previous_ids = self.resolve_ids(previous_references, related_type)
        current_ids = self.resolve_ids(current_references, related_type)
        tasks: list[Task] = []

        for added in current_ids.physical_ids:
            if added not in previous_ids.physical_ids:
                tasks.append(
                    self._relate_task(
                        attach,
                        resource,
                        related_type,
                        Reference(physical_id=added),
                        target_id=physical_id,
                    )
                )
        for pending in current_ids.unresolved:
            tasks.append(
                self._relate_task(attach, resource, related_type, pending, target_id=physical_id)
            )
        for removed in previous_ids.physical_ids:
            if removed not in current_ids.physical_ids:
                tasks.append(
                    self._relate_task(
                        detach,
                        resource,
                        related_type,
                        Reference(physical_id=removed),
                        target_id=physical_id,
                    )
                )

        if tasks:
            logger.debug(
                "Reference changes",
                extra={
                    "resource": f"{resource.type.value}/{resource.logical_id}",
                    "related_type": related_type.value,
                    "task_count": len(tasks),
                },
            )
        return tasks
