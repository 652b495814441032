"""Classifies template resources against persisted state.

Every resource kind goes through the same four-way rule:

| Template | State            | Action |
|----------|------------------|--------|
| present  | absent           | Create |
| present  | hash differs     | Update |
| present  | hash equal       | None   |
| absent   | present          | Delete |

Resource kinds are described by `ResourceKind` metadata (type tag, how to
enumerate the template's resources, which provider methods expand each
action); classification itself is one generic function.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from .errors import OrganizationMismatchError
from .models import (
    OrganizationSection,
    OrganizationTemplate,
    Resource,
    ResourceType,
)
from .state import PersistedState, StateBinding
from .task_provider import TaskProvider
from .tasks import Task

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)


class BindingAction(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NONE = "None"


@dataclass(frozen=True)
class Binding(Generic[R]):
    """A template resource paired with its persisted binding."""

    action: BindingAction
    template: R | None = None
    state: StateBinding | None = None
    template_hash: str | None = None

    @property
    def logical_id(self) -> str:
        if self.template is not None:
            return self.template.logical_id
        assert self.state is not None
        return self.state.logical_id


CreateExpansion = Callable[[TaskProvider, Resource, str], list[Task]]
UpdateExpansion = Callable[[TaskProvider, Resource, str, str], list[Task]]
DeleteExpansion = Callable[[TaskProvider, StateBinding], list[Task]]


@dataclass(frozen=True)
class ResourceKind:
    """How one resource type is enumerated and expanded into tasks."""

    type: ResourceType
    enumerate: Callable[[OrganizationSection], Sequence[Resource]]
    on_create: CreateExpansion
    on_update: UpdateExpansion
    on_delete: DeleteExpansion


def _single(resource: Resource | None) -> list[Resource]:
    return [resource] if resource is not None else []


POLICIES = ResourceKind(
    type=ResourceType.SERVICE_CONTROL_POLICY,
    enumerate=lambda section: section.service_control_policies,
    on_create=TaskProvider.create_policy_create_tasks,
    on_update=TaskProvider.create_policy_update_tasks,
    on_delete=TaskProvider.create_policy_delete_tasks,
)

ACCOUNTS = ResourceKind(
    type=ResourceType.ACCOUNT,
    enumerate=lambda section: section.accounts,
    on_create=TaskProvider.create_account_create_tasks,
    on_update=TaskProvider.create_account_update_tasks,
    on_delete=TaskProvider.create_forget_resource_tasks,
)

ORGANIZATIONAL_UNITS = ResourceKind(
    type=ResourceType.ORGANIZATIONAL_UNIT,
    enumerate=lambda section: section.organizational_units,
    on_create=TaskProvider.create_organizational_unit_create_tasks,
    on_update=TaskProvider.create_organizational_unit_update_tasks,
    on_delete=TaskProvider.create_organizational_unit_delete_tasks,
)

MASTER_ACCOUNT = ResourceKind(
    type=ResourceType.MASTER_ACCOUNT,
    enumerate=lambda section: _single(section.master_account),
    on_create=TaskProvider.create_account_create_tasks,
    on_update=TaskProvider.create_account_update_tasks,
    on_delete=TaskProvider.create_forget_resource_tasks,
)

ORGANIZATION_ROOT = ResourceKind(
    type=ResourceType.ORGANIZATION_ROOT,
    enumerate=lambda section: _single(section.organization_root),
    on_create=TaskProvider.create_root_create_tasks,
    on_update=TaskProvider.create_root_update_tasks,
    on_delete=TaskProvider.create_forget_resource_tasks,
)

# Order in which build tasks are emitted
RESOURCE_KINDS: tuple[ResourceKind, ...] = (
    POLICIES,
    ACCOUNTS,
    ORGANIZATIONAL_UNITS,
    MASTER_ACCOUNT,
    ORGANIZATION_ROOT,
)


def classify(
    kind: ResourceKind, section: OrganizationSection, state: PersistedState
) -> list[Binding[Resource]]:
    """Bind every template resource of one kind, then every stale state binding."""
    resources = list(kind.enumerate(section))
    bindings: list[Binding[Resource]] = []

    for resource in resources:
        saved = state.get_binding(kind.type, resource.logical_id)
        resource_hash = resource.calculate_hash()
        if saved is None:
            action = BindingAction.CREATE
        elif saved.last_committed_hash != resource_hash:
            action = BindingAction.UPDATE
        else:
            action = BindingAction.NONE
        bindings.append(
            Binding(action=action, template=resource, state=saved, template_hash=resource_hash)
        )

    declared = {r.logical_id for r in resources}
    for saved in state.enum_bindings(kind.type):
        if saved.logical_id not in declared:
            bindings.append(Binding(action=BindingAction.DELETE, state=saved))

    return bindings


@dataclass
class OrganizationBindings:
    policies: list[Binding[Resource]] = field(default_factory=list)
    accounts: list[Binding[Resource]] = field(default_factory=list)
    organizational_units: list[Binding[Resource]] = field(default_factory=list)
    master_account: list[Binding[Resource]] = field(default_factory=list)
    organization_root: list[Binding[Resource]] = field(default_factory=list)

    def by_kind(self) -> list[tuple[ResourceKind, list[Binding[Resource]]]]:
        return [
            (POLICIES, self.policies),
            (ACCOUNTS, self.accounts),
            (ORGANIZATIONAL_UNITS, self.organizational_units),
            (MASTER_ACCOUNT, self.master_account),
            (ORGANIZATION_ROOT, self.organization_root),
        ]

    def all(self) -> list[Binding[Resource]]:
        return [binding for _, bindings in self.by_kind() for binding in bindings]


class OrganizationBinder:
    """Turns a template and state into the organization's build tasks."""

    def __init__(
        self,
        template: OrganizationTemplate,
        state: PersistedState,
        task_provider: TaskProvider,
    ) -> None:
        master_account_id = template.master_account_id
        if (
            state.master_account_id
            and master_account_id
            and state.master_account_id != master_account_id
        ):
            raise OrganizationMismatchError(
                "state and template do not belong to the same organization: "
                f"state master account {state.master_account_id}, "
                f"template master account {master_account_id}"
            )

        self._template = template
        self._state = state
        self._task_provider = task_provider

    def get_organization_bindings(self) -> OrganizationBindings:
        section = self._template.organization
        return OrganizationBindings(
            policies=classify(POLICIES, section, self._state),
            accounts=classify(ACCOUNTS, section, self._state),
            organizational_units=classify(ORGANIZATIONAL_UNITS, section, self._state),
            master_account=classify(MASTER_ACCOUNT, section, self._state),
            organization_root=classify(ORGANIZATION_ROOT, section, self._state),
        )

    def enum_build_tasks(self) -> list[Task]:
        """Tasks for every binding that is not `None`."""
        tasks: list[Task] = []
        provider = self._task_provider

        for kind, bindings in self.get_organization_bindings().by_kind():
            for binding in bindings:
                if binding.action is BindingAction.CREATE:
                    assert binding.template is not None and binding.template_hash is not None
                    tasks.extend(kind.on_create(provider, binding.template, binding.template_hash))
                elif binding.action is BindingAction.UPDATE:
                    assert binding.template is not None and binding.state is not None
                    assert binding.template_hash is not None
                    tasks.extend(
                        kind.on_update(
                            provider,
                            binding.template,
                            binding.state.physical_id or "",
                            binding.template_hash,
                        )
                    )
                elif binding.action is BindingAction.DELETE:
                    assert binding.state is not None
                    tasks.extend(kind.on_delete(provider, binding.state))
                else:
                    continue

                logger.debug(
                    "Expanded binding",
                    extra={
                        "type": kind.type.value,
                        "logical_id": binding.logical_id,
                        "action": binding.action.value,
                    },
                )

        provider.order_account_moves(tasks)
        return tasks
