"""Remote writer interface.

The writer is the only component that talks to the organization service.
Reconciliation depends on the `OrganizationWriter` protocol; the concrete
implementation is supplied at runtime as `module:attribute`.
"""

from __future__ import annotations

import importlib
import itertools
import logging
from typing import Protocol, runtime_checkable

from .errors import ConfigurationError
from .models import (
    AccountResource,
    OrganizationalUnitResource,
    ServiceControlPolicyResource,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class OrganizationWriter(Protocol):
    """Remote operations against the organization service.

    Create operations return the physical id of the created (or ensured)
    resource. All other operations return nothing.
    """

    async def ensure_root(self) -> str: ...

    async def create_organizational_unit(self, resource: OrganizationalUnitResource) -> str: ...

    async def update_organizational_unit(
        self, resource: OrganizationalUnitResource, physical_id: str
    ) -> None: ...

    async def delete_organizational_unit(self, physical_id: str) -> None: ...

    async def create_account(self, resource: AccountResource) -> str: ...

    async def update_account(self, resource: AccountResource, physical_id: str) -> None: ...

    async def create_policy(self, resource: ServiceControlPolicyResource) -> str: ...

    async def update_policy(
        self, resource: ServiceControlPolicyResource, physical_id: str
    ) -> None: ...

    async def delete_policy(self, physical_id: str) -> None: ...

    async def attach_policy(self, target_id: str, policy_id: str) -> None: ...

    async def detach_policy(self, target_id: str, policy_id: str) -> None: ...

    async def attach_account(self, target_id: str, account_id: str) -> None: ...

    async def detach_account(self, target_id: str, account_id: str) -> None:
        """Move the account out of `target_id`, back under the organization root."""
        ...


class DryRunWriter:
    """Writer that logs every call and fabricates deterministic physical ids."""

    ROOT_ID = "r-dryrun"

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def _next(self) -> int:
        return next(self._counter)

    async def ensure_root(self) -> str:
        logger.info("[dry-run] ensure organization root")
        return self.ROOT_ID

    async def create_organizational_unit(self, resource: OrganizationalUnitResource) -> str:
        physical_id = f"ou-dryrun-{self._next()}"
        logger.info(
            "[dry-run] create organizational unit",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )
        return physical_id

    async def update_organizational_unit(
        self, resource: OrganizationalUnitResource, physical_id: str
    ) -> None:
        logger.info(
            "[dry-run] update organizational unit",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )

    async def delete_organizational_unit(self, physical_id: str) -> None:
        logger.info("[dry-run] delete organizational unit", extra={"physical_id": physical_id})

    async def create_account(self, resource: AccountResource) -> str:
        physical_id = resource.account_id or f"{self._next():012d}"
        logger.info(
            "[dry-run] create account",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )
        return physical_id

    async def update_account(self, resource: AccountResource, physical_id: str) -> None:
        logger.info(
            "[dry-run] update account",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )

    async def create_policy(self, resource: ServiceControlPolicyResource) -> str:
        physical_id = f"p-dryrun-{self._next()}"
        logger.info(
            "[dry-run] create service control policy",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )
        return physical_id

    async def update_policy(
        self, resource: ServiceControlPolicyResource, physical_id: str
    ) -> None:
        logger.info(
            "[dry-run] update service control policy",
            extra={"logical_id": resource.logical_id, "physical_id": physical_id},
        )

    async def delete_policy(self, physical_id: str) -> None:
        logger.info("[dry-run] delete service control policy", extra={"physical_id": physical_id})

    async def attach_policy(self, target_id: str, policy_id: str) -> None:
        logger.info(
            "[dry-run] attach policy", extra={"target_id": target_id, "policy_id": policy_id}
        )

    async def detach_policy(self, target_id: str, policy_id: str) -> None:
        logger.info(
            "[dry-run] detach policy", extra={"target_id": target_id, "policy_id": policy_id}
        )

    async def attach_account(self, target_id: str, account_id: str) -> None:
        logger.info(
            "[dry-run] attach account", extra={"target_id": target_id, "account_id": account_id}
        )

    async def detach_account(self, target_id: str, account_id: str) -> None:
        logger.info(
            "[dry-run] detach account", extra={"target_id": target_id, "account_id": account_id}
        )


def load_writer(reference: str) -> OrganizationWriter:
    """Import a writer given as `module:attribute`.

    The attribute may be a writer instance, or a class or zero-argument
    factory returning one.

    Raises:
        ConfigurationError: If the reference cannot be imported or does not
            produce an OrganizationWriter.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Writer must be given as 'module:attribute': {reference}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import writer module '{module_name}': {e}") from e

    try:
        candidate = getattr(module, attribute)
    except AttributeError as e:
        raise ConfigurationError(
            f"Writer module '{module_name}' has no attribute '{attribute}'"
        ) from e

    if isinstance(candidate, type) or not isinstance(candidate, OrganizationWriter):
        if not callable(candidate):
            raise ConfigurationError(f"Writer '{reference}' is not an OrganizationWriter")
        candidate = candidate()

    if not isinstance(candidate, OrganizationWriter):
        raise ConfigurationError(
            f"Writer '{reference}' does not implement the OrganizationWriter protocol"
        )

    logger.info("Loaded organization writer", extra={"writer": reference})
    return candidate
