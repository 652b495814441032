"""Pydantic models for the organization resource tree.

These models provide:
1. Type-safe parsing of the `Organization` section of a template
2. Validation at the boundary (fail fast, fail loudly)
3. A deterministic content hash per resource for change detection
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

TEMPLATE_FORMAT_VERSION = "2010-09-09-OC"


class ResourceType(str, Enum):
    """Resource types that can appear in the Organization section."""

    MASTER_ACCOUNT = "OC::ORG::MasterAccount"
    ACCOUNT = "OC::ORG::Account"
    ORGANIZATIONAL_UNIT = "OC::ORG::OrganizationalUnit"
    SERVICE_CONTROL_POLICY = "OC::ORG::ServiceControlPolicy"
    ORGANIZATION_ROOT = "OC::ORG::OrganizationRoot"


def md5_of(value: Any) -> str:
    """Digest of the canonical JSON encoding of value."""
    payload = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


# =============================================================================
# References
# =============================================================================


class Reference(BaseModel):
    """A relationship to another resource.

    Exactly one of `physical_id` (a literal id that already exists remotely)
    or `logical_id` (a resource declared in the same template) is set.

    Template syntax:
        ServiceControlPolicies:
          - p-abcd1234        # literal physical id
          - Ref: DenyRoot     # logical reference
    """

    model_config = {"frozen": True}

    physical_id: str | None = None
    logical_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def from_template_value(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"physical_id": value}
        if isinstance(value, dict) and "Ref" in value:
            if len(value) != 1:
                raise ValueError("a reference must contain only the 'Ref' key")
            return {"logical_id": value["Ref"]}
        return value

    @model_validator(mode="after")
    def exactly_one(self) -> Reference:
        if (self.physical_id is None) == (self.logical_id is None):
            raise ValueError("a reference needs exactly one of a physical id or a Ref")
        return self

    def to_template_value(self) -> str | dict[str, str]:
        if self.logical_id is not None:
            return {"Ref": self.logical_id}
        return self.physical_id  # type: ignore[return-value]

    def __str__(self) -> str:
        return self.logical_id if self.logical_id is not None else str(self.physical_id)


def _as_list(value: Any) -> Any:
    """Allow a single reference where a list is expected."""
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        return [value]
    return value


# =============================================================================
# Resources
# =============================================================================


class Resource(BaseModel):
    """Base class for all organization resources."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    resource_type: ClassVar[ResourceType]

    logical_id: Annotated[str, Field(min_length=1, alias="LogicalId")]

    @property
    def type(self) -> ResourceType:
        return self.resource_type

    def hash_fields(self) -> dict[str, Any]:
        """Semantically significant fields that feed the content hash."""
        return self.model_dump(mode="json", exclude={"logical_id"})

    def calculate_hash(self) -> str:
        return md5_of({"type": self.resource_type.value, **self.hash_fields()})

    def references(self) -> dict[ResourceType, list[Reference]]:
        """Cross references declared by this resource, keyed by target type."""
        return {}


class PolicyAttachingResource(Resource):
    """A resource that service control policies can be attached to."""

    service_control_policies: list[Reference] = Field(
        default_factory=list, alias="ServiceControlPolicies"
    )

    @field_validator("service_control_policies", mode="before")
    @classmethod
    def coerce_policies(cls, v: Any) -> Any:
        return _as_list(v)

    def references(self) -> dict[ResourceType, list[Reference]]:
        return {ResourceType.SERVICE_CONTROL_POLICY: list(self.service_control_policies)}


class ServiceControlPolicyResource(Resource):
    """A service control policy."""

    resource_type: ClassVar[ResourceType] = ResourceType.SERVICE_CONTROL_POLICY

    policy_name: Annotated[str, Field(min_length=1, max_length=128, alias="PolicyName")]
    description: str | None = Field(None, alias="Description")
    policy_document: dict[str, Any] | str = Field(alias="PolicyDocument")
    tags: dict[str, str] = Field(default_factory=dict, alias="Tags")


class AccountResource(PolicyAttachingResource):
    """A member account."""

    resource_type: ClassVar[ResourceType] = ResourceType.ACCOUNT

    account_name: Annotated[str, Field(min_length=1, alias="AccountName")]
    account_id: str | None = Field(None, alias="AccountId")
    root_email: str | None = Field(None, alias="RootEmail")
    tags: dict[str, str] = Field(default_factory=dict, alias="Tags")

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v: str | None) -> str | None:
        if v is not None and not (len(v) == 12 and v.isdigit()):
            raise ValueError("AccountId must be a 12 digit string")
        return v

    @model_validator(mode="after")
    def requires_id_or_email(self) -> AccountResource:
        if self.account_id is None and self.root_email is None:
            raise ValueError("an account needs an AccountId or a RootEmail")
        return self


class MasterAccountResource(AccountResource):
    """The organization's management account."""

    resource_type: ClassVar[ResourceType] = ResourceType.MASTER_ACCOUNT

    account_id: str = Field(alias="AccountId")


class OrganizationalUnitResource(PolicyAttachingResource):
    """An organizational unit with member accounts."""

    resource_type: ClassVar[ResourceType] = ResourceType.ORGANIZATIONAL_UNIT

    organizational_unit_name: Annotated[
        str, Field(min_length=1, max_length=128, alias="OrganizationalUnitName")
    ]
    accounts: list[Reference] = Field(default_factory=list, alias="Accounts")

    @field_validator("accounts", mode="before")
    @classmethod
    def coerce_accounts(cls, v: Any) -> Any:
        return _as_list(v)

    def references(self) -> dict[ResourceType, list[Reference]]:
        refs = super().references()
        refs[ResourceType.ACCOUNT] = list(self.accounts)
        return refs


class OrganizationRootResource(PolicyAttachingResource):
    """The organization root."""

    resource_type: ClassVar[ResourceType] = ResourceType.ORGANIZATION_ROOT


RESOURCE_CLASSES: dict[ResourceType, type[Resource]] = {
    ResourceType.MASTER_ACCOUNT: MasterAccountResource,
    ResourceType.ACCOUNT: AccountResource,
    ResourceType.ORGANIZATIONAL_UNIT: OrganizationalUnitResource,
    ResourceType.SERVICE_CONTROL_POLICY: ServiceControlPolicyResource,
    ResourceType.ORGANIZATION_ROOT: OrganizationRootResource,
}


def get_resource_class(resource_type: str) -> type[Resource]:
    """Get the model class for a template resource type.

    Raises:
        ValueError: If the type is not a known organization resource type.
    """
    try:
        return RESOURCE_CLASSES[ResourceType(resource_type)]
    except ValueError as e:
        valid = [t.value for t in ResourceType]
        raise ValueError(f"Unknown resource type '{resource_type}'. Valid types: {valid}") from e


# =============================================================================
# Template
# =============================================================================


class OrganizationSection(BaseModel):
    """All resources declared in the Organization section."""

    model_config = {"frozen": True}

    master_account: MasterAccountResource | None = None
    organization_root: OrganizationRootResource | None = None
    accounts: list[AccountResource] = Field(default_factory=list)
    organizational_units: list[OrganizationalUnitResource] = Field(default_factory=list)
    service_control_policies: list[ServiceControlPolicyResource] = Field(default_factory=list)

    def resources(self) -> list[Resource]:
        result: list[Resource] = []
        if self.master_account is not None:
            result.append(self.master_account)
        if self.organization_root is not None:
            result.append(self.organization_root)
        result.extend(self.accounts)
        result.extend(self.organizational_units)
        result.extend(self.service_control_policies)
        return result

    def find(self, resource_type: ResourceType, logical_id: str) -> Resource | None:
        for resource in self.resources():
            if resource.type == resource_type and resource.logical_id == logical_id:
                return resource
        return None


class OrganizationTemplate(BaseModel):
    """A parsed organization template.

    `source` keeps the template text so it can be stored as the previous
    template after a successful run.
    """

    model_config = {"frozen": True}

    organization: OrganizationSection = Field(default_factory=OrganizationSection)
    source: str = ""

    @classmethod
    def empty(cls) -> OrganizationTemplate:
        return cls()

    @property
    def master_account_id(self) -> str | None:
        master = self.organization.master_account
        return master.account_id if master is not None else None
