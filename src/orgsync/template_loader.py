"""Organization template loading with validation.

File operations enforce size limits, and all cross references are checked
at the boundary so the binder and task provider can trust the tree they get.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_TEMPLATE_FILE_SIZE_BYTES
from .errors import TemplateLoadError
from .models import (
    TEMPLATE_FORMAT_VERSION,
    AccountResource,
    MasterAccountResource,
    OrganizationalUnitResource,
    OrganizationRootResource,
    OrganizationSection,
    OrganizationTemplate,
    Resource,
    ServiceControlPolicyResource,
    get_resource_class,
)

__all__ = ["TemplateLoadError", "load_template", "parse_template"]

logger = logging.getLogger(__name__)


def load_template(template_path: Path) -> OrganizationTemplate:
    """Load and validate an organization template from YAML.

    Args:
        template_path: Path to the template file.

    Returns:
        Validated template.

    Raises:
        TemplateLoadError: If the template cannot be loaded or fails validation.
    """
    if not template_path.exists():
        raise TemplateLoadError(f"Template file not found: {template_path}")

    try:
        file_size = template_path.stat().st_size
    except OSError as e:
        raise TemplateLoadError(f"Failed to stat template file {template_path}: {e}") from e

    if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise TemplateLoadError(
            f"Template file exceeds maximum size of {MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: "
            f"{template_path}"
        )

    try:
        content = template_path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateLoadError(f"Failed to read template file {template_path}: {e}") from e

    template = parse_template(content, source_name=str(template_path))
    logger.info(
        "Loaded organization template",
        extra={
            "template_file": str(template_path),
            "resource_count": len(template.organization.resources()),
        },
    )
    return template


def parse_template(content: str, source_name: str = "<template>") -> OrganizationTemplate:
    """Parse template text into an OrganizationTemplate.

    Also used to rehydrate the previous template stored in state.

    Raises:
        TemplateLoadError: If the text is not a valid organization template.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise TemplateLoadError(f"Invalid YAML in {source_name}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise TemplateLoadError(f"Template must contain a YAML mapping: {source_name}")

    version = raw_data.get("AWSTemplateFormatVersion")
    if version is not None and str(version) != TEMPLATE_FORMAT_VERSION:
        raise TemplateLoadError(
            f"Unsupported AWSTemplateFormatVersion '{version}' in {source_name}, "
            f"expected '{TEMPLATE_FORMAT_VERSION}'"
        )

    organization = raw_data.get("Organization", {}) or {}
    if not isinstance(organization, dict):
        raise TemplateLoadError(f"Organization section must be a mapping: {source_name}")

    resources = [
        _parse_resource(logical_id, body, source_name)
        for logical_id, body in organization.items()
    ]
    section = _build_section(resources, source_name)
    _validate_references(section, source_name)

    return OrganizationTemplate(organization=section, source=content)


def _parse_resource(logical_id: Any, body: Any, source_name: str) -> Resource:
    if not isinstance(body, dict):
        raise TemplateLoadError(f"Resource '{logical_id}' must be a mapping in {source_name}")

    resource_type = body.get("Type")
    if not resource_type:
        raise TemplateLoadError(
            f"Resource '{logical_id}' does not have required attribute Type in {source_name}"
        )

    try:
        resource_class = get_resource_class(str(resource_type))
    except ValueError as e:
        raise TemplateLoadError(f"Resource '{logical_id}': {e}") from e

    properties = body.get("Properties", {}) or {}
    if not isinstance(properties, dict):
        raise TemplateLoadError(
            f"Properties of resource '{logical_id}' must be a mapping in {source_name}"
        )

    try:
        return resource_class.model_validate({**properties, "LogicalId": str(logical_id)})
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise TemplateLoadError(
            f"Validation failed for resource '{logical_id}' in {source_name}:\n{error_list}"
        ) from e


def _build_section(resources: list[Resource], source_name: str) -> OrganizationSection:
    masters = [r for r in resources if isinstance(r, MasterAccountResource)]
    roots = [r for r in resources if isinstance(r, OrganizationRootResource)]

    if len(masters) > 1:
        raise TemplateLoadError(f"Template declares more than one MasterAccount: {source_name}")
    if len(roots) > 1:
        raise TemplateLoadError(
            f"Template declares more than one OrganizationRoot: {source_name}"
        )
    if resources and not masters:
        raise TemplateLoadError(
            f"Template does not have required resource MasterAccount: {source_name}"
        )

    return OrganizationSection(
        master_account=masters[0] if masters else None,
        organization_root=roots[0] if roots else None,
        # MasterAccountResource subclasses AccountResource, filter it out
        accounts=[r for r in resources if type(r) is AccountResource],
        organizational_units=[r for r in resources if isinstance(r, OrganizationalUnitResource)],
        service_control_policies=[
            r for r in resources if isinstance(r, ServiceControlPolicyResource)
        ],
    )


def _validate_references(section: OrganizationSection, source_name: str) -> None:
    """Every Ref must name a declared resource of the expected type."""
    errors: list[str] = []
    declared_accounts: set[str] = set()

    for resource in section.resources():
        for target_type, references in resource.references().items():
            for reference in references:
                if reference.logical_id is None:
                    continue
                if section.find(target_type, reference.logical_id) is None:
                    errors.append(
                        f"  - {resource.logical_id}: Ref '{reference.logical_id}' does not "
                        f"resolve to a {target_type.value}"
                    )

    for ou in section.organizational_units:
        for account in ou.accounts:
            key = account.logical_id or account.physical_id or ""
            if key in declared_accounts:
                errors.append(f"  - {ou.logical_id}: account '{key}' belongs to more than one OU")
            declared_accounts.add(key)

    if errors:
        error_list = "\n".join(errors)
        raise TemplateLoadError(f"Invalid references in {source_name}:\n{error_list}")
