"""Organization API mock for testing.

This module provides an in-memory implementation of the OrganizationWriter
protocol so reconciliation can be exercised end to end without a real
organization.

Key Features:
- In-memory organizational units, accounts, policies and attachments
- Deterministic physical ids
- Call recording in execution order
- Peak concurrency tracking
- Error injection per operation (optionally per resource)

Usage:
    from org_mock import MockOrganizationWriter, build_template

    writer = MockOrganizationWriter()
    writer.fail_on("create_policy")

    template = parse_template(build_template({...}))
"""

from .templates import MASTER_ACCOUNT_ID, build_template, master_account
from .writer import MockOrganizationWriter, MockWriterError, WriterCall

__all__ = [
    "MASTER_ACCOUNT_ID",
    "MockOrganizationWriter",
    "MockWriterError",
    "WriterCall",
    "build_template",
    "master_account",
]
