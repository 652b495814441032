"""Tests for writer loading and the dry-run writer."""

import pytest

from org_mock import MockOrganizationWriter
from orgsync.errors import ConfigurationError
from orgsync.models import (
    AccountResource,
    OrganizationalUnitResource,
    ServiceControlPolicyResource,
)
from orgsync.writer import DryRunWriter, OrganizationWriter, load_writer


class TestDryRunWriter:
    """Tests for DryRunWriter."""

    def test_implements_protocol(self) -> None:
        """Test that the dry-run writer is an OrganizationWriter."""
        assert isinstance(DryRunWriter(), OrganizationWriter)

    @pytest.mark.asyncio
    async def test_fabricated_ids(self) -> None:
        """Test that created resources get distinct placeholder ids."""
        writer = DryRunWriter()
        ou = OrganizationalUnitResource.model_validate(
            {"LogicalId": "Eng", "OrganizationalUnitName": "eng"}
        )
        scp = ServiceControlPolicyResource.model_validate(
            {"LogicalId": "Deny", "PolicyName": "deny", "PolicyDocument": {}}
        )
        new_account = AccountResource.model_validate(
            {"LogicalId": "Dev", "AccountName": "dev", "RootEmail": "dev@example.com"}
        )
        known_account = AccountResource.model_validate(
            {"LogicalId": "Ops", "AccountName": "ops", "AccountId": "222222222222"}
        )

        assert await writer.ensure_root() == DryRunWriter.ROOT_ID
        assert await writer.create_organizational_unit(ou) == "ou-dryrun-1"
        assert await writer.create_policy(scp) == "p-dryrun-2"
        assert await writer.create_account(new_account) == "000000000003"
        assert await writer.create_account(known_account) == "222222222222"

    @pytest.mark.asyncio
    async def test_calls_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that every call is logged instead of performed."""
        writer = DryRunWriter()
        with caplog.at_level("INFO", logger="orgsync.writer"):
            await writer.attach_policy("ou-1", "p-1")
            await writer.detach_account("ou-1", "222222222222")

        assert [r.getMessage() for r in caplog.records] == [
            "[dry-run] attach policy",
            "[dry-run] detach account",
        ]


class TestLoadWriter:
    """Tests for load_writer."""

    def test_class_is_instantiated(self) -> None:
        """Test that a class reference is instantiated."""
        writer = load_writer("org_mock:MockOrganizationWriter")
        assert isinstance(writer, MockOrganizationWriter)

    def test_missing_module(self) -> None:
        """Test that an unknown module raises error."""
        with pytest.raises(ConfigurationError, match="Cannot import writer module"):
            load_writer("orgsync_no_such_module:Writer")

    def test_missing_attribute(self) -> None:
        """Test that an unknown attribute raises error."""
        with pytest.raises(ConfigurationError, match="has no attribute"):
            load_writer("org_mock:NoSuchWriter")

    def test_not_a_writer(self) -> None:
        """Test that a non-callable, non-writer attribute raises error."""
        with pytest.raises(ConfigurationError, match="is not an OrganizationWriter"):
            load_writer("org_mock:MASTER_ACCOUNT_ID")

    def test_factory_must_return_writer(self) -> None:
        """Test that a factory returning something else raises error."""
        with pytest.raises(ConfigurationError, match="does not implement"):
            load_writer("org_mock:build_template")

    def test_malformed_reference(self) -> None:
        """Test that the reference must name module and attribute."""
        with pytest.raises(ConfigurationError, match="module:attribute"):
            load_writer("org_mock")
