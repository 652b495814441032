"""Tests for organization template loading."""

from pathlib import Path

import pytest

from org_mock import MASTER_ACCOUNT_ID, build_template
from org_mock.templates import account, organization_root, organizational_unit, policy, ref
from orgsync.config import MAX_TEMPLATE_FILE_SIZE_BYTES
from orgsync.template_loader import TemplateLoadError, load_template, parse_template


class TestParseTemplate:
    """Tests for parse_template."""

    def test_full_template(self) -> None:
        """Test parsing every resource type."""
        template = parse_template(
            build_template(
                {
                    "Root": organization_root(policies=[ref("DenyRoot")]),
                    "DenyRoot": policy("deny-root"),
                    "Dev": account("Dev"),
                    "Engineering": organizational_unit(
                        "engineering", accounts=[ref("Dev")], policies=[ref("DenyRoot")]
                    ),
                }
            )
        )

        section = template.organization
        assert template.master_account_id == MASTER_ACCOUNT_ID
        assert section.organization_root is not None
        assert [a.logical_id for a in section.accounts] == ["Dev"]
        assert [o.logical_id for o in section.organizational_units] == ["Engineering"]
        assert [p.logical_id for p in section.service_control_policies] == ["DenyRoot"]
        assert len(section.resources()) == 5

    def test_master_account_not_listed_as_account(self) -> None:
        """Test that the master account is kept apart from member accounts."""
        template = parse_template(build_template({"Dev": account("Dev")}))
        assert [a.logical_id for a in template.organization.accounts] == ["Dev"]

    def test_source_is_kept(self) -> None:
        """Test that the template text is kept for the previous-template record."""
        content = build_template()
        assert parse_template(content).source == content

    def test_empty_content(self) -> None:
        """Test that an empty document is an empty template."""
        template = parse_template("")
        assert template.organization.resources() == []
        assert template.master_account_id is None

    def test_missing_master_account(self) -> None:
        """Test that a template with resources needs a MasterAccount."""
        with pytest.raises(TemplateLoadError, match="MasterAccount"):
            parse_template(build_template({"Dev": account("Dev")}, include_master=False))

    def test_missing_type(self) -> None:
        """Test that every resource needs a Type."""
        content = build_template({"Broken": {"Properties": {}}})
        with pytest.raises(TemplateLoadError, match="Type"):
            parse_template(content)

    def test_unknown_type(self) -> None:
        """Test that unknown resource types are rejected."""
        content = build_template({"Bucket": {"Type": "AWS::S3::Bucket"}})
        with pytest.raises(TemplateLoadError, match="Unknown resource type"):
            parse_template(content)

    def test_validation_errors_are_formatted(self) -> None:
        """Test that pydantic errors are reported per field."""
        content = build_template({"Dev": {"Type": "OC::ORG::Account", "Properties": {}}})
        with pytest.raises(TemplateLoadError) as exc_info:
            parse_template(content)

        message = str(exc_info.value)
        assert "Validation failed for resource 'Dev'" in message
        assert "AccountName" in message

    def test_dangling_reference(self) -> None:
        """Test that a Ref must name a declared resource."""
        content = build_template(
            {"Engineering": organizational_unit("eng", policies=[ref("Nope")])}
        )
        with pytest.raises(TemplateLoadError, match="Ref 'Nope'"):
            parse_template(content)

    def test_mistyped_reference(self) -> None:
        """Test that a Ref must point at a resource of the expected type."""
        content = build_template(
            {
                "Dev": account("Dev"),
                "Engineering": organizational_unit("eng", policies=[ref("Dev")]),
            }
        )
        with pytest.raises(TemplateLoadError, match="does not resolve"):
            parse_template(content)

    def test_account_in_two_units(self) -> None:
        """Test that an account can only belong to one OU."""
        content = build_template(
            {
                "Dev": account("Dev"),
                "A": organizational_unit("a", accounts=[ref("Dev")]),
                "B": organizational_unit("b", accounts=[ref("Dev")]),
            }
        )
        with pytest.raises(TemplateLoadError, match="more than one OU"):
            parse_template(content)

    def test_wrong_format_version(self) -> None:
        """Test that the template format version is checked."""
        with pytest.raises(TemplateLoadError, match="AWSTemplateFormatVersion"):
            parse_template("AWSTemplateFormatVersion: '2010-09-09'\nOrganization: {}\n")

    def test_invalid_yaml(self) -> None:
        """Test that YAML errors are wrapped."""
        with pytest.raises(TemplateLoadError, match="Invalid YAML"):
            parse_template("Organization: [unclosed")

    def test_non_mapping_document(self) -> None:
        """Test that the document must be a mapping."""
        with pytest.raises(TemplateLoadError, match="mapping"):
            parse_template("- a\n- b\n")


class TestLoadTemplate:
    """Tests for load_template."""

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test loading a template file."""
        path = tmp_path / "organization.yaml"
        path.write_text(build_template({"Dev": account("Dev")}))

        template = load_template(path)
        assert template.master_account_id == MASTER_ACCOUNT_ID

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises error."""
        with pytest.raises(TemplateLoadError, match="not found"):
            load_template(tmp_path / "missing.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that oversized templates are rejected."""
        path = tmp_path / "organization.yaml"
        path.write_text("#" * (MAX_TEMPLATE_FILE_SIZE_BYTES + 1))

        with pytest.raises(TemplateLoadError, match="maximum size"):
            load_template(path)
