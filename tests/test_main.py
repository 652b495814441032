"""Tests for the environment-driven entry point."""

import json
import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from org_mock import MockOrganizationWriter, build_template
from org_mock.templates import account
from orgsync import main as main_module
from orgsync.main import JsonFormatter, main, setup_logging


@pytest.fixture
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module, "setup_logging", lambda *args: None)


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    template_file = tmp_path / "organization.yaml"
    template_file.write_text(build_template({"Dev": account("Dev")}))
    return {
        "ORGSYNC_TEMPLATE_FILE": str(template_file),
        "ORGSYNC_STATE_FILE": str(tmp_path / "state.json"),
        "ORGSYNC_WRITER": "org_mock:MockOrganizationWriter",
    }


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_extra_fields_included(self) -> None:
        """Test that structured extras end up in the JSON document."""
        record = logging.LogRecord("orgsync.test", logging.INFO, __file__, 1, "hello", None, None)
        record.task = "Create OC::ORG::Account/Dev"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["logger"] == "orgsync.test"
        assert data["task"] == "Create OC::ORG::Account/Dev"
        assert "msg" not in data


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_handler_replaced_not_duplicated(self) -> None:
        """Test that repeated setup keeps a single orgsync handler."""
        root = logging.getLogger()
        level = root.level
        try:
            setup_logging("text", "DEBUG")
            setup_logging("json", "INFO")

            ours = [h for h in root.handlers if h.get_name() == "orgsync"]
            assert len(ours) == 1
            assert isinstance(ours[0].formatter, JsonFormatter)
            assert root.level == logging.INFO
        finally:
            for handler in list(root.handlers):
                if handler.get_name() == "orgsync":
                    root.removeHandler(handler)
            root.setLevel(level)


@pytest.mark.usefixtures("quiet_logging")
class TestMain:
    """Tests for main."""

    @pytest.mark.asyncio
    async def test_successful_run(self, env: dict[str, str]) -> None:
        """Test that a clean run exits zero and saves state."""
        with patch.dict(os.environ, env, clear=True):
            exit_code = await main()

        assert exit_code == 0
        assert Path(env["ORGSYNC_STATE_FILE"]).exists()

    @pytest.mark.asyncio
    async def test_configuration_error(self) -> None:
        """Test that invalid configuration exits non-zero."""
        with patch.dict(os.environ, {"MAX_CONCURRENT_TASKS": "0"}, clear=True):
            exit_code = await main()

        assert exit_code == 1

    @pytest.mark.asyncio
    async def test_tolerance_exceeded(
        self, env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that an aborted run exits non-zero."""
        writer = MockOrganizationWriter()
        writer.fail_on("create_account")
        monkeypatch.setattr(main_module, "create_writer", lambda config: writer)

        with patch.dict(os.environ, env, clear=True):
            exit_code = await main()

        assert exit_code == 1

    @pytest.mark.asyncio
    async def test_failures_within_tolerance(
        self, env: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that tolerated failures still exit non-zero."""
        writer = MockOrganizationWriter()
        writer.fail_on("create_account", "Dev")
        monkeypatch.setattr(main_module, "create_writer", lambda config: writer)

        with patch.dict(os.environ, {**env, "FAILED_TASKS_TOLERANCE": "1"}, clear=True):
            exit_code = await main()

        assert exit_code == 1
        assert "create_account" in writer.operations()

    @pytest.mark.asyncio
    async def test_unloadable_writer(self, env: dict[str, str]) -> None:
        """Test that a writer that cannot be imported exits non-zero."""
        with patch.dict(os.environ, {**env, "ORGSYNC_WRITER": "no_such_module:Writer"}, clear=True):
            exit_code = await main()

        assert exit_code == 1
