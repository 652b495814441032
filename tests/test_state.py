"""Tests for persisted reconciliation state."""

import json
from pathlib import Path

import pytest

from orgsync.errors import StateError
from orgsync.models import ResourceType
from orgsync.state import PersistedState, StateBinding, TargetRecord


def _binding(logical_id: str = "DenyRoot", physical_id: str = "p-1") -> StateBinding:
    return StateBinding(
        type=ResourceType.SERVICE_CONTROL_POLICY,
        logical_id=logical_id,
        last_committed_hash="abc",
        physical_id=physical_id,
    )


class TestBindings:
    """Tests for binding access."""

    def test_enum_type_normalized(self) -> None:
        """Test that enum types are stored as their string value."""
        assert _binding().type == "OC::ORG::ServiceControlPolicy"

    def test_set_get_remove(self) -> None:
        """Test binding round trip through the accessor."""
        state = PersistedState.empty()
        state.set_binding(_binding())

        found = state.get_binding(ResourceType.SERVICE_CONTROL_POLICY, "DenyRoot")
        assert found == _binding()
        assert state.enum_bindings(ResourceType.SERVICE_CONTROL_POLICY) == [_binding()]

        state.remove_binding(_binding())
        assert state.get_binding(ResourceType.SERVICE_CONTROL_POLICY, "DenyRoot") is None
        assert state.enum_bindings(ResourceType.SERVICE_CONTROL_POLICY) == []

    def test_set_binding_upserts(self) -> None:
        """Test that set_binding replaces an existing binding."""
        state = PersistedState.empty()
        state.set_binding(_binding(physical_id="p-1"))
        state.set_binding(_binding(physical_id="p-2"))

        bindings = state.enum_bindings(ResourceType.SERVICE_CONTROL_POLICY)
        assert [b.physical_id for b in bindings] == ["p-2"]

    def test_dirty_tracking(self) -> None:
        """Test that only real changes mark state dirty."""
        state = PersistedState.empty()
        assert state.dirty is False

        state.remove_binding(_binding())
        assert state.dirty is False

        state.master_account_id = None
        assert state.dirty is False

        state.master_account_id = "111111111111"
        assert state.dirty is True


class TestTargets:
    """Tests for workload target records."""

    def test_target_keys(self) -> None:
        """Test that records are keyed by account and region."""
        state = PersistedState.empty()
        state.set_target(TargetRecord("sls", "app", "222222222222", "h1", "eu-west-1"))
        state.set_target(TargetRecord("sls", "app", "222222222222", "h1", "us-east-1"))

        assert len(state.enum_targets("sls", "app")) == 2
        record = state.get_target("sls", "app", "222222222222", "eu-west-1")
        assert record is not None
        assert record.key == "222222222222/eu-west-1"
        assert state.get_target("sls", "app", "222222222222") is None

        state.remove_target(record)
        assert len(state.enum_targets("sls", "app")) == 1


class TestPersistence:
    """Tests for loading and saving."""

    def test_missing_file_is_empty_state(self, tmp_path: Path) -> None:
        """Test that a missing file yields empty state."""
        state = PersistedState.load(tmp_path / "state.json")
        assert state.master_account_id is None
        assert state.get_previous_template() is None

    def test_save_and_load(self, tmp_path: Path) -> None:
        """Test that state survives a save/load cycle."""
        path = tmp_path / "state.json"
        state = PersistedState.load(path)
        state.master_account_id = "111111111111"
        state.set_binding(_binding())
        state.set_previous_template("Organization: {}\n")
        state.set_target(TargetRecord("sls", "app", "222222222222", "h1", "eu-west-1"))

        assert state.save() is True
        assert state.dirty is False

        loaded = PersistedState.load(path)
        assert loaded.master_account_id == "111111111111"
        assert loaded.get_binding(ResourceType.SERVICE_CONTROL_POLICY, "DenyRoot") == _binding()
        assert loaded.get_previous_template() == "Organization: {}\n"
        assert loaded.get_target("sls", "app", "222222222222", "eu-west-1") is not None

    def test_save_skips_clean_state(self, tmp_path: Path) -> None:
        """Test that unchanged state is not written."""
        path = tmp_path / "state.json"
        state = PersistedState.load(path)

        assert state.save() is False
        assert not path.exists()

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Test that the atomic write cleans up after itself."""
        path = tmp_path / "state.json"
        state = PersistedState.load(path)
        state.set_binding(_binding())
        state.save()

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_save_without_path(self) -> None:
        """Test that saving needs a path."""
        state = PersistedState.empty()
        state.set_binding(_binding())
        with pytest.raises(StateError):
            state.save()

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test that corrupt state is reported."""
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateError, match="Invalid JSON"):
            PersistedState.load(path)

    def test_unsupported_version(self, tmp_path: Path) -> None:
        """Test that unknown state versions are rejected."""
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99}))
        with pytest.raises(StateError, match="Unsupported state format version"):
            PersistedState.load(path)
