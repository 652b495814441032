"""Tests for workload plugins."""

from pathlib import Path

import pytest

from orgsync.binder import BindingAction
from orgsync.errors import FailureToleranceExceededError, StateError
from orgsync.plugin import (
    PluginBinder,
    PluginBinding,
    Workload,
    WorkloadPlugin,
    WorkloadTarget,
    perform_workload,
    workload_hash,
)
from orgsync.state import PersistedState, TargetRecord

EU = WorkloadTarget("222222222222", "eu-west-1")
US = WorkloadTarget("222222222222", "us-east-1")
OPS = WorkloadTarget("333333333333")


class RecordingPlugin:
    """Plugin that records deployments and can fail per target."""

    type = "update-stacks"

    def __init__(self, failing: set[str] | None = None) -> None:
        self.deployed: list[str] = []
        self.deleted: list[str] = []
        self.failing = failing or set()

    async def perform_create_or_update(self, binding: PluginBinding) -> None:
        if binding.target.key in self.failing:
            raise RuntimeError(f"deploy to {binding.target.key} failed")
        self.deployed.append(binding.target.key)

    async def perform_delete(self, binding: PluginBinding) -> None:
        self.deleted.append(binding.target.key)


def _record(target: WorkloadTarget, hash_: str) -> TargetRecord:
    return TargetRecord(
        type="update-stacks",
        name="baseline",
        account_id=target.account_id,
        region=target.region,
        last_committed_hash=hash_,
    )


class TestWorkloadHash:
    """Tests for workload_hash."""

    def test_organization_file_hash_included(self) -> None:
        """Test that an organization change invalidates the workload."""
        values = {"template": "a", "parameters": {"x": 1}}
        assert workload_hash(values, "org-1") != workload_hash(values, "org-2")
        assert workload_hash(values, "org-1") == workload_hash(dict(values), "org-1")


class TestPluginBinder:
    """Tests for PluginBinder."""

    def test_plugin_protocol(self) -> None:
        """Test that the recording plugin satisfies the plugin protocol."""
        assert isinstance(RecordingPlugin(), WorkloadPlugin)

    def test_bindings(self) -> None:
        """Test the four-way rule per target."""
        state = PersistedState.empty()
        state.set_target(_record(EU, "h1"))
        state.set_target(_record(US, "old"))
        state.set_target(_record(OPS, "h1"))
        workload = Workload(name="baseline", hash="h1", targets=(EU, US))

        bindings = PluginBinder(workload, state, RecordingPlugin()).enum_bindings()

        assert [(b.action, b.target.key) for b in bindings] == [
            (BindingAction.NONE, "222222222222/eu-west-1"),
            (BindingAction.UPDATE, "222222222222/us-east-1"),
            (BindingAction.DELETE, "333333333333"),
        ]

    def test_duplicate_targets_bound_once(self) -> None:
        """Test that a target listed twice yields a single task."""
        workload = Workload(name="baseline", hash="h1", targets=(EU, EU))

        tasks = PluginBinder(workload, PersistedState.empty(), RecordingPlugin()).enum_tasks()

        assert [(t.action, t.target) for t in tasks] == [("Create", "222222222222/eu-west-1")]


class TestPerformWorkload:
    """Tests for perform_workload."""

    @pytest.mark.asyncio
    async def test_deploy_and_prune(self, tmp_path: Path) -> None:
        """Test that targets are deployed, stale ones removed and state saved."""
        path = tmp_path / "state.json"
        state = PersistedState.load(path)
        state.set_target(_record(OPS, "h0"))
        plugin = RecordingPlugin()
        workload = Workload(name="baseline", hash="h1", targets=(EU, US))

        result = await perform_workload(workload, plugin, state, max_concurrent_tasks=2)

        assert result is not None
        assert sorted(plugin.deployed) == ["222222222222/eu-west-1", "222222222222/us-east-1"]
        assert plugin.deleted == ["333333333333"]

        saved = PersistedState.load(path)
        assert [r.key for r in saved.enum_targets("update-stacks", "baseline")] == [
            "222222222222/eu-west-1",
            "222222222222/us-east-1",
        ]

    @pytest.mark.asyncio
    async def test_up_to_date(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that nothing runs when every target is committed."""
        state = PersistedState.empty()
        state.set_target(_record(EU, "h1"))
        plugin = RecordingPlugin()

        with caplog.at_level("INFO", logger="orgsync.plugin"):
            result = await perform_workload(
                Workload(name="baseline", hash="h1", targets=(EU,)), plugin, state
            )

        assert result is None
        assert plugin.deployed == []
        assert "update-stacks workload baseline already up to date." in caplog.messages

    @pytest.mark.asyncio
    async def test_state_saved_on_failure(self, tmp_path: Path) -> None:
        """Test that successful targets are persisted even when the run aborts."""
        path = tmp_path / "state.json"
        state = PersistedState.load(path)
        plugin = RecordingPlugin(failing={"222222222222/eu-west-1"})
        workload = Workload(name="baseline", hash="h1", targets=(US, EU))

        with pytest.raises(FailureToleranceExceededError):
            await perform_workload(workload, plugin, state)

        saved = PersistedState.load(path)
        assert saved.get_target("update-stacks", "baseline", US.account_id, US.region) is not None
        assert saved.get_target("update-stacks", "baseline", EU.account_id, EU.region) is None

    @pytest.mark.asyncio
    async def test_state_without_file_rejected_before_deploying(self) -> None:
        """Test that pending work without a state file fails before any deployment."""
        plugin = RecordingPlugin()

        with pytest.raises(StateError, match="No state file"):
            await perform_workload(
                Workload(name="baseline", hash="h1", targets=(EU,)), plugin, PersistedState.empty()
            )

        assert plugin.deployed == []

    @pytest.mark.asyncio
    async def test_explicit_state_file(self, tmp_path: Path) -> None:
        """Test that in-memory state is saved to an explicitly given file."""
        path = tmp_path / "workloads.json"

        await perform_workload(
            Workload(name="baseline", hash="h1", targets=(EU,)),
            RecordingPlugin(),
            PersistedState.empty(),
            state_file=path,
        )

        saved = PersistedState.load(path)
        assert saved.get_target("update-stacks", "baseline", EU.account_id, EU.region) is not None
