"""Persisted reconciliation state.

State records which template resources are bound to which remote resources
and the content hash that was last committed for each of them. It is the only
data that survives between runs. Tasks mutate it in memory; the caller is
responsible for calling `save()` once the run is over, on every exit path.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES
from .errors import StateError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


def _type_key(resource_type: str | Enum) -> str:
    return resource_type.value if isinstance(resource_type, Enum) else str(resource_type)


@dataclass(frozen=True)
class StateBinding:
    """A template resource bound to a remote resource."""

    type: str
    logical_id: str
    last_committed_hash: str
    physical_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _type_key(self.type))


@dataclass(frozen=True)
class TargetRecord:
    """A workload deployed to one account/region target."""

    type: str
    name: str
    account_id: str
    last_committed_hash: str
    region: str | None = None

    @property
    def key(self) -> str:
        return f"{self.account_id}/{self.region}" if self.region else self.account_id


class PersistedState:
    """In-memory view of the state file."""

    def __init__(self, data: dict[str, Any] | None = None, path: Path | None = None) -> None:
        data = data or {}
        self._path = path
        self._dirty = False
        self._master_account_id: str | None = data.get("masterAccountId")
        self._previous_template: str | None = data.get("previousTemplate")
        self._bindings: dict[str, dict[str, StateBinding]] = {}
        self._targets: dict[str, dict[str, dict[str, TargetRecord]]] = {}

        for type_key, by_logical_id in (data.get("bindings") or {}).items():
            for logical_id, record in by_logical_id.items():
                self._bindings.setdefault(type_key, {})[logical_id] = StateBinding(
                    type=type_key,
                    logical_id=logical_id,
                    physical_id=record.get("physicalId"),
                    last_committed_hash=record.get("lastCommittedHash", ""),
                )

        for type_key, by_name in (data.get("targets") or {}).items():
            for name, by_target in by_name.items():
                for target_key, record in by_target.items():
                    self._targets.setdefault(type_key, {}).setdefault(name, {})[target_key] = (
                        TargetRecord(
                            type=type_key,
                            name=name,
                            account_id=record["accountId"],
                            region=record.get("region"),
                            last_committed_hash=record.get("lastCommittedHash", ""),
                        )
                    )

    @classmethod
    def empty(cls) -> PersistedState:
        return cls()

    @classmethod
    def load(cls, path: Path) -> PersistedState:
        """Load state from a JSON file. A missing file yields empty state.

        Raises:
            StateError: If the file exists but cannot be read or parsed.
        """
        if not path.exists():
            logger.info("No state file found, starting empty", extra={"state_file": str(path)})
            return cls(path=path)

        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e

        if not content.strip():
            return cls(path=path)

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {path}: {e}") from e

        if not isinstance(data, dict):
            raise StateError(f"State file must contain a JSON object: {path}")

        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateError(f"Unsupported state format version {version} in {path}")

        try:
            return cls(data, path=path)
        except (AttributeError, KeyError, TypeError) as e:
            raise StateError(f"Malformed state file {path}: {e}") from e

    @property
    def dirty(self) -> bool:
        return self._dirty

    # -------------------------------------------------------------------------
    # Organization identity
    # -------------------------------------------------------------------------

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def master_account_id(self) -> str | None:
        return self._master_account_id

    @master_account_id.setter
    def master_account_id(self, value: str | None) -> None:
        if value != self._master_account_id:
            self._master_account_id = value
            self._dirty = True

    # -------------------------------------------------------------------------
    # Bindings
    # -------------------------------------------------------------------------

    def get_binding(self, resource_type: str | Enum, logical_id: str) -> StateBinding | None:
        return self._bindings.get(_type_key(resource_type), {}).get(logical_id)

    def set_binding(self, binding: StateBinding) -> None:
        self._bindings.setdefault(binding.type, {})[binding.logical_id] = binding
        self._dirty = True

    def remove_binding(self, binding: StateBinding) -> None:
        by_logical_id = self._bindings.get(binding.type, {})
        if by_logical_id.pop(binding.logical_id, None) is not None:
            self._dirty = True
        if not by_logical_id:
            self._bindings.pop(binding.type, None)

    def enum_bindings(self, resource_type: str | Enum) -> list[StateBinding]:
        return list(self._bindings.get(_type_key(resource_type), {}).values())

    # -------------------------------------------------------------------------
    # Previous template
    # -------------------------------------------------------------------------

    def get_previous_template(self) -> str | None:
        return self._previous_template

    def set_previous_template(self, contents: str) -> None:
        if contents != self._previous_template:
            self._previous_template = contents
            self._dirty = True

    # -------------------------------------------------------------------------
    # Workload targets
    # -------------------------------------------------------------------------

    def get_target(
        self, target_type: str, name: str, account_id: str, region: str | None = None
    ) -> TargetRecord | None:
        lookup = TargetRecord(target_type, name, account_id, "", region)
        return self._targets.get(target_type, {}).get(name, {}).get(lookup.key)

    def set_target(self, record: TargetRecord) -> None:
        self._targets.setdefault(record.type, {}).setdefault(record.name, {})[record.key] = record
        self._dirty = True

    def remove_target(self, record: TargetRecord) -> None:
        by_name = self._targets.get(record.type, {})
        by_target = by_name.get(record.name, {})
        if by_target.pop(record.key, None) is not None:
            self._dirty = True
        if not by_target:
            by_name.pop(record.name, None)
        if not by_name:
            self._targets.pop(record.type, None)

    def enum_targets(self, target_type: str, name: str) -> list[TargetRecord]:
        return list(self._targets.get(target_type, {}).get(name, {}).values())

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        bindings: dict[str, dict[str, dict[str, Any]]] = {}
        for type_key, by_logical_id in sorted(self._bindings.items()):
            bindings[type_key] = {
                logical_id: {
                    "physicalId": binding.physical_id,
                    "lastCommittedHash": binding.last_committed_hash,
                }
                for logical_id, binding in sorted(by_logical_id.items())
            }

        targets: dict[str, dict[str, dict[str, dict[str, Any]]]] = {}
        for type_key, by_name in sorted(self._targets.items()):
            targets[type_key] = {
                name: {
                    key: {
                        "accountId": record.account_id,
                        "region": record.region,
                        "lastCommittedHash": record.last_committed_hash,
                    }
                    for key, record in sorted(by_target.items())
                }
                for name, by_target in sorted(by_name.items())
            }

        return {
            "version": STATE_FORMAT_VERSION,
            "masterAccountId": self._master_account_id,
            "bindings": bindings,
            "targets": targets,
            "previousTemplate": self._previous_template,
        }

    def save(self, path: Path | None = None) -> bool:
        """Write state to disk if it changed since it was loaded.

        The file is replaced atomically so an interrupted write never leaves
        a truncated state file behind.

        Returns:
            True if the file was written.

        Raises:
            StateError: If no path is known or the write fails.
        """
        target = path or self._path
        if target is None:
            raise StateError("No state file path configured")

        if not self._dirty and target == self._path:
            logger.debug("State unchanged, skipping save", extra={"state_file": str(target)})
            return False

        payload = json.dumps(self.to_dict(), indent=2)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, target)
        except OSError as e:
            raise StateError(f"Failed to write state file {target}: {e}") from e

        self._path = target
        self._dirty = False
        logger.info("State saved", extra={"state_file": str(target)})
        return True
