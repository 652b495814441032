"""Configuration management with validation.

Limits are enforced at configuration load time so a reconciliation run never
starts with an unbounded worker pool or a nonsensical failure budget.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

__all__ = ["Config", "ConfigurationError"]

# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENT_TASKS = 1
MIN_MAX_CONCURRENT_TASKS = 1
MAX_MAX_CONCURRENT_TASKS = 100

DEFAULT_FAILED_TASKS_TOLERANCE = 0
MAX_FAILED_TASKS_TOLERANCE = 1000

DEFAULT_TEMPLATE_FILE = "organization.yaml"
DEFAULT_STATE_FILE = "state.json"

# File size limits
MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max organization template
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file

LOG_FORMATS = ("json", "text")

# module:attribute, e.g. "mycompany.writers:build_writer"
VALID_WRITER_PATTERN = r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$"


@dataclass(frozen=True)
class Config:
    """Reconciliation configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Paths
    template_file: Path = field(default_factory=lambda: Path(DEFAULT_TEMPLATE_FILE))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Task runner
    max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS
    failed_tasks_tolerance: int = DEFAULT_FAILED_TASKS_TOLERANCE

    # Behavior
    dry_run: bool = False
    writer: str | None = None

    # Logging
    log_format: str = "json"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_MAX_CONCURRENT_TASKS <= self.max_concurrent_tasks <= MAX_MAX_CONCURRENT_TASKS
        ):
            errors.append(
                f"MAX_CONCURRENT_TASKS must be between {MIN_MAX_CONCURRENT_TASKS} "
                f"and {MAX_MAX_CONCURRENT_TASKS}"
            )

        if not (0 <= self.failed_tasks_tolerance <= MAX_FAILED_TASKS_TOLERANCE):
            errors.append(
                f"FAILED_TASKS_TOLERANCE must be between 0 and {MAX_FAILED_TASKS_TOLERANCE}"
            )

        if self.writer is not None and not re.match(VALID_WRITER_PATTERN, self.writer):
            errors.append(f"ORGSYNC_WRITER must look like 'module:attribute': {self.writer}")

        if not self.dry_run and self.writer is None:
            errors.append("ORGSYNC_WRITER is required unless DRY_RUN is enabled")

        if self.log_format not in LOG_FORMATS:
            errors.append(f"LOG_FORMAT must be one of {list(LOG_FORMATS)}: {self.log_format}")

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            errors.append(f"LOG_LEVEL is not a valid logging level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            ORGSYNC_TEMPLATE_FILE: Organization template (default: organization.yaml)
            ORGSYNC_STATE_FILE: Persisted state file (default: state.json)
            MAX_CONCURRENT_TASKS: Tasks allowed in flight at once (default: 1)
            FAILED_TASKS_TOLERANCE: Failed tasks tolerated before aborting (default: 0)
            DRY_RUN: If "true", log writer calls instead of performing them (default: false)
            ORGSYNC_WRITER: Writer factory as module:attribute (required unless DRY_RUN)
            LOG_FORMAT: json or text (default: json)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            template_file=Path(os.environ.get("ORGSYNC_TEMPLATE_FILE", DEFAULT_TEMPLATE_FILE)),
            state_file=Path(os.environ.get("ORGSYNC_STATE_FILE", DEFAULT_STATE_FILE)),
            max_concurrent_tasks=get_int("MAX_CONCURRENT_TASKS", DEFAULT_MAX_CONCURRENT_TASKS),
            failed_tasks_tolerance=get_int(
                "FAILED_TASKS_TOLERANCE", DEFAULT_FAILED_TASKS_TOLERANCE
            ),
            dry_run=get_bool("DRY_RUN", False),
            writer=os.environ.get("ORGSYNC_WRITER") or None,
            log_format=os.environ.get("LOG_FORMAT", "json").lower(),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
