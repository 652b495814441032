"""Environment-driven entry point.

Reads configuration from the environment (see `Config.from_env`), runs one
reconciliation pass and exits. Intended for schedulers and CI pipelines; the
interactive interface is `orgsync.cli`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .errors import (
    FailureToleranceExceededError,
    OrgFormationError,
    TaskRunnerError,
)
from .reconciler import update_organization
from .writer import DryRunWriter, OrganizationWriter, load_writer

_HANDLER_NAME = "orgsync"

# LogRecord attributes that are not user supplied `extra` fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", log_level: str = "INFO") -> None:
    """Configure root logging: JSON for machines, plain text for terminals."""
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    handler.set_name(_HANDLER_NAME)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())


def create_writer(config: Config) -> OrganizationWriter:
    if config.dry_run:
        return DryRunWriter()
    assert config.writer is not None
    return load_writer(config.writer)


async def main() -> int:
    """Run one reconciliation pass.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_format, config.log_level)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting organization reconciliation",
        extra={
            "template_file": str(config.template_file),
            "state_file": str(config.state_file),
            "max_concurrent_tasks": config.max_concurrent_tasks,
            "failed_tasks_tolerance": config.failed_tasks_tolerance,
            "dry_run": config.dry_run,
        },
    )

    try:
        writer = create_writer(config)
        result = await update_organization(config, writer)
    except FailureToleranceExceededError as e:
        logger.error(
            "Failure tolerance exceeded",
            extra={"error": str(e), "total_failed": e.total_failed, "tolerance": e.tolerance},
        )
        return 1
    except TaskRunnerError as e:
        # Structural graph error, nothing was executed
        logger.error("Invalid task graph", extra={"error": str(e)})
        return 1
    except OrgFormationError as e:
        logger.error(
            "Reconciliation failed", extra={"error": str(e), "error_type": type(e).__name__}
        )
        return 1
    except Exception as e:
        logger.exception("Unexpected error during reconciliation", extra={"error": str(e)})
        return 1

    return 0 if result.success else 1


def run() -> None:
    """Entry point for env-driven runs."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
