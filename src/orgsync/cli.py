"""orgsync command line interface.

Usage:
    orgsync plan organization.yaml --state state.json
    orgsync update organization.yaml --state state.json --writer mycorp.aws:Writer
    orgsync update organization.yaml --state state.json --dry-run
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from .config import (
    DEFAULT_FAILED_TASKS_TOLERANCE,
    DEFAULT_MAX_CONCURRENT_TASKS,
    DEFAULT_STATE_FILE,
    MAX_FAILED_TASKS_TOLERANCE,
    MAX_MAX_CONCURRENT_TASKS,
    MIN_MAX_CONCURRENT_TASKS,
    Config,
)
from .errors import OrgFormationError
from .main import create_writer, setup_logging
from .reconciler import plan_organization, update_organization


@click.group()
@click.version_option(version="0.1.0", prog_name="orgsync")
@click.option(
    "--log-format", type=click.Choice(["json", "text"]), default="text", help="Log output format"
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(log_format: str, verbose: bool) -> None:
    """Reconcile an AWS organization with a declarative template.

    \b
    Quick Start:
        orgsync plan organization.yaml      # Show the tasks an update would run
        orgsync update organization.yaml    # Apply them
    """
    setup_logging(log_format, "DEBUG" if verbose else "INFO")


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="Persisted state file",
)
def plan(template: Path, state_file: Path) -> None:
    """Show the tasks an update would run."""
    config = Config(template_file=template, state_file=state_file, dry_run=True)
    try:
        tasks = plan_organization(config)
    except OrgFormationError as e:
        raise click.ClickException(str(e)) from e

    if not tasks:
        click.echo("organization up to date, no work to be done.")
        return

    for task in tasks:
        click.echo(f"{task.action:<10} {task.type:<35} {task.logical_id}")
    click.echo(f"\n{len(tasks)} task(s)")


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="Persisted state file",
)
@click.option(
    "--max-concurrent",
    "max_concurrent_tasks",
    type=click.IntRange(MIN_MAX_CONCURRENT_TASKS, MAX_MAX_CONCURRENT_TASKS),
    default=DEFAULT_MAX_CONCURRENT_TASKS,
    show_default=True,
    help="Tasks allowed to run at the same time",
)
@click.option(
    "--failed-tolerance",
    "failed_tasks_tolerance",
    type=click.IntRange(0, MAX_FAILED_TASKS_TOLERANCE),
    default=DEFAULT_FAILED_TASKS_TOLERANCE,
    show_default=True,
    help="Failed tasks tolerated before the run is aborted",
)
@click.option(
    "--dry-run/--no-dry-run", default=False, help="Log writer calls instead of performing them"
)
@click.option("--writer", envvar="ORGSYNC_WRITER", help="Writer as module:attribute")
def update(
    template: Path,
    state_file: Path,
    max_concurrent_tasks: int,
    failed_tasks_tolerance: int,
    dry_run: bool,
    writer: str | None,
) -> None:
    """Apply the template to the organization.

    \b
    Examples:
        orgsync update organization.yaml --dry-run
        orgsync update organization.yaml --writer mycorp.aws:Writer --max-concurrent 10
    """
    try:
        config = Config(
            template_file=template,
            state_file=state_file,
            max_concurrent_tasks=max_concurrent_tasks,
            failed_tasks_tolerance=failed_tasks_tolerance,
            dry_run=dry_run,
            writer=writer,
        )
        result = asyncio.run(update_organization(config, create_writer(config)))
    except OrgFormationError as e:
        raise click.ClickException(str(e)) from e

    if result.up_to_date:
        click.echo("organization up to date, no work to be done.")
        return

    click.echo(
        f"{result.tasks_succeeded} succeeded, {result.tasks_failed} failed, "
        f"{result.tasks_skipped} skipped"
    )
    if not result.success:
        raise click.ClickException("some tasks did not complete")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
