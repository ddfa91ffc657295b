"""Command line entry point for the insert matrix.

Example:
    $ insert-matrix list
    $ insert-matrix run partition_day
    $ insert-matrix run --catalog rest --skip hash --jobs 1
"""

from __future__ import annotations

from pathlib import Path

import click
import structlog

from insert_matrix import __version__
from insert_matrix.errors import MatrixError
from insert_matrix.instance import ScenarioInstance
from insert_matrix.logging import configure_logging
from insert_matrix.matrix import (
    DEFAULT_CATALOGS,
    build_matrix,
    default_scenarios,
    run_matrix,
    select_instances,
)
from insert_matrix.models import InstanceResult, MatrixSettings, Outcome

logger = structlog.get_logger(__name__)

_RESULT_LABELS = {
    Outcome.PASS: "ok",
    Outcome.FAIL: "FAILED",
    Outcome.SETUP_ERROR: "SETUP ERROR",
}


def format_result(result: InstanceResult) -> str:
    """One result line, e.g. ``test <name> ... ok``."""
    line = f"test {result.name} ... {_RESULT_LABELS[result.outcome]}"
    if result.passed:
        return line
    if result.phase is not None:
        return f"{line} ({result.phase.value}: {result.error})"
    return f"{line} ({result.error})"


def _build(
    catalogs: tuple[str, ...],
    scenarios: tuple[Path, ...],
    settings: MatrixSettings,
) -> list[ScenarioInstance]:
    return build_matrix(
        list(catalogs) or list(DEFAULT_CATALOGS),
        list(scenarios) or default_scenarios(settings),
        settings,
    )


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="insert-matrix")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum log level.",
)
@click.option(
    "--json-logs/--console-logs",
    default=False,
    help="Render logs as JSON lines.",
)
def cli(log_level: str, json_logs: bool) -> None:
    """insert-matrix - transactional insert tests across Iceberg catalogs."""
    configure_logging(log_level=log_level, json_output=json_logs)


_catalog_option = click.option(
    "--catalog",
    "-c",
    "catalogs",
    multiple=True,
    help="Catalog selector (repeatable). Defaults to storage and rest.",
)
_scenario_option = click.option(
    "--scenario",
    "-s",
    "scenarios",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Scenario file (repeatable). Defaults to the bundled scenarios.",
)


@cli.command("list")
@_catalog_option
@_scenario_option
def list_command(catalogs: tuple[str, ...], scenarios: tuple[Path, ...]) -> None:
    """List test instance names without running anything."""
    try:
        instances = _build(catalogs, scenarios, MatrixSettings())
    except MatrixError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(2) from e
    for instance in instances:
        click.echo(f"{instance.describe().name}: test")


@cli.command("run")
@click.argument("filters", nargs=-1)
@click.option("--exact", is_flag=True, default=False, help="Match filters exactly.")
@click.option("--skip", multiple=True, help="Skip instances containing this (repeatable).")
@_catalog_option
@_scenario_option
@click.option(
    "--jobs",
    "-j",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum concurrently active environments. Defaults to INSERT_MATRIX_MAX_WORKERS or 2.",
)
@click.option(
    "--list",
    "list_only",
    is_flag=True,
    default=False,
    help="List the selected instances and exit.",
)
def run_command(
    filters: tuple[str, ...],
    exact: bool,
    skip: tuple[str, ...],
    catalogs: tuple[str, ...],
    scenarios: tuple[Path, ...],
    jobs: int | None,
    list_only: bool,
) -> None:
    """Run the matrix, optionally filtered by instance name.

    Exits 0 only if every selected instance passed.

    Examples:
        $ insert-matrix run
        $ insert-matrix run no_partition_with_storage
        $ insert-matrix run --exact insert_matrix_test_insert_partition_day_with_rest_catalog
    """
    try:
        settings = MatrixSettings()
        instances = select_instances(
            _build(catalogs, scenarios, settings),
            filters,
            exact=exact,
            skip=skip,
        )
    except MatrixError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(2) from e

    if list_only:
        for instance in instances:
            click.echo(f"{instance.describe().name}: test")
        return

    click.echo(f"running {len(instances)} tests")
    report = run_matrix(
        instances,
        max_workers=jobs or settings.max_workers,
        on_result=lambda result: click.echo(format_result(result)),
    )
    click.echo("")
    click.echo(report.summary)
    raise SystemExit(report.exit_code)


def main() -> None:
    """Console script entry point."""
    cli()


__all__ = [
    "cli",
    "format_result",
    "main",
]
