"""Scenario matrix: build, filter and run (catalog x scenario) instances.

The matrix is built from explicit catalog and scenario lists, so there is no
process-wide test registry. Instances are independent and run on a bounded
thread pool; one instance failing never stops the others.

Example:
    >>> from insert_matrix.matrix import build_matrix, run_matrix, default_scenarios
    >>> from insert_matrix.models import MatrixSettings
    >>> settings = MatrixSettings()
    >>> instances = build_matrix(["storage", "rest"], default_scenarios(settings), settings)
    >>> report = run_matrix(instances, max_workers=settings.max_workers)
    >>> raise SystemExit(report.exit_code)
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import structlog

from insert_matrix.environment import EnvironmentController
from insert_matrix.errors import ConfigurationError
from insert_matrix.instance import ScenarioInstance
from insert_matrix.models import InstanceResult, MatrixReport, MatrixSettings, Outcome
from insert_matrix.scenario import scenario_id
from insert_matrix.scripts import ScriptRunner

logger = structlog.get_logger(__name__)

NAME_PREFIX = "insert_matrix"

DEFAULT_CATALOGS: tuple[str, ...] = ("storage", "rest")

DEFAULT_SCENARIO_FILES: tuple[str, ...] = (
    "no_partition.yaml",
    "partition_identity.yaml",
    "partition_year.yaml",
    "partition_month.yaml",
    "partition_day.yaml",
    "partition_hour.yaml",
    "partition_hash.yaml",
    "partition_truncate.yaml",
)


def default_scenarios(settings: MatrixSettings) -> list[Path]:
    """Paths of the bundled scenario resources."""
    return [settings.scenarios_dir / name for name in DEFAULT_SCENARIO_FILES]


def normalize_test_name(raw: str) -> str:
    """Lowercase a name and squash every non-alphanumeric run into '_'.

    Example:
        >>> normalize_test_name("insert_matrix_test_insert_no_partition.yaml_with_rest_catalog")
        'insert_matrix_test_insert_no_partition_yaml_with_rest_catalog'
    """
    return re.sub(r"[^a-z0-9]+", "_", raw.lower()).strip("_")


def instance_name(catalog: str, scenario_path: str | Path) -> str:
    """Unique, human-readable name of a (catalog, scenario) pairing."""
    return normalize_test_name(
        f"{NAME_PREFIX}_test_insert_{scenario_id(scenario_path)}_with_{catalog}_catalog"
    )


def build_matrix(
    catalogs: Sequence[str],
    scenarios: Sequence[str | Path],
    settings: MatrixSettings,
    controller: EnvironmentController | None = None,
    scripts: ScriptRunner | None = None,
) -> list[ScenarioInstance]:
    """Expand catalogs x scenarios into scenario instances.

    Nothing is provisioned or read here; catalog selectors are validated when
    each instance runs, so one bad selector only fails its own instances.

    Args:
        catalogs: Catalog selectors, e.g. ["storage", "rest"].
        scenarios: Scenario resource paths.
        settings: Matrix settings shared by all instances.
        controller: Environment controller shared by all instances.
        scripts: Script runner shared by all instances.

    Returns:
        Instances in catalog-major order.

    Raises:
        ConfigurationError: If two pairings derive the same name.
    """
    controller = controller or EnvironmentController(settings)
    instances: list[ScenarioInstance] = []
    seen: set[str] = set()

    for catalog in catalogs:
        for scenario in scenarios:
            name = instance_name(catalog, scenario)
            if name in seen:
                msg = f"Duplicate test instance name: {name}"
                raise ConfigurationError(
                    msg, details={"catalog": catalog, "scenario": str(scenario)}
                )
            seen.add(name)
            instances.append(
                ScenarioInstance(
                    name=name,
                    catalog=catalog,
                    scenario_path=Path(scenario),
                    settings=settings,
                    controller=controller,
                    scripts=scripts,
                )
            )
    return instances


def select_instances(
    instances: Iterable[ScenarioInstance],
    filters: Sequence[str] = (),
    *,
    exact: bool = False,
    skip: Sequence[str] = (),
) -> list[ScenarioInstance]:
    """Select instances by name, using ``describe()`` only.

    Args:
        instances: Candidate instances.
        filters: Keep instances whose name contains (or, with exact, equals)
            any filter. No filters keeps everything.
        exact: Match filters against the whole name.
        skip: Drop instances whose name contains any of these.

    Returns:
        Selected instances, in input order.
    """

    def matches(name: str, pattern: str) -> bool:
        return name == pattern if exact else pattern in name

    selected = []
    for instance in instances:
        name = instance.describe().name
        if filters and not any(matches(name, f) for f in filters):
            continue
        if any(s in name for s in skip):
            continue
        selected.append(instance)
    return selected


def _run_isolated(instance: ScenarioInstance) -> InstanceResult:
    """Run one instance; anything escaping it is recorded, not raised."""
    try:
        return instance.run()
    except Exception as e:
        logger.exception("instance_crashed", instance=instance.name)
        return InstanceResult(
            name=instance.name,
            outcome=Outcome.FAIL,
            error=str(e),
            error_type=type(e).__name__,
        )


def run_matrix(
    instances: Sequence[ScenarioInstance],
    max_workers: int = 2,
    on_result: Callable[[InstanceResult], None] | None = None,
) -> MatrixReport:
    """Run instances concurrently and aggregate their outcomes.

    Args:
        instances: Instances to run.
        max_workers: Maximum number of instances (and so environments)
            active at the same time.
        on_result: Called with each result as soon as it is available.

    Returns:
        MatrixReport with results in the order of ``instances``.
    """
    if max_workers < 1:
        msg = f"max_workers must be at least 1, got {max_workers}"
        raise ConfigurationError(msg)

    logger.info("matrix_started", instances=len(instances), max_workers=max_workers)
    results: dict[int, InstanceResult] = {}

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="insert-matrix") as pool:
        futures = {
            pool.submit(_run_isolated, instance): index
            for index, instance in enumerate(instances)
        }
        for future in as_completed(futures):
            result = future.result()
            results[futures[future]] = result
            if on_result is not None:
                on_result(result)

    report = MatrixReport(results=tuple(results[index] for index in range(len(instances))))
    logger.info(
        "matrix_finished",
        passed=report.count(Outcome.PASS),
        failed=report.count(Outcome.FAIL),
        setup_errors=report.count(Outcome.SETUP_ERROR),
        exit_code=report.exit_code,
    )
    return report


__all__ = [
    "DEFAULT_CATALOGS",
    "DEFAULT_SCENARIO_FILES",
    "build_matrix",
    "default_scenarios",
    "instance_name",
    "normalize_test_name",
    "run_matrix",
    "select_instances",
]
