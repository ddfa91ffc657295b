"""Scenario instance: one (catalog, scenario) pairing and its lifecycle.

``describe()`` is pure and can be used to list or filter instances without
touching docker. ``run()`` drives the full lifecycle and always returns an
InstanceResult; errors never escape it.

Lifecycle of ``run()``:
    1. provision   - parse selector, load scenario, start the environment
    2. init        - seed reference state with init.py
    3. resolve     - resolve the table through the catalog
    4. write       - write row batches and commit
    5. validate    - check.py for every validation query pair
    6. teardown    - stop the environment, on every exit path

Failures in steps 1-3 are setup errors; failures in 4-5 are test failures.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from insert_matrix.catalog import resolve_table
from insert_matrix.environment import (
    Environment,
    EnvironmentController,
    unique_project_name,
)
from insert_matrix.errors import EnvironmentTeardownError
from insert_matrix.models import (
    SPARK_CONNECT_SERVER_PORT,
    CatalogKind,
    InstanceResult,
    MatrixSettings,
    Outcome,
    Phase,
    ScenarioSpec,
)
from insert_matrix.scenario import load_scenario, scenario_id
from insert_matrix.scripts import CHECK_SCRIPT, INIT_SCRIPT, ScriptRunner
from insert_matrix.telemetry import get_tracer, tag_span
from insert_matrix.writer import write_and_commit

if TYPE_CHECKING:
    from pyiceberg.table import Table

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InstanceDescriptor:
    """Side-effect-free description of a scenario instance."""

    name: str
    catalog: str
    scenario: str
    scenario_path: Path


class _PhaseFailure(Exception):
    """Carries the phase a lifecycle error happened in."""

    def __init__(self, phase: Phase, error: Exception) -> None:
        super().__init__(str(error))
        self.phase = phase
        self.error = error


class ScenarioInstance:
    """One runnable (catalog, scenario) test instance.

    Args:
        name: Unique, human-readable instance name.
        catalog: Catalog selector string; validated when the instance runs.
        scenario_path: Path of the scenario resource.
        settings: Matrix settings.
        controller: Environment controller, shared between instances.
        scripts: Script runner. Defaults to one built from settings.
    """

    def __init__(
        self,
        name: str,
        catalog: str,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        scripts: ScriptRunner | None = None,
    ) -> None:
        self._name = name
        self._catalog = catalog
        self._scenario_path = Path(scenario_path)
        self._settings = settings
        self._controller = controller
        self._scripts = scripts or ScriptRunner(
            settings.scripts_dir,
            settings.python,
            timeout=settings.script_timeout,
        )
        self._log = logger.bind(instance=name)

    @property
    def name(self) -> str:
        return self._name

    def describe(self) -> InstanceDescriptor:
        """Describe the instance without provisioning or reading anything."""
        return InstanceDescriptor(
            name=self._name,
            catalog=self._catalog,
            scenario=scenario_id(self._scenario_path),
            scenario_path=self._scenario_path,
        )

    def run(self) -> InstanceResult:
        """Run the full lifecycle and report its outcome."""
        started = time.monotonic()
        self._log.info("instance_started", catalog=self._catalog, scenario=str(self._scenario_path))

        with (
            structlog.contextvars.bound_contextvars(instance=self._name),
            get_tracer().start_as_current_span("instance.run") as span,
        ):
            tag_span(span, instance=self._name, catalog=self._catalog)
            result = self._run_lifecycle(started)
            tag_span(
                span,
                outcome=result.outcome.value,
                phase=result.phase.value if result.phase else None,
            )

        log_method = self._log.info if result.passed else self._log.error
        log_method(
            "instance_finished",
            outcome=result.outcome.value,
            phase=result.phase.value if result.phase else None,
            error=result.error,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    def _run_lifecycle(self, started: float) -> InstanceResult:
        env: Environment | None = None
        failure: _PhaseFailure | None = None

        try:
            kind, scenario, env = self._provision()
            self._step(Phase.INIT, self._init_reference, env, scenario)
            table = self._step(Phase.RESOLVE, resolve_table, kind, env, scenario, self._settings)
            self._step(Phase.WRITE, self._write, table, scenario)
            self._step(Phase.VALIDATE, self._validate, env, scenario)
        except _PhaseFailure as e:
            failure = e
        finally:
            if env is not None:
                try:
                    self._controller.stop(env)
                except EnvironmentTeardownError as e:
                    self._log.error("teardown_failed", error=str(e))
                    if failure is None:
                        failure = _PhaseFailure(Phase.TEARDOWN, e)

        duration = time.monotonic() - started
        if failure is None:
            return InstanceResult(
                name=self._name,
                outcome=Outcome.PASS,
                duration_seconds=duration,
            )
        return InstanceResult(
            name=self._name,
            outcome=Outcome.SETUP_ERROR if failure.phase.is_setup else Outcome.FAIL,
            phase=failure.phase,
            error=str(failure.error),
            error_type=type(failure.error).__name__,
            duration_seconds=duration,
        )

    def _step(self, phase: Phase, fn: Callable[..., T], *args: Any) -> T:
        self._log.debug("phase_started", phase=phase.value)
        try:
            return fn(*args)
        except Exception as e:
            raise _PhaseFailure(phase, e) from e

    def _provision(self) -> tuple[CatalogKind, ScenarioSpec, Environment]:
        def provision() -> tuple[CatalogKind, ScenarioSpec, Environment]:
            kind = CatalogKind.parse(self._catalog)
            scenario = load_scenario(self._scenario_path)
            env = self._controller.start(unique_project_name(self._name), kind.topology)
            return kind, scenario, env

        return self._step(Phase.PROVISION, provision)

    def spark_connect_url(self, env: Environment) -> str:
        """Spark Connect URL of the environment's reference engine."""
        return f"sc://{env.host_of('spark')}:{SPARK_CONNECT_SERVER_PORT}"

    def _init_reference(self, env: Environment, scenario: ScenarioSpec) -> None:
        if not scenario.init_sqls:
            self._log.debug("no_init_statements")
            return
        args = ["-s", self.spark_connect_url(env), "--sql", *scenario.init_sqls]
        self._scripts.run(INIT_SCRIPT, args, f"Init {scenario.table.identifier} with spark")

    def _write(self, table: Table, scenario: ScenarioSpec) -> None:
        write_and_commit(table, scenario.record_batches())

    def _validate(self, env: Environment, scenario: ScenarioSpec) -> None:
        url = self.spark_connect_url(env)
        for query in scenario.query_sql:
            self._scripts.run(
                CHECK_SCRIPT,
                ["-s", url, "-q1", query.expected, "-q2", query.actual],
                f"Check {query.expected}",
            )


__all__ = [
    "InstanceDescriptor",
    "ScenarioInstance",
]
