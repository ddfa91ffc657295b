"""Unit tests for the scenario instance lifecycle.

The environment controller runs against a fake docker runner; catalog
resolution and the write path are patched, so every lifecycle phase can be
failed in isolation.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import yaml

from insert_matrix.environment import EnvironmentController
from insert_matrix.errors import (
    CatalogResolutionError,
    CommitConflictError,
    ValidationScriptError,
)
from insert_matrix.instance import ScenarioInstance
from insert_matrix.models import MatrixSettings, Outcome, Phase
from insert_matrix.scripts import CHECK_SCRIPT, INIT_SCRIPT

IPS = {"minio": "172.18.0.2", "spark": "172.18.0.3", "rest": "172.18.0.4"}


class FakeDocker:
    def __init__(self, fail_down: bool = False) -> None:
        self.fail_down = fail_down
        self.ups = 0
        self.downs = 0

    def __call__(self, args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        if args[0] == "inspect":
            return subprocess.CompletedProcess(args, 0, IPS[args[-1]], "")
        command = args[5]
        if command == "up":
            self.ups += 1
        elif command == "down":
            self.downs += 1
            return subprocess.CompletedProcess(args, 1 if self.fail_down else 0, "", "down failed")
        elif command == "ps":
            return subprocess.CompletedProcess(args, 0, args[-1], "")
        return subprocess.CompletedProcess(args, 0, "", "")


class FakeScripts:
    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.fail_on = fail_on

    def run(self, script_name: str, args: list[str], description: str) -> None:
        self.calls.append((script_name, list(args)))
        if script_name == self.fail_on:
            msg = f"{description}: script exited with status 1"
            raise ValidationScriptError(msg, script=script_name, returncode=1)


@pytest.fixture
def scenario_path(settings: MatrixSettings, scenario_data: dict[str, Any]) -> Path:
    path = settings.scenarios_dir / "no_partition.yaml"
    path.write_text(yaml.safe_dump(scenario_data, sort_keys=False))
    return path


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def controller(settings: MatrixSettings, docker: FakeDocker) -> EnvironmentController:
    return EnvironmentController(settings, runner=docker, ready_check=lambda *args: None)


@pytest.fixture
def scripts() -> FakeScripts:
    return FakeScripts()


@pytest.fixture
def patched_io() -> Any:
    """Patch table resolution and the write path."""
    with (
        patch("insert_matrix.instance.resolve_table") as resolve,
        patch("insert_matrix.instance.write_and_commit") as write,
    ):
        resolve.return_value = MagicMock(name="table")
        yield resolve, write


def _instance(
    catalog: str,
    scenario_path: Path,
    settings: MatrixSettings,
    controller: EnvironmentController,
    scripts: FakeScripts,
) -> ScenarioInstance:
    return ScenarioInstance(
        name=f"insert_matrix_test_insert_no_partition_with_{catalog}_catalog",
        catalog=catalog,
        scenario_path=scenario_path,
        settings=settings,
        controller=controller,
        scripts=scripts,  # type: ignore[arg-type]
    )


class TestDescribe:
    @pytest.mark.requirement("matrix")
    def test_describe_has_no_side_effects(
        self, settings: MatrixSettings, controller: EnvironmentController, docker: FakeDocker
    ) -> None:
        instance = _instance(
            "storage", settings.scenarios_dir / "absent.yaml", settings, controller, FakeScripts()
        )
        descriptor = instance.describe()

        assert descriptor.name == "insert_matrix_test_insert_no_partition_with_storage_catalog"
        assert descriptor.scenario == "absent"
        assert descriptor.catalog == "storage"
        assert docker.ups == 0


class TestRun:
    @pytest.mark.requirement("lifecycle")
    @pytest.mark.parametrize("catalog", ["storage", "rest"])
    def test_pass(
        self,
        catalog: str,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        resolve, write = patched_io
        result = _instance(catalog, scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.PASS
        assert result.phase is None
        assert result.duration_seconds >= 0.0
        assert docker.ups == 1
        assert docker.downs == 1
        assert controller.active_count == 0

        init, check = scripts.calls
        assert init[0] == INIT_SCRIPT
        assert init[1][:3] == ["-s", "sc://172.18.0.3:15002", "--sql"]
        assert init[1][3:] == [
            "CREATE SCHEMA IF NOT EXISTS s1",
            "CREATE TABLE s1.t1 (id long, name string) USING iceberg",
        ]
        assert check == (
            CHECK_SCRIPT,
            [
                "-s",
                "sc://172.18.0.3:15002",
                "-q1",
                "SELECT 8",
                "-q2",
                "SELECT count(*) FROM s1.t1",
            ],
        )

        batches = write.call_args.args[1]
        assert [b.num_rows for b in batches] == [3, 5]
        assert write.call_args.args[0] is resolve.return_value

    @pytest.mark.requirement("lifecycle")
    def test_no_init_statements(
        self,
        settings: MatrixSettings,
        scenario_data: dict[str, Any],
        controller: EnvironmentController,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        del scenario_data["init_sqls"]
        path = settings.scenarios_dir / "bare.yaml"
        path.write_text(yaml.safe_dump(scenario_data))

        result = _instance("storage", path, settings, controller, scripts).run()

        assert result.passed
        assert [name for name, _ in scripts.calls] == [CHECK_SCRIPT]

    @pytest.mark.requirement("outcomes")
    def test_unknown_catalog_is_setup_error(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        scripts: FakeScripts,
    ) -> None:
        result = _instance("hive", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.PROVISION
        assert "Unsupported catalog: hive" in (result.error or "")
        assert docker.ups == 0
        assert docker.downs == 0

    @pytest.mark.requirement("outcomes")
    def test_bad_scenario_is_setup_error(
        self,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        scripts: FakeScripts,
    ) -> None:
        path = settings.scenarios_dir / "broken.yaml"
        path.write_text("table: {namespace: s1}\n")

        result = _instance("storage", path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.error_type == "ScenarioParseError"
        assert docker.ups == 0

    @pytest.mark.requirement("environment-teardown")
    def test_init_failure_tears_down(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        patched_io: Any,
    ) -> None:
        scripts = FakeScripts(fail_on=INIT_SCRIPT)
        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.INIT
        assert docker.downs == 1
        assert controller.active_count == 0

    @pytest.mark.requirement("environment-teardown")
    def test_resolution_failure_is_setup_error(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        resolve, write = patched_io
        resolve.side_effect = CatalogResolutionError("Table not found", table_identifier="s1.t1")

        result = _instance("rest", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.RESOLVE
        assert result.error_type == "CatalogResolutionError"
        write.assert_not_called()
        assert docker.downs == 1

    @pytest.mark.requirement("commit-conflict")
    def test_commit_conflict_is_failure(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        _, write = patched_io
        write.side_effect = CommitConflictError("Commit rejected: branch main changed")

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.FAIL
        assert result.phase is Phase.WRITE
        assert result.error == "Commit rejected: branch main changed"
        assert write.call_count == 1
        assert [name for name, _ in scripts.calls] == [INIT_SCRIPT]
        assert docker.downs == 1

    @pytest.mark.requirement("validation-scripts")
    def test_validation_failure_is_failure(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        docker: FakeDocker,
        patched_io: Any,
    ) -> None:
        scripts = FakeScripts(fail_on=CHECK_SCRIPT)
        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.FAIL
        assert result.phase is Phase.VALIDATE
        assert result.error_type == "ValidationScriptError"
        assert docker.downs == 1

    @pytest.mark.requirement("environment-teardown")
    def test_teardown_failure_after_pass(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        docker = FakeDocker(fail_down=True)
        controller = EnvironmentController(settings, runner=docker, ready_check=lambda *a: None)

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.TEARDOWN
        assert controller.active_count == 0

    @pytest.mark.requirement("environment-teardown")
    def test_teardown_failure_keeps_first_error(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        patched_io: Any,
    ) -> None:
        docker = FakeDocker(fail_down=True)
        controller = EnvironmentController(settings, runner=docker, ready_check=lambda *a: None)
        scripts = FakeScripts(fail_on=CHECK_SCRIPT)

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.FAIL
        assert result.phase is Phase.VALIDATE
        assert docker.downs == 1

    @pytest.mark.requirement("environment-teardown")
    def test_unreachable_docker_on_teardown_keeps_init_error(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        patched_io: Any,
    ) -> None:
        healthy = FakeDocker()

        def daemon_gone(args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
            if args[0] != "inspect" and args[5] == "down":
                raise OSError("docker daemon gone")
            return healthy(args, timeout)

        controller = EnvironmentController(
            settings, runner=daemon_gone, ready_check=lambda *a: None
        )
        scripts = FakeScripts(fail_on=INIT_SCRIPT)

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.INIT
        assert result.error_type == "ValidationScriptError"
        assert controller.active_count == 0

    @pytest.mark.requirement("environment-teardown")
    def test_unreachable_docker_after_pass_is_teardown_error(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        healthy = FakeDocker()

        def daemon_gone(args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
            if args[0] != "inspect" and args[5] == "down":
                raise OSError("docker daemon gone")
            return healthy(args, timeout)

        controller = EnvironmentController(
            settings, runner=daemon_gone, ready_check=lambda *a: None
        )

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.SETUP_ERROR
        assert result.phase is Phase.TEARDOWN
        assert "docker daemon gone" in (result.error or "")

    @pytest.mark.requirement("lifecycle")
    def test_unexpected_error_is_recorded(
        self,
        scenario_path: Path,
        settings: MatrixSettings,
        controller: EnvironmentController,
        scripts: FakeScripts,
        patched_io: Any,
    ) -> None:
        _, write = patched_io
        write.side_effect = RuntimeError("kaboom")

        result = _instance("storage", scenario_path, settings, controller, scripts).run()

        assert result.outcome is Outcome.FAIL
        assert result.error_type == "RuntimeError"
        assert controller.active_count == 0
