"""Unit tests for the insert-matrix command line."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from insert_matrix import __version__
from insert_matrix.cli import cli, format_result
from insert_matrix.instance import InstanceDescriptor
from insert_matrix.models import InstanceResult, Outcome, Phase

STORAGE = "insert_matrix_test_insert_no_partition_with_storage_catalog"
REST = "insert_matrix_test_insert_no_partition_with_rest_catalog"


class FakeInstance:
    def __init__(self, name: str, outcome: Outcome = Outcome.PASS) -> None:
        self.name = name
        self.outcome = outcome
        self.runs = 0

    def describe(self) -> InstanceDescriptor:
        return InstanceDescriptor(self.name, "storage", "no_partition", Path("no_partition.yaml"))

    def run(self) -> InstanceResult:
        self.runs += 1
        if self.outcome is Outcome.PASS:
            return InstanceResult(name=self.name, outcome=self.outcome)
        return InstanceResult(
            name=self.name, outcome=self.outcome, phase=Phase.VALIDATE, error="mismatch"
        )


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def env(settings: Any) -> dict[str, str]:
    """Point settings at the temporary testdata layout."""
    return {"INSERT_MATRIX_TESTDATA": str(settings.testdata_dir)}


class TestFormatResult:
    @pytest.mark.requirement("cli")
    def test_pass_line(self) -> None:
        line = format_result(InstanceResult(name=STORAGE, outcome=Outcome.PASS))
        assert line == f"test {STORAGE} ... ok"

    @pytest.mark.requirement("cli")
    def test_setup_error_line(self) -> None:
        result = InstanceResult(
            name=REST, outcome=Outcome.SETUP_ERROR, phase=Phase.PROVISION, error="up failed"
        )
        assert format_result(result) == f"test {REST} ... SETUP ERROR (provision: up failed)"

    @pytest.mark.requirement("cli")
    def test_failure_without_phase_shows_error(self) -> None:
        result = InstanceResult(
            name=STORAGE, outcome=Outcome.FAIL, error="escaped", error_type="RuntimeError"
        )
        assert format_result(result) == f"test {STORAGE} ... FAILED (escaped)"


class TestCli:
    @pytest.mark.requirement("cli")
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    @pytest.mark.requirement("cli")
    def test_list_default_matrix(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(cli, ["list"], env=env)

        assert result.exit_code == 0
        lines = [line for line in result.output.splitlines() if line.endswith(": test")]
        assert len(lines) == 16
        assert f"{STORAGE}: test" in lines

    @pytest.mark.requirement("cli")
    def test_list_selected_catalog(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(cli, ["list", "--catalog", "rest"], env=env)
        lines = [line for line in result.output.splitlines() if line.endswith(": test")]
        assert len(lines) == 8
        assert all("_with_rest_catalog" in line for line in lines)

    @pytest.mark.requirement("cli")
    def test_run_list_only_filters(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(
            cli, ["run", "no_partition", "--skip", "rest", "--list"], env=env
        )
        assert result.exit_code == 0
        assert f"{STORAGE}: test" in result.output
        assert REST not in result.output

    @pytest.mark.requirement("cli")
    def test_run_all_pass(self, runner: CliRunner, env: dict[str, str]) -> None:
        instances = [FakeInstance(STORAGE), FakeInstance(REST)]
        with patch("insert_matrix.cli.build_matrix", return_value=instances):
            result = runner.invoke(cli, ["run", "--jobs", "1"], env=env)

        assert result.exit_code == 0
        assert "running 2 tests" in result.output
        assert f"test {STORAGE} ... ok" in result.output
        assert "test result: ok. 2 passed; 0 failed; 0 setup errors" in result.output

    @pytest.mark.requirement("cli")
    def test_run_failure_exit_code(self, runner: CliRunner, env: dict[str, str]) -> None:
        instances = [FakeInstance(STORAGE), FakeInstance(REST, Outcome.FAIL)]
        with patch("insert_matrix.cli.build_matrix", return_value=instances):
            result = runner.invoke(cli, ["run"], env=env)

        assert result.exit_code == 1
        assert f"test {REST} ... FAILED (validate: mismatch)" in result.output
        assert "test result: FAILED. 1 passed; 1 failed; 0 setup errors" in result.output

    @pytest.mark.requirement("cli")
    def test_run_exact_filter(self, runner: CliRunner, env: dict[str, str]) -> None:
        instances = [FakeInstance(STORAGE), FakeInstance(REST)]
        with patch("insert_matrix.cli.build_matrix", return_value=instances):
            result = runner.invoke(cli, ["run", "--exact", REST], env=env)

        assert result.exit_code == 0
        assert instances[0].runs == 0
        assert instances[1].runs == 1

    @pytest.mark.requirement("cli")
    def test_duplicate_scenarios_exit_2(
        self, runner: CliRunner, env: dict[str, str], tmp_path: Path
    ) -> None:
        args = [
            "run",
            "--scenario",
            str(tmp_path / "a" / "x.yaml"),
            "--scenario",
            str(tmp_path / "b" / "x.yaml"),
        ]
        result = runner.invoke(cli, args, env=env)
        assert result.exit_code == 2
        assert "Duplicate test instance name" in result.output

    @pytest.mark.requirement("cli")
    def test_invalid_jobs(self, runner: CliRunner, env: dict[str, str]) -> None:
        result = runner.invoke(cli, ["run", "--jobs", "0"], env=env)
        assert result.exit_code == 2
