"""Root-level test configuration for insert-matrix.

Shared fixtures for unit and integration tests.

Note:
    No __init__.py files in test directories - pytest uses importlib mode
    which causes namespace collisions with __init__.py files.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
import structlog

from insert_matrix.models import MatrixSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent

NO_PARTITION_SCENARIO: dict[str, Any] = {
    "table": {"namespace": "s1", "name": "t1"},
    "warehouse_root": "demo",
    "init_sqls": [
        "CREATE SCHEMA IF NOT EXISTS s1",
        "CREATE TABLE s1.t1 (id long, name string) USING iceberg",
    ],
    "columns": [
        {"name": "id", "type": "long"},
        {"name": "name", "type": "string"},
    ],
    "write_data": [
        [[1, "a"], [2, "b"], [3, "c"]],
        [[4, "d"], [5, "e"], [6, "f"], [7, "g"], [8, "h"]],
    ],
    "query_sql": [
        ["SELECT 8", "SELECT count(*) FROM s1.t1"],
    ],
}


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Undo logging configuration done by a test (e.g. through the CLI)."""
    yield
    structlog.reset_defaults()


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Path to the repository root."""
    return PROJECT_ROOT


@pytest.fixture
def scenario_data() -> dict[str, Any]:
    """A valid, unpartitioned scenario mapping (fresh copy per test)."""
    import copy

    return copy.deepcopy(NO_PARTITION_SCENARIO)


@pytest.fixture
def testdata_dir(tmp_path: Path) -> Path:
    """Empty testdata layout with compose files and scripts in place."""
    for topology in ("iceberg-fs", "iceberg-rest"):
        compose_dir = tmp_path / "docker" / topology
        compose_dir.mkdir(parents=True)
        (compose_dir / "docker-compose.yml").write_text("services: {}\n")
    scripts_dir = tmp_path / "python"
    scripts_dir.mkdir()
    (scripts_dir / "init.py").write_text("")
    (scripts_dir / "check.py").write_text("")
    (tmp_path / "scenarios").mkdir()
    return tmp_path


@pytest.fixture
def settings(testdata_dir: Path) -> MatrixSettings:
    """Settings pointing at the temporary testdata layout."""
    return MatrixSettings(
        testdata_dir=testdata_dir,
        max_workers=2,
        ready_timeout=5.0,
        command_timeout=5.0,
        script_timeout=5.0,
        python="python3",
    )
