"""Scenario definition loader.

Reads a YAML scenario resource into a ScenarioSpec. Loading has no network
or process side effects; every failure is a ScenarioParseError naming the
offending field.

Scenario layout::

    table:
      namespace: s1
      name: t1
    warehouse_root: demo
    init_sqls:
      - CREATE SCHEMA IF NOT EXISTS s1
      - CREATE TABLE s1.t1 (id long, name string) USING iceberg
    columns:
      - {name: id, type: long}
      - {name: name, type: string}
    write_data:
      - [[1, a], [2, b]]
      - [[3, c]]
    query_sql:
      - [SELECT * FROM s1.t1_expected ORDER BY id, SELECT * FROM s1.t1 ORDER BY id]

Example:
    >>> from insert_matrix.scenario import load_scenario
    >>> spec = load_scenario("testdata/scenarios/no_partition.yaml")
    >>> spec.table.identifier
    's1.t1'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pyarrow as pa
import structlog
import yaml
from pydantic import ValidationError

from insert_matrix.errors import ScenarioParseError
from insert_matrix.models import ScenarioSpec

logger = structlog.get_logger(__name__)

SCENARIO_SUFFIXES = (".yaml", ".yml")


def _field_path(loc: tuple[Any, ...]) -> str:
    """Render a pydantic error location as a dotted field path."""
    return ".".join(str(part) for part in loc if part != "") or "<root>"


def parse_scenario(data: Any, source: str | None = None) -> ScenarioSpec:
    """Build a ScenarioSpec from already-decoded scenario data.

    Args:
        data: Decoded scenario mapping.
        source: Origin of the data, for error messages.

    Returns:
        Validated, immutable ScenarioSpec.

    Raises:
        ScenarioParseError: If a required field is missing or malformed, or a
            row does not fit the declared columns.
    """
    if not isinstance(data, dict):
        msg = f"Scenario must be a mapping, got {type(data).__name__}"
        raise ScenarioParseError(msg, source=source)

    try:
        spec = ScenarioSpec.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = _field_path(tuple(first["loc"]))
        msg = f"Invalid scenario field '{field}': {first['msg']}"
        raise ScenarioParseError(msg, field=field, source=source) from e

    for batch_idx, rows in enumerate(spec.write_data):
        if not rows:
            msg = "Row batch must contain at least one row"
            raise ScenarioParseError(msg, field=f"write_data.{batch_idx}", source=source)
        for row_idx, row in enumerate(rows):
            if len(row) != len(spec.columns):
                msg = f"Row has {len(row)} values, expected {len(spec.columns)}"
                raise ScenarioParseError(
                    msg, field=f"write_data.{batch_idx}.{row_idx}", source=source
                )

    # Values that do not fit their column surface here rather than mid-write.
    try:
        spec.record_batches()
    except (ValueError, TypeError, pa.ArrowException) as e:
        msg = f"Row batch does not match columns: {e}"
        raise ScenarioParseError(msg, field="write_data", source=source) from e

    return spec


def load_scenario(path: str | Path) -> ScenarioSpec:
    """Load a scenario resource from a YAML file.

    Args:
        path: Path to the scenario file.

    Returns:
        Validated, immutable ScenarioSpec.

    Raises:
        ScenarioParseError: If the file cannot be read, is not valid YAML,
            or does not describe a valid scenario.
    """
    path = Path(path)
    source = str(path)
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        msg = f"Cannot read scenario: {e}"
        raise ScenarioParseError(msg, source=source) from e
    except yaml.YAMLError as e:
        msg = f"Invalid YAML: {e}"
        raise ScenarioParseError(msg, source=source) from e

    spec = parse_scenario(data, source=source)
    logger.debug(
        "scenario_loaded",
        source=source,
        table=spec.table.identifier,
        batches=len(spec.write_data),
        rows=spec.row_count,
        validations=len(spec.query_sql),
    )
    return spec


def scenario_id(path: str | Path) -> str:
    """Identifier of a scenario resource: its file name without suffix."""
    return Path(path).stem


__all__ = [
    "SCENARIO_SUFFIXES",
    "load_scenario",
    "parse_scenario",
    "scenario_id",
]
