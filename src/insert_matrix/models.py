"""Pydantic models and enumerations for the insert matrix.

All models are frozen so that a loaded scenario, a resolved catalog
configuration or a recorded result cannot change once built.

Enumerations:
    CatalogKind: Catalog backend selector (storage, rest)
    Topology: Backing service topology realized by the environment controller
    Outcome: Terminal state of a scenario instance
    Phase: Lifecycle step of a scenario instance

Scenario Models:
    TableName, ColumnSpec, ValidationQuery, ScenarioSpec

Catalog Models:
    StorageOptions, RestCatalogConfig

Result Models:
    InstanceResult, MatrixReport

Configuration:
    MatrixSettings

Example:
    >>> from insert_matrix.models import CatalogKind
    >>> CatalogKind.parse("rest").topology
    <Topology.ICEBERG_REST: 'iceberg-rest'>
"""

from __future__ import annotations

import os
import re
import sys
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

import pyarrow as pa
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from insert_matrix.errors import ConfigurationError

# =============================================================================
# Module Constants
# =============================================================================

IDENTIFIER_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"
"""Regex pattern for namespace, table and column names."""

MINIO_DATA_PORT = 9000
REST_CATALOG_PORT = 8181
SPARK_CONNECT_SERVER_PORT = 15002

DEFAULT_TESTDATA_DIR = Path(__file__).resolve().parents[2] / "testdata"

_DECIMAL_PATTERN = re.compile(r"^decimal\(\s*(\d+)\s*,\s*(\d+)\s*\)$")

_ARROW_TYPES: dict[str, pa.DataType] = {
    "boolean": pa.bool_(),
    "int": pa.int32(),
    "long": pa.int64(),
    "float": pa.float32(),
    "double": pa.float64(),
    "string": pa.string(),
    "binary": pa.binary(),
    "date": pa.date32(),
    "timestamp": pa.timestamp("us"),
    "timestamptz": pa.timestamp("us", tz="UTC"),
}


def arrow_type(type_name: str) -> pa.DataType:
    """Map a scenario column type name to an Arrow type.

    Args:
        type_name: One of the names in ``_ARROW_TYPES`` or ``decimal(p,s)``.

    Returns:
        The matching Arrow data type.

    Raises:
        ValueError: If the type name is not recognized.
    """
    normalized = type_name.strip().lower()
    if normalized in _ARROW_TYPES:
        return _ARROW_TYPES[normalized]
    match = _DECIMAL_PATTERN.match(normalized)
    if match:
        return pa.decimal128(int(match.group(1)), int(match.group(2)))
    msg = f"Unsupported column type: {type_name!r}"
    raise ValueError(msg)


def _coerce_value(value: Any, data_type: pa.DataType) -> Any:
    """Convert a scenario literal into a value Arrow accepts for data_type."""
    if value is None:
        return None
    if pa.types.is_date(data_type) and isinstance(value, str):
        return date.fromisoformat(value)
    if pa.types.is_timestamp(data_type) and isinstance(value, str):
        return datetime.fromisoformat(value)
    if pa.types.is_decimal(data_type) and not isinstance(value, Decimal):
        return Decimal(str(value))
    if pa.types.is_binary(data_type) and isinstance(value, str):
        return value.encode("utf-8")
    return value


# =============================================================================
# Enumerations
# =============================================================================


class Topology(str, Enum):
    """Backing service topology.

    Attributes:
        ICEBERG_FS: Object store only; the catalog lives in storage.
        ICEBERG_REST: Object store plus a REST catalog service.
    """

    ICEBERG_FS = "iceberg-fs"
    ICEBERG_REST = "iceberg-rest"

    @property
    def services(self) -> dict[str, int]:
        """Services that must be ready, mapped to their port."""
        services = {"minio": MINIO_DATA_PORT, "spark": SPARK_CONNECT_SERVER_PORT}
        if self is Topology.ICEBERG_REST:
            services["rest"] = REST_CATALOG_PORT
        return services


class CatalogKind(str, Enum):
    """Catalog backend selector.

    Attributes:
        STORAGE: Table opened directly from object storage.
        REST: Table resolved through a REST catalog service.
    """

    STORAGE = "storage"
    REST = "rest"

    @classmethod
    def parse(cls, value: str) -> CatalogKind:
        """Parse a selector string.

        Raises:
            ConfigurationError: If value is not a known selector.
        """
        try:
            return cls(value)
        except ValueError:
            msg = f"Unsupported catalog: {value}"
            raise ConfigurationError(
                msg,
                details={"catalog": value, "allowed": [k.value for k in cls]},
            ) from None

    @property
    def topology(self) -> Topology:
        """Environment topology this catalog kind requires."""
        if self is CatalogKind.REST:
            return Topology.ICEBERG_REST
        return Topology.ICEBERG_FS


class Outcome(str, Enum):
    """Terminal state of a scenario instance."""

    PASS = "pass"
    FAIL = "fail"
    SETUP_ERROR = "setup-error"


class Phase(str, Enum):
    """Lifecycle step of a scenario instance.

    PROVISION, INIT and RESOLVE are setup steps; WRITE and VALIDATE are
    assertion steps.
    """

    PROVISION = "provision"
    INIT = "init"
    RESOLVE = "resolve"
    WRITE = "write"
    VALIDATE = "validate"
    TEARDOWN = "teardown"

    @property
    def is_setup(self) -> bool:
        """True for steps whose failure is a setup error."""
        return self in (Phase.PROVISION, Phase.INIT, Phase.RESOLVE, Phase.TEARDOWN)


# =============================================================================
# Scenario Models
# =============================================================================


class TableName(BaseModel):
    """Namespace-qualified table name.

    Example:
        >>> TableName(namespace="s1", name="t1").identifier
        's1.t1'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = Field(..., min_length=1, pattern=IDENTIFIER_PATTERN)
    name: str = Field(..., min_length=1, pattern=IDENTIFIER_PATTERN)

    @property
    def identifier(self) -> str:
        """Full identifier (namespace.name)."""
        return f"{self.namespace}.{self.name}"

    def __str__(self) -> str:
        return self.identifier


class ColumnSpec(BaseModel):
    """A column of the scenario's row batches."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, pattern=IDENTIFIER_PATTERN)
    type: str = Field(..., min_length=1, description="Column type, e.g. 'long'")

    @model_validator(mode="after")
    def _validate_type(self) -> ColumnSpec:
        arrow_type(self.type)
        return self

    @property
    def arrow_type(self) -> pa.DataType:
        """Arrow data type of the column."""
        return arrow_type(self.type)


class ValidationQuery(BaseModel):
    """A pair of queries whose results must be equal.

    Accepts either a mapping with ``expected``/``actual`` keys or a two-item
    list ``[expected, actual]``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    expected: str = Field(..., min_length=1)
    actual: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _from_pair(cls, data: Any) -> Any:
        if isinstance(data, (list, tuple)):
            if len(data) != 2:
                msg = f"Validation query pair must have 2 items, got {len(data)}"
                raise ValueError(msg)
            return {"expected": data[0], "actual": data[1]}
        return data


class ScenarioSpec(BaseModel):
    """A declarative insert scenario.

    Attributes:
        table: Target table.
        warehouse_root: Warehouse path inside the bucket (e.g. "demo").
        init_sqls: Statements run by the reference engine before the write.
        columns: Column layout of every row batch.
        write_data: Ordered row batches; each batch is a list of rows.
        query_sql: Ordered validation query pairs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    table: TableName
    warehouse_root: str = Field(..., min_length=1)
    init_sqls: tuple[str, ...] = Field(default=())
    columns: tuple[ColumnSpec, ...] = Field(..., min_length=1)
    write_data: tuple[tuple[tuple[Any, ...], ...], ...] = Field(..., min_length=1)
    query_sql: tuple[ValidationQuery, ...] = Field(default=())

    @property
    def arrow_schema(self) -> pa.Schema:
        """Arrow schema shared by all row batches."""
        return pa.schema([pa.field(c.name, c.arrow_type) for c in self.columns])

    @property
    def row_count(self) -> int:
        """Total number of rows across all batches."""
        return sum(len(batch) for batch in self.write_data)

    def record_batches(self) -> list[pa.RecordBatch]:
        """Convert the row batches into Arrow record batches, in listed order.

        Raises:
            ValueError: If a row has the wrong arity.
            pyarrow.ArrowException: If a value does not fit its column type.
        """
        schema = self.arrow_schema
        batches = []
        for rows in self.write_data:
            columns: list[list[Any]] = [[] for _ in self.columns]
            for row in rows:
                if len(row) != len(self.columns):
                    msg = f"Row {list(row)!r} has {len(row)} values, expected {len(self.columns)}"
                    raise ValueError(msg)
                for idx, value in enumerate(row):
                    columns[idx].append(_coerce_value(value, schema.field(idx).type))
            arrays = [
                pa.array(values, type=schema.field(idx).type)
                for idx, values in enumerate(columns)
            ]
            batches.append(pa.RecordBatch.from_arrays(arrays, schema=schema))
        return batches


# =============================================================================
# Catalog Models
# =============================================================================


class StorageOptions(BaseModel):
    """Object store connection arguments.

    Attributes:
        root: Path inside the bucket.
        bucket: Bucket name.
        endpoint: S3 endpoint URL (http://host:port).
        region: S3 region.
        access_key_id: Access key.
        secret_access_key: Secret key.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    root: str = Field(..., min_length=1)
    bucket: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    region: str = Field(default="us-east-1")
    access_key_id: str
    secret_access_key: SecretStr

    @property
    def location(self) -> str:
        """S3 URI of root."""
        return f"s3://{self.bucket}/{self.root.strip('/')}"

    def to_fileio_properties(self) -> dict[str, str]:
        """PyIceberg FileIO properties for this store."""
        return {
            "s3.endpoint": self.endpoint,
            "s3.region": self.region,
            "s3.access-key-id": self.access_key_id,
            "s3.secret-access-key": self.secret_access_key.get_secret_value(),
            "s3.path-style-access": "true",
        }


class RestCatalogConfig(BaseModel):
    """REST catalog connection configuration.

    The table I/O settings are nested under ``io`` and flattened into
    PyIceberg catalog properties by ``to_properties``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uri: str = Field(..., min_length=1)
    io: StorageOptions

    def to_properties(self) -> dict[str, str]:
        """Flat PyIceberg catalog properties.

        The table path is passed as ``table.io.root`` and ``table.io.bucket``.
        """
        return {
            "uri": self.uri,
            "table.io.root": self.io.root,
            "table.io.bucket": self.io.bucket,
            **self.io.to_fileio_properties(),
        }


# =============================================================================
# Result Models
# =============================================================================


class InstanceResult(BaseModel):
    """Outcome of one scenario instance run."""

    model_config = ConfigDict(frozen=True)

    name: str
    outcome: Outcome
    phase: Phase | None = None
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASS


class MatrixReport(BaseModel):
    """Aggregated results of a matrix run."""

    model_config = ConfigDict(frozen=True)

    results: tuple[InstanceResult, ...] = ()

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def exit_code(self) -> int:
        """0 when every instance passed, 1 otherwise."""
        return 0 if all(r.passed for r in self.results) else 1

    @property
    def summary(self) -> str:
        status = "ok" if self.exit_code == 0 else "FAILED"
        return (
            f"test result: {status}. {self.count(Outcome.PASS)} passed; "
            f"{self.count(Outcome.FAIL)} failed; "
            f"{self.count(Outcome.SETUP_ERROR)} setup errors"
        )


# =============================================================================
# Configuration
# =============================================================================


class MatrixSettings(BaseModel):
    """Runtime settings, with defaults taken from the process environment.

    Attributes:
        testdata_dir: Root of compose projects, scenarios and scripts.
        max_workers: Maximum number of concurrently active environments.
        ready_timeout: Seconds to wait for services to become ready.
        command_timeout: Seconds allowed for a docker compose command.
        script_timeout: Seconds allowed for an external script.
        python: Interpreter used to run external scripts.
        bucket: Warehouse bucket.
        region: Object store region.
        access_key: Object store access key.
        secret_key: Object store secret key.

    Example:
        >>> settings = MatrixSettings(max_workers=4)
        >>> settings.scenarios_dir.name
        'scenarios'
    """

    model_config = ConfigDict(frozen=True)

    testdata_dir: Path = Field(
        default_factory=lambda: Path(
            os.environ.get("INSERT_MATRIX_TESTDATA", str(DEFAULT_TESTDATA_DIR))
        )
    )
    max_workers: int = Field(
        default_factory=lambda: int(os.environ.get("INSERT_MATRIX_MAX_WORKERS", "2")),
        ge=1,
    )
    ready_timeout: float = Field(
        default_factory=lambda: float(os.environ.get("INSERT_MATRIX_READY_TIMEOUT", "300")),
        gt=0.0,
    )
    command_timeout: float = Field(
        default_factory=lambda: float(os.environ.get("INSERT_MATRIX_COMMAND_TIMEOUT", "600")),
        gt=0.0,
    )
    script_timeout: float = Field(
        default_factory=lambda: float(os.environ.get("INSERT_MATRIX_SCRIPT_TIMEOUT", "600")),
        gt=0.0,
    )
    python: str = Field(
        default_factory=lambda: os.environ.get("INSERT_MATRIX_PYTHON", sys.executable)
    )
    bucket: str = Field(
        default_factory=lambda: os.environ.get("INSERT_MATRIX_BUCKET", "icebergdata")
    )
    region: str = Field(default_factory=lambda: os.environ.get("AWS_REGION", "us-east-1"))
    access_key: str = Field(
        default_factory=lambda: os.environ.get("INSERT_MATRIX_ACCESS_KEY", "admin")
    )
    secret_key: SecretStr = Field(
        default_factory=lambda: SecretStr(
            os.environ.get("INSERT_MATRIX_SECRET_KEY", "password")
        )
    )

    @property
    def compose_dir(self) -> Path:
        return self.testdata_dir / "docker"

    @property
    def scenarios_dir(self) -> Path:
        return self.testdata_dir / "scenarios"

    @property
    def scripts_dir(self) -> Path:
        return self.testdata_dir / "python"


__all__ = [
    "CatalogKind",
    "ColumnSpec",
    "InstanceResult",
    "MatrixReport",
    "MatrixSettings",
    "Outcome",
    "Phase",
    "RestCatalogConfig",
    "ScenarioSpec",
    "StorageOptions",
    "TableName",
    "Topology",
    "ValidationQuery",
    "arrow_type",
]
