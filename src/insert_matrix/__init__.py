"""insert-matrix: transactional insert tests across Iceberg catalogs.

Each test instance pairs a catalog kind (storage or rest) with a declarative
scenario, provisions a disposable docker compose environment, writes the
scenario's row batches through a PyIceberg task writer, commits them as one
snapshot and validates the table with Spark.

Example:
    >>> from insert_matrix import MatrixSettings, build_matrix, run_matrix
    >>> from insert_matrix.matrix import DEFAULT_CATALOGS, default_scenarios
    >>>
    >>> settings = MatrixSettings()
    >>> instances = build_matrix(DEFAULT_CATALOGS, default_scenarios(settings), settings)
    >>> report = run_matrix(instances, max_workers=settings.max_workers)
    >>> print(report.summary)

Modules:
    matrix: Matrix expansion, selection and concurrent execution
    instance: Scenario instance lifecycle
    environment: docker compose environment controller
    catalog: Catalog selection and table resolution
    storage_catalog: Catalog over a Hadoop-layout warehouse in object storage
    writer: Task writer and write-and-commit driver
    scenario: Scenario resource loading
    scripts: External validation script runner
    models: Pydantic models and settings
    errors: Custom exception types
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    "MatrixSettings",
    "build_matrix",
    "run_matrix",
]


# Lazy imports keep `insert_matrix.__version__` free of pyiceberg imports
def __getattr__(name: str) -> object:
    """Lazy import of package components."""
    if name == "MatrixSettings":
        from insert_matrix.models import MatrixSettings

        return MatrixSettings
    if name == "build_matrix":
        from insert_matrix.matrix import build_matrix

        return build_matrix
    if name == "run_matrix":
        from insert_matrix.matrix import run_matrix

        return run_matrix
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
