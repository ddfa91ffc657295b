"""Catalog abstraction: selector -> catalog configuration -> table handle.

Both paths point PyIceberg at the environment's object store with the fixed
test credentials from MatrixSettings:

- storage: the table is opened straight from the warehouse in the bucket
  (StorageCatalog, Hadoop layout).
- rest: the REST catalog service resolves the namespace-qualified name; the
  same storage parameters are passed as the table I/O configuration.

A table that does not exist is a CatalogResolutionError, never an empty table.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pyiceberg.catalog import load_catalog
from pyiceberg.exceptions import NoSuchNamespaceError, NoSuchTableError

from insert_matrix.errors import CatalogResolutionError
from insert_matrix.models import (
    CatalogKind,
    MatrixSettings,
    RestCatalogConfig,
    ScenarioSpec,
    StorageOptions,
)
from insert_matrix.storage_catalog import WAREHOUSE_PROPERTY, StorageCatalog
from insert_matrix.telemetry import traced

if TYPE_CHECKING:
    from pyiceberg.catalog import Catalog
    from pyiceberg.table import Table

    from insert_matrix.environment import Environment

logger = structlog.get_logger(__name__)


def storage_options(
    env: Environment,
    settings: MatrixSettings,
    root: str,
) -> StorageOptions:
    """Object store arguments for the environment's MinIO service."""
    return StorageOptions(
        root=root,
        bucket=settings.bucket,
        endpoint=f"http://{env.address_of('minio')}",
        region=settings.region,
        access_key_id=settings.access_key,
        secret_access_key=settings.secret_key,
    )


def rest_catalog_config(
    env: Environment,
    scenario: ScenarioSpec,
    settings: MatrixSettings,
) -> RestCatalogConfig:
    """REST catalog configuration; the I/O root is the table's own location."""
    table = scenario.table
    root = "/".join((scenario.warehouse_root.strip("/"), table.namespace, table.name))
    return RestCatalogConfig(
        uri=f"http://{env.address_of('rest')}",
        io=storage_options(env, settings, root),
    )


def open_catalog(
    kind: CatalogKind,
    env: Environment,
    scenario: ScenarioSpec,
    settings: MatrixSettings,
) -> Catalog:
    """Construct the PyIceberg catalog client for a catalog kind."""
    if kind is CatalogKind.STORAGE:
        options = storage_options(env, settings, scenario.warehouse_root)
        properties: dict[str, Any] = {
            WAREHOUSE_PROPERTY: options.location,
            **options.to_fileio_properties(),
        }
        return StorageCatalog(kind.value, **properties)

    config = rest_catalog_config(env, scenario, settings)
    return load_catalog(kind.value, **{"type": "rest", **config.to_properties()})


@traced(operation_name="catalog.resolve_table")
def resolve_table(
    kind: CatalogKind,
    env: Environment,
    scenario: ScenarioSpec,
    settings: MatrixSettings,
) -> Table:
    """Resolve the scenario's target table through the selected catalog.

    Args:
        kind: Catalog selector.
        env: Running environment providing service addresses.
        scenario: Scenario naming the table and warehouse root.
        settings: Bucket and credentials.

    Returns:
        Open PyIceberg table, owned by the caller.

    Raises:
        CatalogResolutionError: If the table does not exist or the catalog
            cannot be reached or configured.
    """
    identifier = scenario.table.identifier
    log = logger.bind(catalog=kind.value, table=identifier)

    try:
        catalog = open_catalog(kind, env, scenario, settings)
        table = catalog.load_table(identifier)
    except (NoSuchTableError, NoSuchNamespaceError) as e:
        log.error("table_not_found", error=str(e))
        msg = f"Table not found: {e}"
        raise CatalogResolutionError(msg, table_identifier=identifier, catalog=kind.value) from e
    except Exception as e:
        log.error("catalog_resolution_failed", error=str(e))
        msg = f"Cannot resolve table through {kind.value} catalog: {e}"
        raise CatalogResolutionError(msg, table_identifier=identifier, catalog=kind.value) from e

    log.info("table_resolved", location=table.metadata.location)
    return table


__all__ = [
    "open_catalog",
    "resolve_table",
    "rest_catalog_config",
    "storage_options",
]
