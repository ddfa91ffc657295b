"""Storage-based catalog for tables kept in the Hadoop layout.

The table location is derived from the warehouse and the identifier, and the
current metadata file is found through the version hint::

    <warehouse>/<namespace>/<table>/metadata/version-hint.text   -> "N"
    <warehouse>/<namespace>/<table>/metadata/vN.metadata.json

This is the layout Spark's ``hadoop`` catalog type reads and writes, so tables
initialized by the reference engine can be written with PyIceberg and read
back by Spark without a catalog service.

Commits write ``v<N+1>.metadata.json`` without overwriting and then move the
version hint. Finding the next metadata file already present means another
writer committed first, which is reported as ``CommitFailedException``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pyiceberg.catalog import Catalog
from pyiceberg.catalog.noop import NoopCatalog
from pyiceberg.exceptions import (
    CommitFailedException,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from pyiceberg.io import FileIO, load_file_io
from pyiceberg.partitioning import UNPARTITIONED_PARTITION_SPEC, PartitionSpec
from pyiceberg.serializers import FromInputFile, ToOutputFile
from pyiceberg.table import CommitTableResponse, Table
from pyiceberg.table.metadata import TableMetadata, new_table_metadata
from pyiceberg.table.sorting import UNSORTED_SORT_ORDER, SortOrder
from pyiceberg.table.update import update_table_metadata

if TYPE_CHECKING:
    import pyarrow as pa
    from pyiceberg.schema import Schema
    from pyiceberg.table.update import TableRequirement, TableUpdate
    from pyiceberg.typedef import Identifier

logger = structlog.get_logger(__name__)

VERSION_HINT_FILE = "version-hint.text"
WAREHOUSE_PROPERTY = "warehouse"


class StorageCatalog(NoopCatalog):
    """PyIceberg catalog reading and committing Hadoop-layout tables.

    Operations this layout has no use for (views, namespace properties,
    renames) keep the ``NotImplementedError`` behaviour of ``NoopCatalog``.

    Args:
        name: Catalog name.
        **properties: Must include ``warehouse``; FileIO properties such as
            ``s3.endpoint`` are passed through to the FileIO.

    Example:
        >>> catalog = StorageCatalog("storage", warehouse="s3://icebergdata/demo", **{
        ...     "s3.endpoint": "http://172.18.0.2:9000",
        ... })
        >>> table = catalog.load_table("s1.t1")
    """

    def __init__(self, name: str, **properties: str) -> None:
        super().__init__(name, **properties)
        warehouse = properties.get(WAREHOUSE_PROPERTY)
        if not warehouse:
            msg = f"StorageCatalog requires the '{WAREHOUSE_PROPERTY}' property"
            raise ValueError(msg)
        self._warehouse = warehouse.rstrip("/")
        self._io = load_file_io(self.properties, self._warehouse)

    @property
    def warehouse(self) -> str:
        return self._warehouse

    def table_location(self, identifier: str | Identifier) -> str:
        """Location of a table under the warehouse."""
        identifier_tuple = self._table_identifier(identifier)
        return "/".join((self._warehouse, *identifier_tuple))

    def _table_identifier(self, identifier: str | Identifier) -> tuple[str, ...]:
        identifier_tuple = Catalog.identifier_to_tuple(identifier)
        if len(identifier_tuple) < 2:
            msg = f"Table identifier must include a namespace: {identifier}"
            raise NoSuchTableError(msg)
        return tuple(identifier_tuple)

    @staticmethod
    def _metadata_location(table_location: str, version: int) -> str:
        return f"{table_location}/metadata/v{version}.metadata.json"

    @staticmethod
    def _version_hint_location(table_location: str) -> str:
        return f"{table_location}/metadata/{VERSION_HINT_FILE}"

    def _read_version(self, table_location: str, io: FileIO) -> int | None:
        """Current metadata version of a table, None if it does not exist."""
        hint = io.new_input(self._version_hint_location(table_location))
        if not hint.exists():
            return None
        with hint.open() as f:
            content = f.read().decode("utf-8").strip()
        try:
            return int(content)
        except ValueError:
            msg = f"Corrupt version hint at {hint.location}: {content!r}"
            raise NoSuchTableError(msg) from None

    def _write_version(self, table_location: str, io: FileIO, version: int) -> None:
        hint = io.new_output(self._version_hint_location(table_location))
        with hint.create(overwrite=True) as f:
            f.write(str(version).encode("utf-8"))

    def _load_metadata(self, metadata_location: str, io: FileIO) -> TableMetadata:
        return FromInputFile.table_metadata(io.new_input(metadata_location))

    def load_table(self, identifier: str | Identifier) -> Table:
        """Load a table from its current metadata file.

        Raises:
            NoSuchTableError: If there is no version hint at the table location.
        """
        identifier_tuple = self._table_identifier(identifier)
        location = self.table_location(identifier_tuple)
        version = self._read_version(location, self._io)
        if version is None:
            msg = f"Table does not exist: {'.'.join(identifier_tuple)} (no {VERSION_HINT_FILE} under {location})"
            raise NoSuchTableError(msg)

        metadata_location = self._metadata_location(location, version)
        io = load_file_io({**self.properties}, metadata_location)
        metadata = self._load_metadata(metadata_location, io)
        logger.debug(
            "storage_table_loaded",
            table=".".join(identifier_tuple),
            metadata_location=metadata_location,
        )
        return Table(
            identifier=identifier_tuple,
            metadata=metadata,
            metadata_location=metadata_location,
            io=io,
            catalog=self,
        )

    def table_exists(self, identifier: str | Identifier) -> bool:
        try:
            self.load_table(identifier)
        except NoSuchTableError:
            return False
        return True

    def create_table(
        self,
        identifier: str | Identifier,
        schema: Schema | pa.Schema,
        location: str | None = None,
        partition_spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
        sort_order: SortOrder = UNSORTED_SORT_ORDER,
        properties: dict[str, Any] | None = None,
    ) -> Table:
        """Create a table as version 1 of the Hadoop layout.

        Raises:
            TableAlreadyExistsError: If the table already has a version hint.
            ValueError: If a location other than the layout's own is requested.
        """
        identifier_tuple = self._table_identifier(identifier)
        table_location = self.table_location(identifier_tuple)
        if location is not None and location.rstrip("/") != table_location:
            msg = f"Tables in the storage layout live at {table_location}, not {location}"
            raise ValueError(msg)
        if self._read_version(table_location, self._io) is not None:
            msg = f"Table already exists: {'.'.join(identifier_tuple)}"
            raise TableAlreadyExistsError(msg)

        metadata = new_table_metadata(
            schema=self._convert_schema_if_needed(schema),
            partition_spec=partition_spec,
            sort_order=sort_order,
            location=table_location,
            properties=properties or {},
        )
        metadata_location = self._metadata_location(table_location, 1)
        ToOutputFile.table_metadata(metadata, self._io.new_output(metadata_location))
        self._write_version(table_location, self._io, 1)
        return self.load_table(identifier_tuple)

    def commit_table(
        self,
        table: Table,
        requirements: tuple[TableRequirement, ...],
        updates: tuple[TableUpdate, ...],
    ) -> CommitTableResponse:
        """Apply updates on top of the current metadata as the next version.

        Raises:
            NoSuchTableError: If the table disappeared.
            CommitFailedException: If a requirement no longer holds or the
                next metadata version was written by someone else.
        """
        identifier_tuple = self._table_identifier(table.name())
        location = self.table_location(identifier_tuple)
        version = self._read_version(location, table.io)
        if version is None:
            msg = f"Table does not exist: {'.'.join(identifier_tuple)}"
            raise NoSuchTableError(msg)

        current_location = self._metadata_location(location, version)
        current = self._load_metadata(current_location, table.io)
        for requirement in requirements:
            requirement.validate(current)

        updated = update_table_metadata(current, updates, metadata_location=current_location)
        new_location = self._metadata_location(location, version + 1)
        try:
            ToOutputFile.table_metadata(updated, table.io.new_output(new_location), overwrite=False)
        except FileExistsError as e:
            msg = f"Metadata version {version + 1} already exists for {'.'.join(identifier_tuple)}"
            raise CommitFailedException(msg) from e
        self._write_version(location, table.io, version + 1)

        logger.debug(
            "storage_table_committed",
            table=".".join(identifier_tuple),
            version=version + 1,
            updates=len(updates),
        )
        return CommitTableResponse(metadata=updated, metadata_location=new_location)


__all__ = ["VERSION_HINT_FILE", "StorageCatalog"]
