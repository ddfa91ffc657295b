"""Task writer and the write-and-commit driver.

Row batches are turned into data files as they are submitted, in submission
order. Closing the writer hands back the committed file set, which is then
appended to the table in a single transaction. Until that transaction commits
the data files are referenced by no snapshot, so readers never observe a
partially written batch sequence.

Example:
    >>> from insert_matrix.writer import write_and_commit
    >>> data_files = write_and_commit(table, scenario.record_batches())
    >>> len(data_files) >= 1
    True
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import Iterable
from types import TracebackType
from typing import TYPE_CHECKING

import pyarrow as pa
import structlog
from pyiceberg.exceptions import CommitFailedException
from pyiceberg.io.pyarrow import _dataframe_to_data_files, schema_to_pyarrow

from insert_matrix.errors import CommitConflictError, WriteError
from insert_matrix.telemetry import traced

if TYPE_CHECKING:
    from pyiceberg.manifest import DataFile
    from pyiceberg.table import Table

logger = structlog.get_logger(__name__)


def table_identifier(table: Table) -> str:
    """Dotted identifier of a PyIceberg table."""
    return ".".join(table.name())


def delete_data_files(table: Table, data_files: Iterable[DataFile]) -> int:
    """Best-effort removal of uncommitted data files; returns how many went.

    Files that cannot be deleted are logged as orphans and left behind.
    """
    deleted = 0
    for data_file in data_files:
        try:
            table.io.delete(data_file.file_path)
        except Exception as e:  # noqa: BLE001
            logger.warning("orphan_data_file", path=data_file.file_path, error=str(e))
        else:
            deleted += 1
    return deleted


class TaskWriter:
    """Writes row batches of one task into data files of a table.

    The writer accumulates data files across ``write`` calls and must be
    closed exactly once. Used as a context manager it aborts on exit when it
    was not closed, deleting the files it already wrote.

    Args:
        table: Table the data files are written for.

    Example:
        >>> with TaskWriter(table) as writer:
        ...     writer.write(batch_1)
        ...     writer.write(batch_2)
        ...     data_files = writer.close()
    """

    def __init__(self, table: Table) -> None:
        self._table = table
        self._identifier = table_identifier(table)
        self._write_uuid = uuid.uuid4()
        self._counter = itertools.count(0)
        self._target_schema = schema_to_pyarrow(table.schema())
        self._data_files: list[DataFile] = []
        self._closed = False
        self._log = logger.bind(table=self._identifier, write_uuid=str(self._write_uuid))

    @property
    def closed(self) -> bool:
        return self._closed

    def _conform(self, df: pa.Table) -> pa.Table:
        """Order and cast columns to the table's Arrow schema."""
        names = [f.name for f in self._target_schema]
        missing = [name for name in names if name not in df.column_names]
        extra = [name for name in df.column_names if name not in names]
        if missing or extra:
            msg = "Row batch columns do not match the table schema"
            raise WriteError(
                msg,
                table_identifier=self._identifier,
                details={"missing": missing, "unexpected": extra},
            )
        return df.select(names).cast(self._target_schema)

    def write(self, batch: pa.RecordBatch | pa.Table) -> None:
        """Write one row batch into new data files.

        Raises:
            WriteError: If the writer is closed or the batch is rejected.
        """
        if self._closed:
            msg = "Cannot write to a closed writer"
            raise WriteError(msg, table_identifier=self._identifier)

        df = batch if isinstance(batch, pa.Table) else pa.Table.from_batches([batch])
        if df.num_rows == 0:
            self._log.debug("empty_batch_skipped")
            return

        try:
            conformed = self._conform(df)
            data_files = list(
                _dataframe_to_data_files(
                    table_metadata=self._table.metadata,
                    df=conformed,
                    io=self._table.io,
                    write_uuid=self._write_uuid,
                    counter=self._counter,
                )
            )
        except WriteError:
            raise
        except Exception as e:
            msg = f"Row batch rejected: {e}"
            raise WriteError(msg, table_identifier=self._identifier) from e

        self._data_files.extend(data_files)
        self._log.debug("batch_written", rows=df.num_rows, data_files=len(data_files))

    def close(self) -> tuple[DataFile, ...]:
        """Finish the task and return its data files in submission order.

        Raises:
            WriteError: If the writer was already closed.
        """
        if self._closed:
            msg = "Writer already closed"
            raise WriteError(msg, table_identifier=self._identifier)
        self._closed = True
        return tuple(self._data_files)

    def abort(self) -> None:
        """Close the writer and delete the data files it wrote."""
        if self._closed:
            return
        self._closed = True
        deleted = delete_data_files(self._table, self._data_files)
        self._log.info("writer_aborted", data_files=len(self._data_files), deleted=deleted)
        self._data_files.clear()

    def __enter__(self) -> TaskWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if not self._closed:
            self.abort()


def commit_data_files(table: Table, data_files: tuple[DataFile, ...]) -> None:
    """Append data files to the table as one snapshot and commit.

    Raises:
        CommitConflictError: If the catalog rejects the commit.
        WriteError: If the commit fails for any other reason.
    """
    identifier = table_identifier(table)
    try:
        with table.transaction() as tx:
            with tx.update_snapshot().fast_append() as append:
                for data_file in data_files:
                    append.append_data_file(data_file)
    except CommitFailedException as e:
        msg = f"Commit rejected: {e}"
        raise CommitConflictError(msg, table_identifier=identifier) from e
    except Exception as e:
        msg = f"Commit failed: {e}"
        raise WriteError(msg, table_identifier=identifier) from e


@traced(operation_name="writer.write_and_commit")
def write_and_commit(
    table: Table,
    batches: Iterable[pa.RecordBatch | pa.Table],
) -> tuple[DataFile, ...]:
    """Write row batches in order and commit them as one atomic append.

    Args:
        table: Table handle owned by the caller.
        batches: Row batches, written strictly in iteration order.

    Returns:
        The committed data files.

    Raises:
        WriteError: If a batch is rejected. Nothing is committed.
        CommitConflictError: If the commit is rejected. Not retried; the
            data files written for it are deleted.
    """
    identifier = table_identifier(table)
    log = logger.bind(table=identifier)
    log.info("table_location", location=table.metadata.location)

    with TaskWriter(table) as writer:
        for batch in batches:
            log.info("inserting_record_batch", rows=batch.num_rows)
            writer.write(batch)
        data_files = writer.close()

    log.debug(
        "data_files_written",
        count=len(data_files),
        files=[data_file.file_path for data_file in data_files],
    )
    try:
        commit_data_files(table, data_files)
    except CommitConflictError:
        deleted = delete_data_files(table, data_files)
        log.warning("rejected_commit_files_removed", data_files=len(data_files), deleted=deleted)
        raise

    snapshot = table.current_snapshot()
    log.info(
        "write_committed",
        data_files=len(data_files),
        snapshot_id=snapshot.snapshot_id if snapshot else None,
    )
    return data_files


__all__ = [
    "TaskWriter",
    "commit_data_files",
    "delete_data_files",
    "table_identifier",
    "write_and_commit",
]
