"""Exception types for the insert matrix.

All exceptions inherit from MatrixError so the matrix runner can record any
failure against the instance that raised it without crashing.

Exception Hierarchy:
    MatrixError (base)
    ├── ConfigurationError - Unknown catalog selector, duplicate instance names
    ├── ScenarioParseError - Malformed scenario resource
    ├── EnvironmentLifecycleError - Backing service lifecycle failures
    │   ├── EnvironmentProvisionError - Services failed to start or become ready
    │   └── EnvironmentTeardownError - Services could not be released
    ├── CatalogResolutionError - Table missing or catalog misconfigured
    ├── WriteError - Row batch rejected by the writer
    │   └── CommitConflictError - Transaction commit rejected
    └── ValidationScriptError - External script exited non-zero

Example:
    >>> from insert_matrix.errors import MatrixError, CatalogResolutionError
    >>> try:
    ...     table = resolve_table(kind, env, scenario, settings)
    ... except CatalogResolutionError as e:
    ...     print(f"Table {e.table_identifier} not found")
"""

from __future__ import annotations

from typing import Any


class MatrixError(Exception):
    """Base exception for all insert matrix errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(MatrixError):
    """Matrix configuration is invalid.

    Raised for an unrecognized catalog selector or when two instances would
    share a name.

    Example:
        >>> raise ConfigurationError(
        ...     "Unsupported catalog",
        ...     details={"catalog": "hive", "allowed": ["storage", "rest"]},
        ... )
    """

    pass


# =============================================================================
# Scenario Errors
# =============================================================================


class ScenarioParseError(MatrixError):
    """Scenario resource could not be parsed.

    Attributes:
        field: Dotted path of the offending field, None when the resource as a
            whole is unreadable.
        source: Path of the scenario resource.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        source: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if field:
            _details["field"] = field
        if source:
            _details["source"] = source
        super().__init__(message, _details)
        self.field = field
        self.source = source


# =============================================================================
# Environment Errors
# =============================================================================


class EnvironmentLifecycleError(MatrixError):
    """Base class for environment lifecycle errors.

    Attributes:
        project: Compose project name of the environment.
    """

    def __init__(
        self,
        message: str,
        project: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if project:
            _details["project"] = project
        super().__init__(message, _details)
        self.project = project


class EnvironmentProvisionError(EnvironmentLifecycleError):
    """Backing services failed to start or become ready."""

    pass


class EnvironmentTeardownError(EnvironmentLifecycleError):
    """Backing services could not be released."""

    pass


# =============================================================================
# Catalog Errors
# =============================================================================


class CatalogResolutionError(MatrixError):
    """Table could not be resolved through the catalog.

    Raised when the table does not exist at the expected location or the
    catalog connection is misconfigured. A missing table is never treated as
    an empty one.

    Attributes:
        table_identifier: Full table identifier (namespace.name).
        catalog: Catalog selector in use.
    """

    def __init__(
        self,
        message: str,
        table_identifier: str | None = None,
        catalog: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if table_identifier:
            _details["table_identifier"] = table_identifier
        if catalog:
            _details["catalog"] = catalog
        super().__init__(message, _details)
        self.table_identifier = table_identifier
        self.catalog = catalog


# =============================================================================
# Write Errors
# =============================================================================


class WriteError(MatrixError):
    """Write operation failed.

    Attributes:
        table_identifier: Full table identifier.
    """

    def __init__(
        self,
        message: str,
        table_identifier: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if table_identifier:
            _details["table_identifier"] = table_identifier
        super().__init__(message, _details)
        self.table_identifier = table_identifier


class CommitConflictError(WriteError):
    """Transaction commit was rejected by the catalog.

    Surfaced as-is; the driver never retries the transaction.

    Example:
        >>> raise CommitConflictError(
        ...     "Commit rejected: concurrent modification",
        ...     table_identifier="s1.t1",
        ... )
    """

    pass


# =============================================================================
# Script Errors
# =============================================================================


class ValidationScriptError(MatrixError):
    """External script failed.

    Attributes:
        script: Script file name.
        returncode: Process exit status, None on timeout or missing script.
    """

    def __init__(
        self,
        message: str,
        script: str | None = None,
        returncode: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        _details = details or {}
        if script:
            _details["script"] = script
        if returncode is not None:
            _details["returncode"] = returncode
        super().__init__(message, _details)
        self.script = script
        self.returncode = returncode


__all__ = [
    "CatalogResolutionError",
    "CommitConflictError",
    "ConfigurationError",
    "EnvironmentLifecycleError",
    "EnvironmentProvisionError",
    "EnvironmentTeardownError",
    "MatrixError",
    "ScenarioParseError",
    "ValidationScriptError",
    "WriteError",
]
