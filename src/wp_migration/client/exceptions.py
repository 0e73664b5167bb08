"""Custom exceptions for WP Bridge.

This module defines the error taxonomy of the migration engine. Only
``ConnectionError`` and ``ConfigError`` abort a run; every other class is
accumulated into the run summary and reported back to the caller.
"""

from typing import Any


class MigrationError(Exception):
    """Base exception for all WP Bridge errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize migration error.

        Args:
            message: Error message
            details: Optional structured context (ids, table names, ...)
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with details."""
        if not self.details:
            return self.message
        context = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} ({context})"


class ConnectionError(MigrationError):  # noqa: A001
    """Raised when the remote source is unreachable or rejects authentication.

    Fatal to the run: nothing beyond the rows already committed is written.
    """

    pass


class QueryError(MigrationError):
    """Raised when a remote query cannot be prepared or executed.

    Aborts the current fetch; commits from prior chunks stand.
    """

    def __init__(self, message: str, sql: str | None = None, details: dict[str, Any] | None = None):
        """Initialize query error.

        Args:
            message: Error message
            sql: The statement that failed, if known
            details: Optional structured context
        """
        self.sql = sql
        super().__init__(message, details)


class RowError(MigrationError):
    """Raised when a single row fails to create, update, resolve or run a hook."""

    def __init__(
        self,
        message: str,
        source_id: int | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize row error.

        Args:
            message: Error message
            source_id: Remote id of the failing row
            stage: Pipeline stage where the failure happened
            details: Optional structured context
        """
        self.source_id = source_id
        self.stage = stage
        super().__init__(message, details)

    def format_message(self) -> str:
        """Prefix the message with stage and source id."""
        msg = super().format_message()
        if self.stage:
            msg = f"{self.stage}: {msg}"
        if self.source_id is not None:
            msg = f"[{self.source_id}] {msg}"
        return msg


class ResourceMissing(MigrationError):
    """Raised when an attachment or its physical file cannot be found."""

    def __init__(self, message: str, reference: int | str | None = None):
        """Initialize missing resource error.

        Args:
            message: Error message
            reference: Source attachment id or logical path
        """
        self.reference = reference
        super().__init__(message)


class ConfigError(MigrationError):
    """Raised when configuration is invalid or missing, before any I/O."""

    pass


class VaultError(MigrationError):
    """Raised when credentials cannot be encrypted or decrypted."""

    pass


class StateError(MigrationError):
    """Raised when the local store or identity mapping fails."""

    pass


class RunCancelled(MigrationError):
    """Raised internally when a cancellation token fires mid-run."""

    pass
