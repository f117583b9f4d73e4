from __future__ import annotations

from typing import Optional


class DatabaseError(Exception):
    """Base class for every failure raised by the storage core.

    ``code`` is a stable machine-readable tag; ``cause`` keeps the driver
    exception that triggered it (also chained via ``raise ... from``).
    """

    default_code = "DATABASE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConnectionFailed(DatabaseError):
    """Raised when the database is not connected or cannot be opened/closed."""

    default_code = "CONNECTION_ERROR"


class SchemaError(DatabaseError):
    """Raised when a migration cannot be applied or rolled back."""

    default_code = "SCHEMA_ERROR"


class TransactionError(DatabaseError):
    default_code = "TRANSACTION_ERROR"


class TransactionTimeout(TransactionError):
    """The caller stopped waiting; the transaction body may still commit."""

    default_code = "TRANSACTION_TIMEOUT"


class QueryError(DatabaseError):
    """Malformed SQL or a constraint violation."""

    default_code = "QUERY_ERROR"


class NotFoundError(DatabaseError):
    default_code = "NOT_FOUND"


class MaintenanceError(DatabaseError):
    default_code = "MAINTENANCE_ERROR"


class SearchError(DatabaseError):
    default_code = "SEARCH_ERROR"


class EmptyQueryError(SearchError, ValueError):
    default_code = "EMPTY_QUERY"


class PatternDisabled(SearchError):
    """Raised when a query needs a pattern type the engine has switched off."""

    default_code = "PATTERN_DISABLED"


class InvalidPattern(SearchError):
    default_code = "INVALID_PATTERN"
