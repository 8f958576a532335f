"""
Structured error types for rowkeep.

Every failure the ORM can surface is a ``RowkeepError`` carrying a
category, an explicit retry flag, structured context, and the chained
driver exception that caused it.

Manifesto:
    Callers need to tell "fix the code" apart from "try again later".
    The hierarchy splits along that line:

    - **Non-recoverable:** configuration, validation, and mapping errors
      are programmer mistakes. They surface at first use and never
      become retryable.
    - **Recoverable I/O:** ``DatabaseError`` and its subclasses wrap
      driver failures with the original exception attached. Only
      connection-level failures are flagged retryable; the engine itself
      never retries.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                        RowkeepError                          │
        │       (category, retryable, context, cause)                  │
        ├─────────────────────────────────────────────────────────────┤
        │  ConfigurationError      ValidationError       MappingError  │
        │  (CONFIG)                (VALIDATION)          (MAPPING)     │
        │                               │                              │
        │                   InvalidIdentifierError                     │
        │                   UnsupportedOperatorError                   │
        │                                                              │
        │  DatabaseError (DATABASE)                                    │
        │       │                                                      │
        │  DatabaseConnectionError (retryable)   QueryError            │
        │  IntegrityError    TransactionError    BatchError            │
        └─────────────────────────────────────────────────────────────┘

Examples:
    >>> err = QueryError("Execute failed").with_context(table="players")
    >>> err.context.table
    'players'
    >>> is_retryable(DatabaseConnectionError("pool exhausted"))
    True

Guardrails:
    ❌ DON'T: Catch ``Exception`` and re-raise a bare ``DatabaseError``
    ✅ DO: Pass the driver exception as ``cause=`` so it stays chained

    ❌ DON'T: Put bound parameter values into error context
    ✅ DO: Record the SQL text, table and operation only

Tags:
    error-handling, exception-hierarchy, retry-semantics, rowkeep
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from rowkeep.batch import BatchResult


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"  # Bad declarations, missing primary key, bad settings
    VALIDATION = "VALIDATION"  # Unsafe identifiers, operators, directions
    MAPPING = "MAPPING"  # Row shape does not match the descriptor
    DATABASE = "DATABASE"  # Driver, pool, constraint failures
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-``None`` fields are serialized by :meth:`to_dict`. Anything
    that has no dedicated field goes into ``metadata``.
    """

    entity: str | None = None
    table: str | None = None
    column: str | None = None
    operation: str | None = None
    sql: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["entity", "table", "column", "operation", "sql"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RowkeepError(Exception):
    """
    Base exception for all rowkeep errors.

    Subclasses set ``default_category`` and ``default_retryable``; both
    can be overridden per instance.

    Attributes:
        message: Human-readable description.
        category: :class:`ErrorCategory` for routing.
        retryable: Whether repeating the same call may succeed.
        context: :class:`ErrorContext` with table/sql/operation details.
        cause: Underlying exception, also set as ``__cause__``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RowkeepError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("Find failed", cause=exc).with_context(
                table="players", operation="find"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# NON-RECOVERABLE ERRORS (fix the code, do not retry)
# =============================================================================


class ConfigurationError(RowkeepError):
    """Malformed entity declaration or connection configuration.

    Raised on first use of an entity type (zero or several primary keys,
    unsafe table/column names, invalid default literals) and when a
    :class:`~rowkeep.types.DatabaseConfig` is incomplete.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class ValidationError(RowkeepError):
    """Caller-supplied input (SQL fragment, limit, batch size) rejected before any SQL was sent."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, value: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.value = value


class InvalidIdentifierError(ValidationError):
    """Table or column name does not match ``^[A-Za-z_][A-Za-z0-9_]*$``."""


class UnsupportedOperatorError(ValidationError):
    """Comparison operator or sort direction outside the allow-list."""

    def __init__(self, message: str, *, kind: str = "operator", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.kind = kind


class MappingError(RowkeepError):
    """A result row did not match the entity descriptor."""

    default_category = ErrorCategory.MAPPING
    default_retryable = False


# =============================================================================
# RECOVERABLE I/O ERRORS
# =============================================================================


class DatabaseError(RowkeepError):
    """Connection, SQL execution, or constraint failure.

    The driver exception is always attached as ``cause``.
    """

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class DatabaseConnectionError(DatabaseError):
    """Could not lease or open a connection. Usually transient."""

    default_retryable = True


class QueryError(DatabaseError):
    """A statement failed to execute."""


class IntegrityError(DatabaseError):
    """A constraint (primary key, unique, not-null) was violated."""


class TransactionError(DatabaseError):
    """A transactional block failed or a finished transaction was reused."""


class BatchError(DatabaseError):
    """A batch chunk failed; the whole batch was rolled back.

    ``partial_result`` holds the counts accumulated before the failing
    chunk so callers can see how far the batch got.
    """

    def __init__(
        self,
        message: str,
        *,
        partial_result: BatchResult,
        operation: str,
        chunk_index: int,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.partial_result = partial_result
        self.failed_operation = operation
        self.chunk_index = chunk_index
        self.context.operation = operation
        self.context.metadata.update(
            {
                "chunk_index": chunk_index,
                "inserted_count": partial_result.inserted_count,
                "updated_count": partial_result.updated_count,
                "deleted_count": partial_result.deleted_count,
            }
        )


# =============================================================================
# HELPERS
# =============================================================================


def attach_secondary_error(primary: BaseException, secondary: BaseException, label: str) -> None:
    """Record ``secondary`` on ``primary`` without replacing it.

    Used when a rollback or cleanup step fails while an earlier error is
    already propagating.
    """
    primary.add_note(f"{label}: {secondary!r}")
    if isinstance(primary, RowkeepError):
        primary.context.metadata[label] = repr(secondary)


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may succeed on retry.

    Non-rowkeep exceptions are treated as non-retryable.
    """
    if isinstance(error, RowkeepError):
        return error.retryable
    return False


def categorize_error(error: BaseException) -> ErrorCategory:
    """Return the category of an error, ``UNKNOWN`` for foreign exceptions."""
    if isinstance(error, RowkeepError):
        return error.category
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RowkeepError",
    "ConfigurationError",
    "ValidationError",
    "InvalidIdentifierError",
    "UnsupportedOperatorError",
    "MappingError",
    "DatabaseError",
    "DatabaseConnectionError",
    "QueryError",
    "IntegrityError",
    "TransactionError",
    "BatchError",
    "attach_secondary_error",
    "is_retryable",
    "categorize_error",
]
