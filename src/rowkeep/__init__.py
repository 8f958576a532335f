"""
rowkeep - reflective ORM engine for plain dataclasses.

Declare entities with :func:`entity`, :func:`column`, :func:`primary_key`
and :func:`transient`; persist them through :class:`Database`.
"""

__version__ = "0.1.0"

from rowkeep.batch import BatchOperation, BatchResult
from rowkeep.cache import CacheManager, CacheStats, EntityCache
from rowkeep.connection import ConnectionManager
from rowkeep.crud import CrudEngine
from rowkeep.database import Database
from rowkeep.dialect import Dialect, get_dialect
from rowkeep.errors import (
    BatchError,
    ConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
    InvalidIdentifierError,
    MappingError,
    QueryError,
    RowkeepError,
    TransactionError,
    UnsupportedOperatorError,
    ValidationError,
    categorize_error,
    is_retryable,
)
from rowkeep.mapper import EntityMapper
from rowkeep.metadata import ColumnDescriptor, EntityDescriptor, MetadataCache
from rowkeep.query import QueryBuilder
from rowkeep.schema import CachePolicy, ValueKind, column, entity, primary_key, transient
from rowkeep.settings import DatabaseSettings
from rowkeep.stats import DatabaseStats
from rowkeep.transaction import Transaction, TransactionState
from rowkeep.types import DatabaseConfig, DatabaseType

__all__ = [
    "__version__",
    # Declaration
    "entity",
    "column",
    "primary_key",
    "transient",
    "ValueKind",
    "CachePolicy",
    # Facade and engines
    "Database",
    "ConnectionManager",
    "Transaction",
    "TransactionState",
    "CrudEngine",
    "QueryBuilder",
    "BatchOperation",
    "BatchResult",
    "EntityMapper",
    "MetadataCache",
    "EntityDescriptor",
    "ColumnDescriptor",
    "EntityCache",
    "CacheManager",
    "CacheStats",
    "Dialect",
    "get_dialect",
    # Configuration and monitoring
    "DatabaseConfig",
    "DatabaseType",
    "DatabaseSettings",
    "DatabaseStats",
    # Errors
    "RowkeepError",
    "ErrorCategory",
    "ErrorContext",
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
    "is_retryable",
    "categorize_error",
]
