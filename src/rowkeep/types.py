"""Database types and connection configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

from rowkeep.errors import ConfigurationError


class DatabaseType(str, Enum):
    """Supported relational backends."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"

    @property
    def default_port(self) -> int:
        return _DEFAULT_PORTS[self]

    @property
    def requires_host(self) -> bool:
        return self is not DatabaseType.SQLITE

    @property
    def is_file_based(self) -> bool:
        return self is DatabaseType.SQLITE


_DEFAULT_PORTS = {
    DatabaseType.SQLITE: 0,
    DatabaseType.POSTGRESQL: 5432,
    DatabaseType.MYSQL: 3306,
    DatabaseType.MARIADB: 3306,
}

_SCHEME_ALIASES = {
    "sqlite": DatabaseType.SQLITE,
    "postgresql": DatabaseType.POSTGRESQL,
    "postgres": DatabaseType.POSTGRESQL,
    "mysql": DatabaseType.MYSQL,
    "mariadb": DatabaseType.MARIADB,
}


@dataclass
class DatabaseConfig:
    """
    Configuration consumed once by the connection manager.

    Different fields are used by different backends: ``database`` is the
    file path for SQLite and the database name elsewhere.
    """

    db_type: DatabaseType = DatabaseType.SQLITE

    host: str = "localhost"
    port: int = 0  # 0 -> backend default
    database: str = ""
    username: str | None = None
    password: str | None = None

    # Pool
    pool_size: int = 10
    connection_timeout: float = 30.0  # seconds to wait for a pooled connection
    max_lifetime: int = 1800  # seconds before a pooled connection is recycled
    auto_commit: bool = True

    # Engine behaviour
    query_logging: bool = False
    batch_size: int = 1000

    # Extra driver-specific keyword arguments
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_port(self) -> int:
        return self.port if self.port > 0 else self.db_type.default_port

    def validate(self) -> DatabaseConfig:
        """Check required fields, raising :class:`ConfigurationError`."""
        if not self.database:
            raise ConfigurationError("Database name/path must be specified").with_context(
                operation="configure", db_type=self.db_type.value
            )
        if self.db_type.requires_host and not self.host:
            raise ConfigurationError(f"Host must be specified for {self.db_type.value}")
        if self.pool_size < 1:
            raise ConfigurationError(f"pool_size must be >= 1, got {self.pool_size}")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.connection_timeout <= 0:
            raise ConfigurationError("connection_timeout must be positive")
        return self

    def with_overrides(self, **changes: Any) -> DatabaseConfig:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_url(cls, url: str, **overrides: Any) -> DatabaseConfig:
        """Parse a database URL or bare SQLite path.

        Accepted forms::

            sqlite:///relative/or/absolute.db
            ./data/game.db                       (bare path -> SQLite)
            postgresql://user:pw@host:5432/db    (postgres:// alias)
            mysql://user:pw@host/db
            mariadb://user:pw@host/db

        Driver suffixes such as ``postgresql+psycopg://`` are stripped.
        """
        if not url:
            raise ConfigurationError("Database URL must not be empty")

        if "://" not in url:
            return cls(db_type=DatabaseType.SQLITE, database=url, **overrides)

        scheme, rest = url.split("://", 1)
        scheme = scheme.split("+", 1)[0].lower()
        db_type = _SCHEME_ALIASES.get(scheme)
        if db_type is None:
            raise ConfigurationError(
                f"Unknown database URL scheme {scheme!r}. Supported: {sorted(_SCHEME_ALIASES)}"
            )

        if db_type is DatabaseType.SQLITE:
            path = rest[1:] if rest.startswith("/") else rest
            return cls(db_type=db_type, database=path, **overrides)

        parts = urlsplit(f"{scheme}://{rest}")
        return cls(
            db_type=db_type,
            host=parts.hostname or "localhost",
            port=parts.port or 0,
            database=parts.path.lstrip("/"),
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
            **overrides,
        )

    def describe(self) -> str:
        """Credential-free description for logs."""
        if self.db_type.is_file_based:
            return f"{self.db_type.value}:{Path(self.database).name}"
        return f"{self.db_type.value}://{self.host}:{self.effective_port}/{self.database}"


__all__ = [
    "DatabaseType",
    "DatabaseConfig",
]
