"""Environment-driven database settings.

``DatabaseSettings`` reads ``ROWKEEP_DB_*`` environment variables (and a
``.env`` file) and turns them into a validated
:class:`~rowkeep.types.DatabaseConfig`.

Manifesto:
    Connection configuration should be explicit, validated, and
    environment-driven. The host application reads settings once and
    hands the resulting config to :class:`~rowkeep.database.Database`.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``ROWKEEP_DB_URL``, ``ROWKEEP_DB_POOL_SIZE``...
    - **URL or fields:** ``url`` wins over the discrete host/port fields

Examples:
    >>> import os
    >>> os.environ["ROWKEEP_DB_URL"] = "sqlite:///game.db"
    >>> DatabaseSettings().to_config().db_type
    <DatabaseType.SQLITE: 'sqlite'>

Tags:
    settings, configuration, pydantic, environment, rowkeep
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rowkeep.types import DatabaseConfig, DatabaseType


class DatabaseSettings(BaseSettings):
    """Connection settings read from the environment.

    Fields
    ──────
    url                : Full database URL (overrides backend/host/port/database)
    backend            : sqlite | postgresql | mysql | mariadb
    host, port         : Server location (port 0 -> backend default)
    database           : Database name, or file path for SQLite
    username, password : Credentials
    pool_size          : Maximum pooled connections
    connection_timeout : Seconds to wait for a free pooled connection
    max_lifetime       : Seconds before a pooled connection is recycled
    auto_commit        : Autocommit default for non-transactional statements
    query_logging      : Log every statement at INFO
    batch_size         : Default chunk size for batch operations
    log_level          : Level passed to ``configure_logging``
    """

    model_config = SettingsConfigDict(
        env_prefix="ROWKEEP_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str | None = None
    backend: DatabaseType = DatabaseType.SQLITE
    host: str = "localhost"
    port: int = 0
    database: str = "rowkeep.db"
    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    pool_size: int = Field(default=10, ge=1)
    connection_timeout: float = Field(default=30.0, gt=0)
    max_lifetime: int = Field(default=1800, ge=0)
    auto_commit: bool = True

    query_logging: bool = False
    batch_size: int = Field(default=1000, ge=1)
    log_level: str = "INFO"

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return "postgresql" if lowered == "postgres" else lowered
        return value

    def to_config(self) -> DatabaseConfig:
        """Build a validated :class:`DatabaseConfig`."""
        common = {
            "pool_size": self.pool_size,
            "connection_timeout": self.connection_timeout,
            "max_lifetime": self.max_lifetime,
            "auto_commit": self.auto_commit,
            "query_logging": self.query_logging,
            "batch_size": self.batch_size,
        }
        if self.url:
            config = DatabaseConfig.from_url(self.url, **common)
            if self.username and config.username is None:
                config.username = self.username
            if self.password and config.password is None:
                config.password = self.password
            return config.validate()

        return DatabaseConfig(
            db_type=self.backend,
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            **common,
        ).validate()


__all__ = ["DatabaseSettings"]
