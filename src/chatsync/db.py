"""Connection pool and transaction management for the chatsync store."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from chatsync.errors import StoreNotInitializedError, TransactionTimeoutError

if TYPE_CHECKING:
    from chatsync.config import DatabaseConfig, TransactionConfig

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_url(database_url: str) -> dict[str, str | int | None]:
    """Parse connection params from a libpq-style database URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    database = parsed.path.lstrip("/") or None
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "chatsync",
        "password": parsed.password or "chatsync",
        "database": database,
        "ssl": sslmode,
    }


def db_params_from_env() -> dict[str, str | int | None]:
    """Read DB connection params from environment variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return db_params_from_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "chatsync"),
        "password": os.environ.get("POSTGRES_PASSWORD", "chatsync"),
        "database": os.environ.get("POSTGRES_DB"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Manages the asyncpg connection pool shared by every session.

    The pool is the single shared backend resource; row-level isolation is
    left to PostgreSQL (read committed) and the tables' unique constraints.
    """

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        default_timeout_s: float = 10.0,
        max_wait_s: float = 10.0,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.default_timeout_s = default_timeout_s
        self.max_wait_s = max_wait_s
        self.pool: asyncpg.Pool | None = None

    @property
    def connected(self) -> bool:
        return self.pool is not None

    async def provision(self) -> None:
        """Create the database if it doesn't exist.

        Connects to the 'postgres' maintenance database to check for and
        optionally create the target database.
        """
        connect_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": "postgres",
        }
        if self.ssl is not None:
            connect_kwargs["ssl"] = self.ssl
        try:
            conn = await asyncpg.connect(**connect_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            retry_kwargs = dict(connect_kwargs)
            retry_kwargs["ssl"] = "disable"
            logger.info(
                "Retrying PostgreSQL provision connection with ssl=disable after SSL upgrade loss"
            )
            conn = await asyncpg.connect(**retry_kwargs)
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1",
                self.db_name,
            )
            if not exists:
                # CREATE DATABASE cannot be parameterized
                safe_name = self.db_name.replace('"', '""')
                await conn.execute(f'CREATE DATABASE "{safe_name}" TEMPLATE template0')
                logger.info("Created database: %s", self.db_name)
            else:
                logger.info("Database already exists: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool to the target database."""
        pool_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        try:
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            retry_kwargs = dict(pool_kwargs)
            retry_kwargs["ssl"] = "disable"
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**retry_kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    def attach(self, pool: asyncpg.Pool) -> None:
        """Use an externally managed pool (tests, embedding applications)."""
        self.pool = pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreNotInitializedError(
                f"Database '{self.db_name}' has no active connection pool; "
                "call connect() before starting any session"
            )
        return self.pool

    @asynccontextmanager
    async def transaction(
        self,
        *,
        timeout: float | None = None,
        operation: str = "transaction",
    ) -> AsyncIterator[asyncpg.Connection]:
        """Run the ``async with`` body in one read-committed transaction.

        The whole block, including waiting for a pool connection (itself
        capped at ``max_wait_s``), must finish within *timeout* seconds;
        otherwise the transaction is rolled back and
        :class:`TransactionTimeoutError` is raised.
        """
        pool = self._require_pool()
        budget = timeout if timeout is not None else self.default_timeout_s
        try:
            async with asyncio.timeout(budget):
                async with pool.acquire(timeout=self.max_wait_s) as conn:
                    async with conn.transaction(isolation="read_committed"):
                        yield conn
        except TimeoutError as exc:
            if isinstance(exc, TransactionTimeoutError):
                raise
            raise TransactionTimeoutError(operation=operation, timeout_s=budget) from exc

    # -- Pool proxy methods ------------------------------------------------

    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]:
        """Proxy to asyncpg Pool.fetch."""
        return await self._require_pool().fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchrow."""
        return await self._require_pool().fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        """Proxy to asyncpg Pool.fetchval."""
        return await self._require_pool().fetchval(query, *args, timeout=timeout)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        """Proxy to asyncpg Pool.execute."""
        return await self._require_pool().execute(query, *args, timeout=timeout)

    @classmethod
    def from_config(
        cls,
        database: DatabaseConfig,
        transactions: TransactionConfig,
    ) -> Database:
        """Create a Database from the [database] and [transactions] config sections.

        ``database.url`` wins; otherwise ``DATABASE_URL`` / ``POSTGRES_*`` are
        read from the environment.
        """
        params = db_params_from_url(database.url) if database.url else db_params_from_env()
        return cls(
            db_name=str(params.get("database") or database.name),
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
            min_pool_size=database.min_pool_size,
            max_pool_size=database.max_pool_size,
            default_timeout_s=transactions.default_timeout_s,
            max_wait_s=transactions.max_wait_s,
        )
