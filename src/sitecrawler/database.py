"""
Database abstraction layer for supporting both SQLite and PostgreSQL backends.

This module provides a unified interface for database operations that can work
with both SQLite (via aiosqlite) and PostgreSQL (via asyncpg). Connections are
handed out by an explicitly constructed DatabasePool; there is no process-wide
connection.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional, List, Tuple, Any
from dataclasses import dataclass

import aiosqlite
import asyncpg


@dataclass
class DatabaseConfig:
    """Configuration for database connections."""
    backend: str = "sqlite"  # "sqlite" or "postgresql"

    # SQLite configuration
    sqlite_path: str = ""
    sqlite_timeout: float = 30.0

    # PostgreSQL configuration
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "sitecrawler"
    postgres_user: str = "crawler_user"
    postgres_password: str = ""
    postgres_pool_size: int = 10
    postgres_max_queries: int = 50000
    postgres_max_inactive_connection_lifetime: float = 300.0

    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"


class DatabaseConnection(ABC):
    """Abstract base class for database connections."""

    @abstractmethod
    async def execute(self, query: str, *args) -> Any:
        """Execute a query and return the result."""

    @abstractmethod
    async def executemany(self, query: str, args_list: List[Tuple]) -> Any:
        """Execute a query multiple times with different parameters."""

    @abstractmethod
    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        """Fetch one row from a query."""

    @abstractmethod
    async def fetchall(self, query: str, *args) -> List[Tuple]:
        """Fetch all rows from a query."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction."""

    @abstractmethod
    async def close(self) -> None:
        """Close the database connection."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SQLiteConnection(DatabaseConnection):
    """SQLite database connection wrapper."""

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.conn: Optional[aiosqlite.Connection] = None

    async def __aenter__(self):
        self.conn = await aiosqlite.connect(self.db_path, timeout=self.timeout)
        await self._optimize_connection()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            if exc_type is not None:
                await self.conn.rollback()
            await self.conn.close()
            self.conn = None

    async def _optimize_connection(self):
        """Apply SQLite performance optimizations."""
        if self.conn:
            await self.conn.execute("PRAGMA journal_mode=WAL")
            await self.conn.execute("PRAGMA synchronous=NORMAL")
            await self.conn.execute("PRAGMA cache_size=10000")
            await self.conn.execute("PRAGMA temp_store=MEMORY")

    def _require(self) -> aiosqlite.Connection:
        if not self.conn:
            raise RuntimeError("Connection not established")
        return self.conn

    async def execute(self, query: str, *args) -> aiosqlite.Cursor:
        return await self._require().execute(query, args)

    async def executemany(self, query: str, args_list: List[Tuple]) -> aiosqlite.Cursor:
        return await self._require().executemany(query, args_list)

    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        cursor = await self._require().execute(query, args)
        return await cursor.fetchone()

    async def fetchall(self, query: str, *args) -> List[Tuple]:
        # Also used for INSERT/UPDATE ... RETURNING so the statement is fully stepped before commit
        cursor = await self._require().execute(query, args)
        return list(await cursor.fetchall())

    async def executescript(self, script: str) -> None:
        await self._require().executescript(script)

    async def commit(self) -> None:
        if self.conn:
            await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None


class PostgreSQLConnectionWrapper(DatabaseConnection):
    """Wrapper for a pooled asyncpg connection to match our interface."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool
        self.conn: Optional[asyncpg.Connection] = None

    async def __aenter__(self):
        self.conn = await self.pool.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _require(self) -> asyncpg.Connection:
        if not self.conn:
            raise RuntimeError("Connection not established")
        return self.conn

    async def execute(self, query: str, *args) -> str:
        return await self._require().execute(query, *args)

    async def executemany(self, query: str, args_list: List[Tuple]) -> None:
        return await self._require().executemany(query, args_list)

    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        row = await self._require().fetchrow(query, *args)
        return tuple(row) if row is not None else None

    async def fetchall(self, query: str, *args) -> List[Tuple]:
        return [tuple(row) for row in await self._require().fetch(query, *args)]

    async def commit(self) -> None:
        # PostgreSQL auto-commits by default in asyncpg
        pass

    async def close(self) -> None:
        if self.conn is not None:
            await self.pool.release(self.conn)
            self.conn = None


class DatabasePool:
    """Hands out connections for the configured backend.

    PostgreSQL connections come from an asyncpg pool; SQLite gets a fresh
    aiosqlite connection per acquisition.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Initialize the connection pool."""
        if self._initialized:
            return
        if self.config.is_postgres:
            self.pool = await asyncpg.create_pool(
                host=self.config.postgres_host,
                port=self.config.postgres_port,
                database=self.config.postgres_database,
                user=self.config.postgres_user,
                password=self.config.postgres_password,
                min_size=1,
                max_size=self.config.postgres_pool_size,
                max_queries=self.config.postgres_max_queries,
                max_inactive_connection_lifetime=self.config.postgres_max_inactive_connection_lifetime
            )
        elif self.config.backend != "sqlite":
            raise ValueError(f"Unsupported database backend: {self.config.backend}")
        self._initialized = True

    def acquire(self) -> DatabaseConnection:
        """Return an un-entered connection; use it as an async context manager."""
        if not self._initialized:
            raise RuntimeError("Database pool not initialized")
        if self.config.is_postgres:
            return PostgreSQLConnectionWrapper(self.pool)
        return SQLiteConnection(self.config.sqlite_path, timeout=self.config.sqlite_timeout)

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
        self._initialized = False
