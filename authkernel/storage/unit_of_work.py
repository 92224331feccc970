"""Transaction-per-request wrapper over a psycopg async connection pool.

One :class:`UnitOfWork` owns one pooled connection and one transaction for
the lifetime of a logical request. The active unit is bound to the running
task through a ``ContextVar`` so concurrent requests never share a
transaction, and store methods can find it without threading it through
every call.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
)

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from authkernel.logging import get_logger
from authkernel.service.errors import ResourceUnavailableError
from authkernel.storage.errors import ConstraintViolation, TableNotAllowed

logger = get_logger(__name__)

ALLOWED_TABLES = frozenset(
    {
        "users",
        "user_sessions",
        "audit_logs",
        "error_logs",
        "password_reset_tokens",
    }
)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

_current_unit: ContextVar[Optional["UnitOfWork"]] = ContextVar(
    "authkernel_unit_of_work", default=None
)


def validate_table_name(table: str) -> str:
    if not isinstance(table, str) or table not in ALLOWED_TABLES:
        raise TableNotAllowed(str(table))
    return table


def _validate_column(column: str) -> str:
    if not _IDENTIFIER.match(column):
        raise ValueError(f"invalid column name: {column!r}")
    return column


def current_unit() -> Optional["UnitOfWork"]:
    return _current_unit.get()


class UnitOfWork:
    """A single connection plus transaction, released exactly once."""

    def __init__(self, pool: Any, *, timeout: Optional[float] = None) -> None:
        self.pool = pool
        self.timeout = timeout
        self.conn: Any = None
        self.in_transaction = False
        self._released = False
        self._savepoint_seq = 0
        self._on_commit: List[Callable[[], Awaitable[None]]] = []

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.commit()
            else:
                # Covers CancelledError as well: an aborted request never commits
                await self.rollback()
        finally:
            await self.release()

    async def begin(self) -> None:
        if self.conn is not None or self._released:
            raise RuntimeError("unit of work already started")
        try:
            self.conn = await self.pool.getconn(timeout=self.timeout)
        except (PoolTimeout, psycopg.OperationalError) as exc:
            logger.error("db_connection_unavailable", error_type=type(exc).__name__)
            raise ResourceUnavailableError("database unavailable") from exc
        try:
            await self.conn.execute("BEGIN")
        except psycopg.OperationalError as exc:
            await self.release()
            raise ResourceUnavailableError("database unavailable") from exc
        self.in_transaction = True

    def on_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Run ``callback`` once this unit's writes are visible to other connections."""
        self._require_transaction()
        self._on_commit.append(callback)

    async def commit(self) -> None:
        self._require_transaction()
        await self.conn.execute("COMMIT")
        self.in_transaction = False
        callbacks, self._on_commit = self._on_commit, []
        for callback in callbacks:
            await callback()

    async def rollback(self) -> None:
        self._on_commit = []
        if self.conn is None or not self.in_transaction:
            return
        try:
            await self.conn.execute("ROLLBACK")
        finally:
            self.in_transaction = False

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            if self.in_transaction:
                logger.warning("unit_of_work_leaked_transaction")
                self.in_transaction = False
                await conn.execute("ROLLBACK")
        except Exception as exc:
            logger.error(
                "unit_of_work_release_rollback_failed",
                error_type=type(exc).__name__,
            )
        finally:
            await self.pool.putconn(conn)

    @asynccontextmanager
    async def savepoint(self, name: Optional[str] = None) -> AsyncIterator[str]:
        """Nested partial-rollback scope inside the current transaction."""
        self._require_transaction()
        self._savepoint_seq += 1
        name = name or f"sp_{self._savepoint_seq}"
        if not _IDENTIFIER.match(name):
            raise ValueError(f"invalid savepoint name: {name!r}")
        await self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield name
        except BaseException:
            await self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            await self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            await self.conn.execute(f"RELEASE SAVEPOINT {name}")

    def _require_transaction(self) -> None:
        if self.conn is None or not self.in_transaction:
            raise RuntimeError("no open transaction")

    # ------------------------------------------------------------------
    # query execution
    # ------------------------------------------------------------------

    async def execute(self, query: Any, params: Optional[Iterable[Any]] = None) -> Any:
        self._require_transaction()
        try:
            return await self.conn.execute(query, params)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "duplicate value", {"constraint": getattr(exc.diag, "constraint_name", None)}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "foreign key violation",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.OperationalError as exc:
            logger.error("db_operation_failed", error_type=type(exc).__name__)
            raise ResourceUnavailableError("database unavailable") from exc

    async def fetch_one(
        self, query: Any, params: Optional[Iterable[Any]] = None
    ) -> Optional[Dict[str, Any]]:
        cur = await self.execute(query, params)
        return await cur.fetchone()

    async def fetch_all(
        self, query: Any, params: Optional[Iterable[Any]] = None
    ) -> List[Dict[str, Any]]:
        cur = await self.execute(query, params)
        return list(await cur.fetchall())

    async def execute_rowcount(
        self, query: Any, params: Optional[Iterable[Any]] = None
    ) -> int:
        cur = await self.execute(query, params)
        return max(cur.rowcount, 0)

    # ------------------------------------------------------------------
    # generic helpers (table names checked against ALLOWED_TABLES)
    # ------------------------------------------------------------------

    @staticmethod
    def _where(where: Mapping[str, Any]) -> sql.Composable:
        if not where:
            raise ValueError("refusing to run an unconditional statement")
        return sql.SQL(" AND ").join(
            sql.SQL("{} = %s").format(sql.Identifier(_validate_column(col)))
            for col in where
        )

    async def insert(
        self, table: str, values: Mapping[str, Any]
    ) -> Dict[str, Any]:
        validate_table_name(table)
        columns = [_validate_column(col) for col in values]
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(col) for col in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        row = await self.fetch_one(query, list(values.values()))
        return dict(row) if row else {}

    async def find_one(
        self, table: str, where: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        validate_table_name(table)
        query = sql.SQL("SELECT * FROM {} WHERE {} LIMIT 1").format(
            sql.Identifier(table), self._where(where)
        )
        return await self.fetch_one(query, list(where.values()))

    async def find_many(
        self,
        table: str,
        where: Mapping[str, Any],
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        validate_table_name(table)
        parts = [
            sql.SQL("SELECT * FROM {} WHERE {}").format(
                sql.Identifier(table), self._where(where)
            )
        ]
        params: List[Any] = list(where.values())
        if order_by:
            parts.append(
                sql.SQL("ORDER BY {} {}").format(
                    sql.Identifier(_validate_column(order_by)),
                    sql.SQL("DESC" if descending else "ASC"),
                )
            )
        if limit is not None:
            parts.append(sql.SQL("LIMIT %s"))
            params.append(int(limit))
        return await self.fetch_all(sql.SQL(" ").join(parts), params)

    async def update(
        self, table: str, values: Mapping[str, Any], where: Mapping[str, Any]
    ) -> int:
        validate_table_name(table)
        if not values:
            return 0
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(_validate_column(col)))
            for col in values
        )
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(
            sql.Identifier(table), assignments, self._where(where)
        )
        return await self.execute_rowcount(
            query, [*values.values(), *where.values()]
        )

    async def delete(self, table: str, where: Mapping[str, Any]) -> int:
        validate_table_name(table)
        query = sql.SQL("DELETE FROM {} WHERE {}").format(
            sql.Identifier(table), self._where(where)
        )
        return await self.execute_rowcount(query, list(where.values()))


class Database:
    """Owns the process-wide connection pool and hands out units of work."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        pool: Any = None,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.pool = pool or AsyncConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )
        self._opened = pool is not None

    async def open(self) -> None:
        if self._opened:
            return
        try:
            await self.pool.open(wait=True, timeout=self.timeout)
        except (PoolTimeout, psycopg.OperationalError) as exc:
            logger.error("db_pool_open_failed", error_type=type(exc).__name__)
            raise ResourceUnavailableError("database unavailable") from exc
        self._opened = True
        logger.info("db_pool_opened")

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        """Bind a unit to the current task; nested calls join the outer unit."""
        existing = _current_unit.get()
        if existing is not None:
            yield existing
            return
        async with self._bound_unit() as unit:
            yield unit

    @asynccontextmanager
    async def detached(self) -> AsyncIterator[UnitOfWork]:
        """Run in an independent unit that commits regardless of the caller's outcome."""
        async with self._bound_unit() as unit:
            yield unit

    @asynccontextmanager
    async def _bound_unit(self) -> AsyncIterator[UnitOfWork]:
        await self.open()
        unit = UnitOfWork(self.pool, timeout=self.timeout)
        token = _current_unit.set(unit)
        try:
            async with unit:
                yield unit
        finally:
            _current_unit.reset(token)
