from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from bookwave.logging import get_logger
from bookwave.storage.common import Comparison, Filters, Row, ensure_table
from bookwave.storage.errors import ConstraintViolation, StoreUnavailable

REQUIRED_TABLES = ("profiles", "profile_details", "passwords", "tokens")


def build_where(filters: Optional[Filters]) -> Tuple[sql.Composable, List[Any]]:
    """Compose a WHERE clause for the shared filter dialect."""

    if not filters:
        return sql.SQL(""), []
    clauses: List[sql.Composable] = []
    params: List[Any] = []
    for column, expected in filters.items():
        ident = sql.Identifier(column)
        if isinstance(expected, Comparison):
            if expected.value is None and expected.op == "!=":
                clauses.append(sql.SQL("{} IS NOT NULL").format(ident))
                continue
            clauses.append(sql.SQL("{} " + expected.op + " %s").format(ident))
            params.append(expected.value)
        elif expected is None:
            clauses.append(sql.SQL("{} IS NULL").format(ident))
        else:
            clauses.append(sql.SQL("{} = %s").format(ident))
            params.append(expected)
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


class PostgresStore:
    """Thin Postgres-backed store for profiles, passwords and session tokens."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        await self.pool.open()
        self._opened = True
        await self._verify_required_schema()

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        if not self._opened:
            await self.open()
        try:
            async with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            diag = getattr(exc, "diag", None)
            constraint = getattr(diag, "constraint_name", None)
            raise ConstraintViolation("duplicate value", {"constraint": constraint}) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    async def _verify_required_schema(self) -> None:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            )
            present = {row["table_name"] for row in await cur.fetchall()}
        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            self.logger.error("postgres_schema_missing", missing=missing)
            raise RuntimeError(
                f"missing tables: {', '.join(missing)}; apply bookwave/storage/schema.sql"
            )

    async def find(self, table: str, filters: Filters) -> Optional[Row]:
        ensure_table(table)
        where, params = build_where(filters)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where + sql.SQL(" LIMIT 1")
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def find_all(self, table: str, filters: Optional[Filters] = None) -> List[Row]:
        ensure_table(table)
        where, params = build_where(filters)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return list(await cur.fetchall())

    async def insert(self, table: str, row: Row) -> Row:
        ensure_table(table)
        columns: Sequence[str] = list(row.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        async with self._connect() as conn:
            cur = await conn.execute(query, [row[c] for c in columns])
            return await cur.fetchone()

    async def update(self, table: str, filters: Filters, values: Row) -> int:
        ensure_table(table)
        if not values:
            return 0
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
        )
        where, params = build_where(filters)
        query = sql.SQL("UPDATE {} SET ").format(sql.Identifier(table)) + assignments + where
        async with self._connect() as conn:
            cur = await conn.execute(query, [*values.values(), *params])
            return cur.rowcount

    async def upsert(self, table: str, row: Row, conflict_key: str) -> Row:
        ensure_table(table)
        columns: Sequence[str] = list(row.keys())
        updates = [c for c in columns if c != conflict_key]
        if updates:
            on_conflict = sql.SQL("DO UPDATE SET ") + sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
            )
        else:
            # Touch the key so RETURNING yields the existing row
            on_conflict = sql.SQL("DO UPDATE SET {0} = EXCLUDED.{0}").format(
                sql.Identifier(conflict_key)
            )
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) ").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            sql.Identifier(conflict_key),
        ) + on_conflict + sql.SQL(" RETURNING *")
        async with self._connect() as conn:
            cur = await conn.execute(query, [row[c] for c in columns])
            return await cur.fetchone()

    async def delete(self, table: str, filters: Filters) -> int:
        ensure_table(table)
        where, params = build_where(filters)
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + where
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return cur.rowcount
