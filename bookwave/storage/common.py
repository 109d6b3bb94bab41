"""Common storage utilities shared between memory and postgres implementations.

Filters are plain dicts mapping a column to either a literal (equality) or a
``Comparison`` built with ``lt``/``lte``/``gt``/``gte``/``ne``. Both backends
interpret them the same way so services never branch on the store type.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

Row = Dict[str, Any]
Filters = Mapping[str, Any]


@dataclass(frozen=True)
class Comparison:
    op: str
    value: Any


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "!=": operator.ne,
}


def lt(value: Any) -> Comparison:
    return Comparison("<", value)


def lte(value: Any) -> Comparison:
    return Comparison("<=", value)


def gt(value: Any) -> Comparison:
    return Comparison(">", value)


def gte(value: Any) -> Comparison:
    return Comparison(">=", value)


def ne(value: Any) -> Comparison:
    return Comparison("!=", value)


def matches(row: Mapping[str, Any], filters: Optional[Filters]) -> bool:
    """Return True when ``row`` satisfies every filter.

    Comparisons against a missing (None) column never match, mirroring SQL
    NULL semantics; ``ne(None)`` means ``IS NOT NULL``.
    """
    if not filters:
        return True
    for column, expected in filters.items():
        actual = row.get(column)
        if isinstance(expected, Comparison):
            if expected.op == "!=":
                if actual is None or actual == expected.value:
                    return False
                continue
            if actual is None or expected.value is None:
                return False
            if not _OPERATORS[expected.op](actual, expected.value):
                return False
        elif actual != expected:
            return False
    return True


# Unique keys enforced by both stores; mirrors schema.sql.
UNIQUE_KEYS: Dict[str, Sequence[str]] = {
    "profiles": ("id", "email"),
    "profile_details": ("profile_id",),
    "passwords": ("profile_id",),
    "tokens": ("id", "token_hash"),
}

DATETIME_COLUMNS: Dict[str, Sequence[str]] = {
    "profiles": ("created_at",),
    "profile_details": ("updated_at",),
    "passwords": ("updated_at",),
    "tokens": ("issued_at", "expires_at", "revoked_at", "rotated_at"),
}

TABLES = tuple(UNIQUE_KEYS.keys())


def ensure_table(table: str) -> None:
    if table not in UNIQUE_KEYS:
        raise ValueError(f"unknown table: {table}")


class RelationalStore(Protocol):
    """Generic query interface the session core depends on."""

    async def find(self, table: str, filters: Filters) -> Optional[Row]:
        ...

    async def find_all(self, table: str, filters: Optional[Filters] = None) -> List[Row]:
        ...

    async def insert(self, table: str, row: Row) -> Row:
        ...

    async def update(self, table: str, filters: Filters, values: Row) -> int:
        ...

    async def upsert(self, table: str, row: Row, conflict_key: str) -> Row:
        ...

    async def delete(self, table: str, filters: Filters) -> int:
        ...

    async def close(self) -> None:
        ...
