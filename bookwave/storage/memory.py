from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from bookwave.logging import get_logger
from bookwave.storage.common import (
    DATETIME_COLUMNS,
    TABLES,
    UNIQUE_KEYS,
    Filters,
    Row,
    ensure_table,
    matches,
)
from bookwave.storage.errors import ConstraintViolation


class MemoryStore:
    """In-process relational store used for tests and single-node development.

    Rows are plain dicts keyed by table. When ``state_path`` is set every
    mutation is flushed to a JSON file with a temp-file-then-rename write so a
    crash never leaves a truncated state file behind.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tables: Dict[str, List[Row]] = {table: [] for table in TABLES}
        # RLock for all data operations to allow nested acquisitions
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    async def find(self, table: str, filters: Filters) -> Optional[Row]:
        ensure_table(table)
        with self._data_lock:
            for row in self.tables[table]:
                if matches(row, filters):
                    return dict(row)
        return None

    async def find_all(self, table: str, filters: Optional[Filters] = None) -> List[Row]:
        ensure_table(table)
        with self._data_lock:
            return [dict(row) for row in self.tables[table] if matches(row, filters)]

    async def insert(self, table: str, row: Row) -> Row:
        ensure_table(table)
        with self._data_lock:
            self._check_unique(table, row)
            stored = dict(row)
            self.tables[table].append(stored)
            self._persist_state()
            return dict(stored)

    async def update(self, table: str, filters: Filters, values: Row) -> int:
        ensure_table(table)
        with self._data_lock:
            targets = [row for row in self.tables[table] if matches(row, filters)]
            for row in targets:
                self._check_unique(table, {**row, **values}, ignore=row)
            for row in targets:
                row.update(values)
            if targets:
                self._persist_state()
            return len(targets)

    async def upsert(self, table: str, row: Row, conflict_key: str) -> Row:
        ensure_table(table)
        if row.get(conflict_key) is None:
            raise ValueError(f"upsert requires a value for {conflict_key}")
        with self._data_lock:
            existing = next(
                (r for r in self.tables[table] if r.get(conflict_key) == row[conflict_key]),
                None,
            )
            if existing is None:
                self._check_unique(table, row)
                stored = dict(row)
                self.tables[table].append(stored)
            else:
                merged = {**existing, **row}
                self._check_unique(table, merged, ignore=existing)
                existing.update(row)
                stored = existing
            self._persist_state()
            return dict(stored)

    async def delete(self, table: str, filters: Filters) -> int:
        ensure_table(table)
        with self._data_lock:
            before = len(self.tables[table])
            self.tables[table] = [row for row in self.tables[table] if not matches(row, filters)]
            removed = before - len(self.tables[table])
            if removed:
                self._persist_state()
            return removed

    async def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def _check_unique(self, table: str, row: Row, *, ignore: Optional[Row] = None) -> None:
        for column in UNIQUE_KEYS[table]:
            value = row.get(column)
            if value is None:
                continue
            for other in self.tables[table]:
                if other is ignore:
                    continue
                if other.get(column) == value:
                    raise ConstraintViolation(
                        f"{column} already exists", {"table": table, "field": column}
                    )

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {table: [self._serialize_row(row) for row in rows] for table, rows in self.tables.items()}
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self.state_path)
        except Exception as exc:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        assert self.state_path is not None
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(self.state_path), error=str(exc))
            return False
        for table in TABLES:
            self.tables[table] = [
                self._deserialize_row(table, row) for row in data.get(table, [])
            ]
        self.logger.info(
            "memory_store_state_loaded",
            path=str(self.state_path),
            rows={table: len(rows) for table, rows in self.tables.items()},
        )
        return True

    @staticmethod
    def _serialize_row(row: Row) -> Dict[str, Any]:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in row.items()
        }

    @staticmethod
    def _deserialize_row(table: str, row: Dict[str, Any]) -> Row:
        restored = dict(row)
        for column in DATETIME_COLUMNS.get(table, ()):
            value = restored.get(column)
            if isinstance(value, str):
                restored[column] = datetime.fromisoformat(value)
        return restored
