"""Backend adapters for the secondbrain store.

Two implementations share one contract:

    - SQLiteBackend: statements go to an embedded SQLite database.
    - EmulatedBackend: in-memory tables hydrated from, and written back to,
      a string key-value area. Used where no SQLite engine can be opened.

The repository talks to both through descriptor calls (select / insert /
update / delete), so the emulated backend never has to parse the SQL it
writes. Only the raw ``query_all`` escape hatch is parsed there, and only
for the single-table equality shape.

The backend is chosen once by open_backend() and never branched on later.
"""

import json
import logging
import os
import re
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from db.client import get_connection, native_available
from db.codec import encode_value
from db.formatter import (
    PLACEHOLDER,
    StatementFormatError,
    format_statement,
    quote_identifier,
)
from db.schema import ID_COLUMN, TABLES, TableSchema

logger = logging.getLogger(__name__)

BACKEND_KINDS = ("auto", "native", "emulated")

Row = dict[str, Any]


class BackendError(Exception):
    """Raised when a statement fails at the storage engine."""


class UnsupportedQueryError(BackendError):
    """Raised by the emulated backend for statements it cannot interpret."""


@dataclass(frozen=True)
class Select:
    """Single-table read: optional equality filter and optional ordering."""

    table: str
    where: tuple[str, Any] | None = None
    order_by: str | None = None
    descending: bool = False
    columns: tuple[str, ...] | None = None

    def to_sql(self) -> tuple[str, tuple[Any, ...]]:
        cols = "*"
        if self.columns:
            cols = ", ".join(quote_identifier(c) for c in self.columns)
        sql = f"SELECT {cols} FROM {quote_identifier(self.table)}"
        params: tuple[Any, ...] = ()
        if self.where is not None:
            key, value = self.where
            if value is None:
                sql += f" WHERE {quote_identifier(key)} IS NULL"
            else:
                sql += f" WHERE {quote_identifier(key)} = ?"
                params = (value,)
        if self.order_by:
            direction = "DESC" if self.descending else "ASC"
            sql += f" ORDER BY {quote_identifier(self.order_by)} {direction}"
        return sql, params


class Backend(ABC):
    """Storage engine contract shared by both variants."""

    kind: str = "abstract"
    enforces_cascade: bool = False
    enforces_foreign_keys: bool = False

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None: ...

    async def execute_many(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        """Run ``(sql, params)`` statements in order."""
        for sql, params in statements:
            await self.execute(sql, params)

    @abstractmethod
    async def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]: ...

    @abstractmethod
    async def ensure_table(self, schema: TableSchema) -> None: ...

    @abstractmethod
    async def select(self, query: Select) -> list[Row]: ...

    @abstractmethod
    async def insert(
        self,
        table: str,
        row: Row,
        *,
        replace: bool = False,
        key_column: str = ID_COLUMN,
    ) -> None: ...

    @abstractmethod
    async def update(
        self, table: str, key: Any, row: Row, *, key_column: str = ID_COLUMN
    ) -> int: ...

    @abstractmethod
    async def delete(self, table: str, key: Any, *, key_column: str = ID_COLUMN) -> int: ...

    @abstractmethod
    async def close(self) -> None: ...


def _describe(sql: str, params: Sequence[Any]) -> str:
    """Statement text for logs, with parameters inlined where possible."""
    if not params:
        return sql
    try:
        return format_statement(sql, params)
    except StatementFormatError:
        return f"{sql} -- params={list(params)!r}"


# ── Native backend ─────────────────────────────────────────


class SQLiteBackend(Backend):
    """Statements pass through to SQLite with bound parameters."""

    kind = "native"
    enforces_cascade = True
    enforces_foreign_keys = True

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        try:
            self._conn: sqlite3.Connection | None = get_connection(db_path)
        except sqlite3.Error as e:
            raise BackendError(f"Cannot open SQLite database {db_path}: {e}") from e

    # Calls block the event loop for the length of one statement. The
    # connection is only ever used from the loop's thread.
    def _run(self, sql: str, params: Sequence[Any], *, commit: bool) -> sqlite3.Cursor:
        if self._conn is None:
            raise BackendError("Backend is closed")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("SQL: %s", _describe(sql, params))
        try:
            cursor = self._conn.execute(sql, tuple(params))
            if commit:
                self._conn.commit()
            return cursor
        except sqlite3.Error as e:
            logger.error("Statement failed: %s (%s)", sql, e)
            raise BackendError(str(e)) from e

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        self._run(sql, [encode_value(p) for p in params], commit=True)

    async def execute_many(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        """Run statements in one transaction; a failure rolls back the batch."""
        try:
            for sql, params in statements:
                self._run(sql, [encode_value(p) for p in params], commit=False)
            if self._conn is not None:
                self._conn.commit()
        except BackendError:
            if self._conn is not None:
                self._conn.rollback()
            raise

    async def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        cursor = self._run(sql, [encode_value(p) for p in params], commit=False)
        return [dict(row) for row in cursor.fetchall()]

    async def ensure_table(self, schema: TableSchema) -> None:
        self._run(schema.create_statement(), (), commit=True)

    async def select(self, query: Select) -> list[Row]:
        sql, params = query.to_sql()
        cursor = self._run(sql, params, commit=False)
        return [dict(row) for row in cursor.fetchall()]

    async def insert(
        self,
        table: str,
        row: Row,
        *,
        replace: bool = False,
        key_column: str = ID_COLUMN,
    ) -> None:
        columns = list(row)
        names = ", ".join(quote_identifier(c) for c in columns)
        placeholders = ", ".join(PLACEHOLDER for _ in columns)
        sql = f"INSERT INTO {quote_identifier(table)} ({names}) VALUES ({placeholders})"
        if replace:
            # Upsert in place; REPLACE would delete first and fire cascades.
            assignments = ", ".join(
                f"{quote_identifier(c)} = excluded.{quote_identifier(c)}"
                for c in columns
                if c != key_column
            )
            sql += f" ON CONFLICT({quote_identifier(key_column)}) DO UPDATE SET {assignments}"
        self._run(sql, [row[c] for c in columns], commit=True)

    async def update(
        self, table: str, key: Any, row: Row, *, key_column: str = ID_COLUMN
    ) -> int:
        columns = [c for c in row if c != key_column]
        if not columns:
            return 0
        assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in columns)
        sql = (
            f"UPDATE {quote_identifier(table)} SET {assignments} "
            f"WHERE {quote_identifier(key_column)} = ?"
        )
        cursor = self._run(sql, [row[c] for c in columns] + [key], commit=True)
        return cursor.rowcount

    async def delete(self, table: str, key: Any, *, key_column: str = ID_COLUMN) -> int:
        sql = f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(key_column)} = ?"
        cursor = self._run(sql, (key,), commit=True)
        return cursor.rowcount

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Closed SQLite store %s", self.db_path)


# ── Key-value areas for the emulated backend ─────────────────


class KeyValueStore(ABC):
    """String key -> string value area (the browser's localStorage shape)."""

    @abstractmethod
    def get_item(self, key: str) -> str | None: ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...

    def set_items(self, items: dict[str, str]) -> None:
        for key, value in items.items():
            self.set_item(key, value)


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """Key-value area kept as one JSON object in a file.

    Every write rewrites the file through a temp file + rename; set_items()
    writes a whole batch with one rewrite.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._items: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._items is None:
            if self.path.exists():
                try:
                    data = json.loads(self.path.read_text())
                except json.JSONDecodeError as e:
                    raise BackendError(f"Invalid JSON in {self.path}: {e}") from e
                if not isinstance(data, dict):
                    raise BackendError(f"Expected a JSON object in {self.path}")
                self._items = {str(k): str(v) for k, v in data.items()}
            else:
                self._items = {}
        return self._items

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name)
        with os.fdopen(fd, "w") as fh:
            json.dump(self._load(), fh)
        os.replace(tmp, self.path)

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._save()

    def set_items(self, items: dict[str, str]) -> None:
        self._load().update(items)
        self._save()

    def remove_item(self, key: str) -> None:
        if self._load().pop(key, None) is not None:
            self._save()


# ── Emulated backend ─────────────────────────────────────────


# SELECT <* | col, ...> FROM t [WHERE col = <?|literal>] [ORDER BY col [ASC|DESC]]
_SELECT_RE = re.compile(
    r"""^\s*SELECT\s+(?P<cols>\*|"?\w+"?(?:\s*,\s*"?\w+"?)*)
        \s+FROM\s+"?(?P<table>\w+)"?
        (?:\s+WHERE\s+"?(?P<key>\w+)"?\s*=\s*
            (?P<value>\?|'(?:[^']|'')*'|-?\d+(?:\.\d+)?))?
        (?:\s+ORDER\s+BY\s+"?(?P<order>\w+)"?(?:\s+(?P<direction>ASC|DESC))?)?
        \s*;?\s*$""",
    re.IGNORECASE | re.VERBOSE,
)


def _parse_literal(text: str) -> Any:
    if text.startswith("'"):
        return text[1:-1].replace("''", "'")
    if "." in text:
        return float(text)
    return int(text)


def _with_affinity(schema: TableSchema | None, column: str, value: Any) -> Any:
    """Convert a comparison value the way SQLite's column affinity does."""
    declared = schema.get_field(column) if schema is not None else None
    if declared is None or value is None:
        return value
    storage = declared.type.sql_type
    if storage in ("INTEGER", "REAL") and isinstance(value, str):
        for convert in (int, float):
            try:
                return convert(value)
            except ValueError:
                continue
    elif storage == "TEXT" and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _sort_key(column: str):
    # SQLite orders NULL before any value.
    return lambda row: (row.get(column) is not None, row.get(column))


class EmulatedBackend(Backend):
    """In-memory tables persisted to a key-value area on flush/close.

    Each table lives under the key ``"{store_name}_{table}"`` as a JSON
    array of already-encoded rows. Tables are hydrated lazily on first use.
    Nothing reaches the key-value area until flush() or close().
    """

    kind = "emulated"
    enforces_cascade = False

    def __init__(self, kv_store: KeyValueStore, store_name: str = "secondbrain") -> None:
        self.kv_store = kv_store
        self.store_name = store_name
        self._tables: dict[str, list[Row]] = {}
        self._declared: set[str] = set()
        self._schemas: dict[str, TableSchema] = {}
        self._closed = False

    def storage_key(self, table: str) -> str:
        return f"{self.store_name}_{table}"

    def _rows(self, table: str) -> list[Row]:
        if self._closed:
            raise BackendError("Backend is closed")
        if table in self._tables:
            return self._tables[table]

        raw = self.kv_store.get_item(self.storage_key(table))
        if raw is None:
            if table not in self._declared:
                raise BackendError(f"no such table: {table}")
            rows: list[Row] = []
        else:
            try:
                rows = json.loads(raw)
            except json.JSONDecodeError as e:
                raise BackendError(f"Corrupt stored table '{table}': {e}") from e
            if not isinstance(rows, list):
                raise BackendError(f"Corrupt stored table '{table}': expected a list")
            logger.debug("Hydrated %d row(s) for %s", len(rows), table)
        self._tables[table] = rows
        return rows

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        if self._closed:
            raise BackendError("Backend is closed")
        if sql.lstrip().upper().startswith("CREATE"):
            logger.debug("Emulated backend ignoring DDL: %s", sql.strip().splitlines()[0])
            return
        raise UnsupportedQueryError(
            "The emulated backend only accepts writes through the repository"
        )

    async def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        match = _SELECT_RE.match(sql)
        if match is None:
            raise UnsupportedQueryError(f"Unsupported query for emulated backend: {sql}")

        raw_value = match.group("value")
        expected = 1 if raw_value == PLACEHOLDER else 0
        if len(params) != expected:
            raise BackendError(
                f"Incorrect number of bindings supplied. The current statement "
                f"uses {expected}, and there are {len(params)} supplied."
            )

        where = None
        if match.group("key"):
            if raw_value == PLACEHOLDER:
                value = encode_value(params[0])
            else:
                value = _parse_literal(raw_value)
            key, table = match.group("key"), match.group("table")
            schema = self._schemas.get(table) or TABLES.get(table)
            where = (key, _with_affinity(schema, key, value))
            if where[1] is None:
                # "= NULL" never matches.
                self._rows(table)
                return []

        cols = match.group("cols")
        columns = None
        if cols.strip() != "*":
            columns = tuple(c.strip().strip('"') for c in cols.split(","))

        direction = (match.group("direction") or "ASC").upper()
        return await self.select(
            Select(
                table=match.group("table"),
                where=where,
                order_by=match.group("order"),
                descending=direction == "DESC",
                columns=columns,
            )
        )

    async def ensure_table(self, schema: TableSchema) -> None:
        self._declared.add(schema.name)
        self._schemas[schema.name] = schema
        self._rows(schema.name)

    async def select(self, query: Select) -> list[Row]:
        rows = self._rows(query.table)
        if query.where is not None:
            key, value = query.where
            rows = [r for r in rows if r.get(key) == value]
        if query.order_by:
            rows = sorted(rows, key=_sort_key(query.order_by), reverse=query.descending)
        if query.columns:
            return [{c: r.get(c) for c in query.columns} for r in rows]
        return [dict(r) for r in rows]

    async def insert(
        self,
        table: str,
        row: Row,
        *,
        replace: bool = False,
        key_column: str = ID_COLUMN,
    ) -> None:
        rows = self._rows(table)
        key = row.get(key_column)
        if key is None:
            raise BackendError(f"NOT NULL constraint failed: {table}.{key_column}")
        for i, existing in enumerate(rows):
            if existing.get(key_column) == key:
                if not replace:
                    logger.error("Duplicate key %r in %s", key, table)
                    raise BackendError(f"UNIQUE constraint failed: {table}.{key_column}")
                rows[i] = {**existing, **row}
                return
        rows.append(dict(row))

    async def update(
        self, table: str, key: Any, row: Row, *, key_column: str = ID_COLUMN
    ) -> int:
        changes = {c: v for c, v in row.items() if c != key_column}
        count = 0
        for existing in self._rows(table):
            if existing.get(key_column) == key:
                existing.update(changes)
                count += 1
        return count

    async def delete(self, table: str, key: Any, *, key_column: str = ID_COLUMN) -> int:
        rows = self._rows(table)
        kept = [r for r in rows if r.get(key_column) != key]
        removed = len(rows) - len(kept)
        rows[:] = kept
        return removed

    def flush(self) -> None:
        """Write every hydrated or declared table back to the key-value area."""
        pending: dict[str, str] = {}
        for table in sorted(self._declared | set(self._tables)):
            key = self.storage_key(table)
            if table in self._tables:
                pending[key] = json.dumps(self._tables[table])
            elif self.kv_store.get_item(key) is None:
                pending[key] = "[]"
        if pending:
            self.kv_store.set_items(pending)

    async def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        logger.info("Flushed emulated store '%s'", self.store_name)


def open_backend(
    kind: str = "auto",
    *,
    db_path: str | Path | None = None,
    kv_store: KeyValueStore | None = None,
    kv_path: str | Path | None = None,
    store_name: str = "secondbrain",
) -> Backend:
    """Construct the backend once, probing for SQLite when ``kind`` is "auto"."""
    if kind not in BACKEND_KINDS:
        raise ValueError(f"Unknown backend '{kind}'. Expected one of {BACKEND_KINDS}")

    if kind == "auto":
        kind = "native" if db_path is not None and native_available() else "emulated"
        logger.info("Backend probe selected the %s backend", kind)

    if kind == "native":
        if db_path is None:
            raise ValueError("db_path is required for the native backend")
        return SQLiteBackend(db_path)

    if kv_store is None:
        kv_store = JsonFileKeyValueStore(kv_path) if kv_path else MemoryKeyValueStore()
    return EmulatedBackend(kv_store, store_name)
