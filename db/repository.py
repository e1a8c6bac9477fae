"""Generic entity repository: the CRUD façade over a backend.

Entities are plain dicts keyed by the declared field names of their table.
Only declared fields are ever written; ids and timestamps are assigned here.
Operations are single statements or short statement sequences with no
enclosing transaction, so update()'s read-modify-write and the
caller-managed cascade in delete() are not atomic.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from db.backends import Backend, BackendError, KeyValueStore, Select, open_backend
from db.codec import decode_row, encode, encode_row
from db.migrations import SCHEMA_VERSION, SchemaManager
from db.schema import (
    CREATED_AT,
    ID_COLUMN,
    SUBTASK,
    TABLES,
    UPDATED_AT,
    TableSchema,
    dependents_of,
)

logger = logging.getLogger(__name__)

Entity = dict[str, Any]

PROTECTED_FIELDS = (ID_COLUMN, CREATED_AT, UPDATED_AT)


class RepositoryError(Exception):
    """Base class for repository failures."""


class NotReadyError(RepositoryError):
    """Raised when an operation is attempted before the store is initialized."""


class NotFoundError(RepositoryError):
    """Raised when update() targets an id that does not exist."""


class InvalidFieldError(RepositoryError):
    """Raised for undeclared fields, missing required fields or bad enum values."""


@dataclass(frozen=True)
class ChangeEvent:
    action: str  # created | updated | deleted | ready
    table: str | None = None
    entity_id: str | None = None


ChangeListener = Callable[[ChangeEvent], Awaitable[None] | None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class EntityRepository:
    """CRUD over the declared entity tables of one store."""

    def __init__(
        self,
        backend: Backend,
        *,
        clock: Callable[[], datetime] = _now,
        id_factory: Callable[[], str] = _uuid,
        user_id: str | None = None,
        schema_version: int = SCHEMA_VERSION,
    ) -> None:
        self.backend = backend
        self.user_id = user_id
        self._clock = clock
        self._id_factory = id_factory
        self._schema = SchemaManager(backend, schema_version)
        self._ready = False
        self._listeners: list[ChangeListener] = []

    # ── Lifecycle ──────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def schema_state(self) -> str:
        return self._schema.state.value

    async def initialize(self) -> "EntityRepository":
        await self._schema.initialize()
        self._ready = True
        logger.info("Store ready on %s backend", self.backend.kind)
        await self._notify(ChangeEvent("ready"))
        return self

    async def close(self) -> None:
        self._ready = False
        await self.backend.close()

    # ── Change notifications ───────────────────────────────

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change listener failed for %s", event)

    # ── Helpers ────────────────────────────────────────────

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotReadyError("Database is not initialized")

    def _table(self, table: str) -> TableSchema:
        self._require_ready()
        schema = TABLES.get(table)
        if schema is None:
            raise InvalidFieldError(f"Unknown table '{table}'")
        return schema

    def _timestamp(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _check_fields(self, schema: TableSchema, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            declared = schema.get_field(name)
            if declared is None:
                raise InvalidFieldError(f"Unknown field '{name}' for {schema.name}")
            if declared.choices and value is not None and value not in declared.choices:
                raise InvalidFieldError(
                    f"Invalid value {value!r} for {schema.name}.{name}. "
                    f"Expected one of {list(declared.choices)}"
                )

    def _check_required(self, schema: TableSchema, entity: Entity) -> None:
        missing = [
            f.name
            for f in schema.fields
            if f.required and f.name not in PROTECTED_FIELDS and entity.get(f.name) is None
        ]
        if missing:
            raise InvalidFieldError(
                f"Missing required field(s) for {schema.name}: {', '.join(missing)}"
            )

    async def _check_references(self, schema: TableSchema, row: dict[str, Any]) -> None:
        if self.backend.enforces_foreign_keys:
            return
        for fk in schema.foreign_keys:
            value = row.get(fk.column)
            if value is None:
                continue
            found = await self.backend.select(
                Select(fk.ref_table, where=(fk.ref_column, value), columns=(fk.ref_column,))
            )
            if not found:
                logger.error(
                    "%s.%s=%r names no %s row", schema.name, fk.column, value, fk.ref_table
                )
                raise BackendError("FOREIGN KEY constraint failed")

    # ── CRUD ───────────────────────────────────────────────

    async def create(self, table: str, fields: dict[str, Any]) -> Entity:
        """Insert a new entity. ``_id`` may be supplied; timestamps may not."""
        schema = self._table(table)
        fields = dict(fields)
        entity_id = fields.pop(ID_COLUMN, None) or self._id_factory()
        for name in (CREATED_AT, UPDATED_AT):
            if name in fields:
                raise InvalidFieldError(f"'{name}' is managed by the store")
        self._check_fields(schema, fields)

        now = self._timestamp()
        entity = {**fields, ID_COLUMN: entity_id, CREATED_AT: now, UPDATED_AT: now}
        self._check_required(schema, entity)

        row = encode_row(schema, entity)
        await self._check_references(schema, row)
        await self.backend.insert(table, row)
        await self._notify(ChangeEvent("created", table, entity_id))
        return decode_row(schema, row)

    async def update(self, table: str, entity_id: str, fields: dict[str, Any]) -> Entity:
        """Merge ``fields`` onto an existing entity and refresh ``updatedAt``."""
        schema = self._table(table)
        for name in PROTECTED_FIELDS:
            if name in fields:
                raise InvalidFieldError(f"'{name}' cannot be updated")
        self._check_fields(schema, fields)

        existing = await self.get_by_id(table, entity_id)
        if existing is None:
            raise NotFoundError(f"Object with id {entity_id} not found in {table}")

        merged = {**existing, **fields}
        now = self._timestamp()
        previous = existing[UPDATED_AT]
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        merged[UPDATED_AT] = now
        self._check_required(schema, merged)

        row = encode_row(schema, merged)
        await self._check_references(schema, row)
        await self.backend.update(table, entity_id, row)
        await self._notify(ChangeEvent("updated", table, entity_id))
        return decode_row(schema, row)

    async def delete(self, table: str, entity_id: str) -> None:
        """Delete by id. Deleting a missing id is a no-op."""
        self._table(table)
        dependents = await self._dependents(table, entity_id)
        if self.backend.enforces_cascade:
            removed = await self.backend.delete(table, entity_id)
            gone = dependents if removed else []
        else:
            gone = [
                (child, child_id)
                for child, child_id in dependents
                if await self.backend.delete(child, child_id)
            ]
            removed = await self.backend.delete(table, entity_id)
        for child, child_id in gone:
            await self._notify(ChangeEvent("deleted", child, child_id))
        if removed:
            await self._notify(ChangeEvent("deleted", table, entity_id))

    async def _dependents(self, table: str, entity_id: str) -> list[tuple[str, str]]:
        """``(table, id)`` of every row deleted along with this one, deepest first."""
        found: list[tuple[str, str]] = []
        for child, fk in dependents_of(table):
            rows = await self.backend.select(
                Select(child.name, where=(fk.column, entity_id), columns=(ID_COLUMN,))
            )
            for row in rows:
                found.extend(await self._dependents(child.name, row[ID_COLUMN]))
                found.append((child.name, row[ID_COLUMN]))
        return found

    # ── Reads ──────────────────────────────────────────────

    async def get_by_id(self, table: str, entity_id: str) -> Entity | None:
        schema = self._table(table)
        rows = await self.backend.select(Select(table, where=(ID_COLUMN, entity_id)))
        return decode_row(schema, rows[0]) if rows else None

    async def get_all(self, table: str) -> list[Entity]:
        schema = self._table(table)
        rows = await self.backend.select(Select(table))
        return [decode_row(schema, r) for r in rows]

    async def get_by_filter(self, table: str, key: str, value: Any) -> list[Entity]:
        """Entities whose ``key`` column equals ``value`` (single equality only)."""
        schema = self._table(table)
        declared = schema.get_field(key)
        if declared is None:
            raise InvalidFieldError(f"Unknown field '{key}' for {table}")
        rows = await self.backend.select(Select(table, where=(key, encode(declared, value))))
        return [decode_row(schema, r) for r in rows]

    async def get_owned(self, table: str) -> list[Entity]:
        """Entities of ``table`` belonging to the current user."""
        if self.user_id is None:
            raise RepositoryError("No current user")
        return await self.get_by_filter(table, "userId", self.user_id)

    async def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        table: str | None = None,
    ) -> list[Entity]:
        """Raw statement escape hatch.

        Rows are decoded with ``table``'s descriptor when one is given and
        returned as stored primitives otherwise.
        """
        self._require_ready()
        rows = await self.backend.query_all(sql, params)
        if table is None:
            return rows
        schema = self._table(table)
        return [decode_row(schema, r) for r in rows]

    async def execute_many(self, statements: Sequence[tuple[str, Sequence[Any]]]) -> None:
        """Run raw write statements in order. Listeners are not notified."""
        self._require_ready()
        await self.backend.execute_many(statements)

    async def get_subtasks_of(self, task_id: str) -> list[Entity]:
        schema = self._table(SUBTASK)
        rows = await self.backend.select(
            Select(SUBTASK, where=("taskId", task_id), order_by="orderIndex")
        )
        return [decode_row(schema, r) for r in rows]

    async def count(self, table: str) -> int:
        self._table(table)
        rows = await self.backend.select(Select(table, columns=(ID_COLUMN,)))
        return len(rows)


async def open_store(
    *,
    backend: str = "auto",
    db_path: str | Path | None = None,
    kv_store: KeyValueStore | None = None,
    kv_path: str | Path | None = None,
    store_name: str = "secondbrain",
    user_id: str | None = None,
) -> EntityRepository:
    """Open a backend, initialize the schema and return a ready repository."""
    handle = open_backend(
        backend,
        db_path=db_path,
        kv_store=kv_store,
        kv_path=kv_path,
        store_name=store_name,
    )
    repository = EntityRepository(handle, user_id=user_id)
    try:
        await repository.initialize()
    except Exception:
        await handle.close()
        raise
    return repository

