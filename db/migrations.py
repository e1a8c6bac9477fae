"""Schema versioning and upgrades for the secondbrain store.

The current schema version is stored in the Metadata table under
``schema_version``. Every upgrade step is idempotent (tables and indexes
are created with IF NOT EXISTS), so re-running an interrupted upgrade is
safe. The version is written after each step completes.

Can be run directly:
    python -m db.migrations [db_path]
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from enum import Enum

from db.backends import Backend, Select, SQLiteBackend
from db.schema import METADATA, METADATA_SCHEMA, TABLE_CREATION_ORDER, TABLES

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"
SCHEMA_VERSION = 2


class SchemaState(str, Enum):
    UNINITIALIZED = "uninitialized"
    METADATA_READY = "metadata_ready"
    UPGRADING = "upgrading"
    CURRENT = "current"


async def _create_tables(backend: Backend) -> None:
    """v1: entity tables in foreign-key order."""
    for table_name in TABLE_CREATION_ORDER:
        await backend.ensure_table(TABLES[table_name])


async def _create_indexes(backend: Backend) -> None:
    """v2: secondary indexes for the per-user and per-task lookups."""
    for table_name in TABLE_CREATION_ORDER:
        for index in TABLES[table_name].indexes:
            await backend.execute(index.create_statement())


UPGRADES: dict[int, Callable[[Backend], Awaitable[None]]] = {
    1: _create_tables,
    2: _create_indexes,
}


class SchemaManager:
    """Brings a backend's schema up to ``target_version``.

    State moves UNINITIALIZED -> METADATA_READY -> (CURRENT | UPGRADING -> CURRENT).
    Any failure propagates and leaves the state where it stopped; the
    backend must not be used as a store after a failed initialize().
    """

    def __init__(self, backend: Backend, target_version: int = SCHEMA_VERSION) -> None:
        if target_version not in UPGRADES and target_version != 0:
            raise ValueError(f"No upgrade registered for schema version {target_version}")
        self.backend = backend
        self.target_version = target_version
        self.state = SchemaState.UNINITIALIZED

    async def get_schema_version(self) -> int:
        rows = await self.backend.select(
            Select(METADATA, where=("key", SCHEMA_VERSION_KEY), columns=("value",))
        )
        if not rows:
            return 0
        return int(rows[0]["value"])

    async def set_schema_version(self, version: int) -> None:
        await self.backend.insert(
            METADATA,
            {"key": SCHEMA_VERSION_KEY, "value": str(version)},
            replace=True,
            key_column=METADATA_SCHEMA.key_column,
        )

    async def initialize(self) -> Backend:
        """Ensure metadata, read the stored version, apply pending upgrades."""
        await self.backend.ensure_table(METADATA_SCHEMA)
        self.state = SchemaState.METADATA_READY

        version = await self.get_schema_version()
        if version >= self.target_version:
            self.state = SchemaState.CURRENT
            return self.backend

        self.state = SchemaState.UPGRADING
        for step in sorted(UPGRADES):
            if version < step <= self.target_version:
                logger.info("Applying schema upgrade %d (%s)", step, UPGRADES[step].__name__)
                await UPGRADES[step](self.backend)
                await self.set_schema_version(step)
        self.state = SchemaState.CURRENT
        return self.backend


async def init_db(db_path: str) -> SQLiteBackend:
    """Open a native backend, run migrations, and return the ready backend."""
    backend = SQLiteBackend(db_path)
    await SchemaManager(backend).initialize()
    return backend


async def _main(db_path: str) -> None:
    print(f"Running migrations on {db_path}...")
    backend = await init_db(db_path)
    try:
        manager = SchemaManager(backend)
        print(f"Schema version: {await manager.get_schema_version()}")

        tables = await backend.query_all(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        print(f"Tables: {[t['name'] for t in tables]}")
    finally:
        await backend.close()
    print("Done.")


def main() -> None:
    """CLI entry point for running migrations directly."""
    db_path = sys.argv[1] if len(sys.argv) > 1 else "secondbrain.db"
    asyncio.run(_main(db_path))


if __name__ == "__main__":
    main()
