"""SQL dump of a secondbrain store.

Produces a script that recreates the schema and every stored row. Rows are
read as stored primitives, so the dump is identical whichever backend the
store runs on, and an emulated store can be replayed into a SQLite file.
"""

from collections.abc import AsyncIterator

from db.backends import Select
from db.formatter import PLACEHOLDER, format_statement, quote_identifier
from db.migrations import SCHEMA_VERSION_KEY
from db.repository import EntityRepository
from db.schema import METADATA_SCHEMA, TABLE_CREATION_ORDER, TABLES, TableSchema


def insert_statement(schema: TableSchema, row: dict) -> str:
    """Render one stored row as a literal INSERT statement."""
    columns = schema.column_names
    template = (
        f"INSERT INTO {quote_identifier(schema.name)} "
        f"({', '.join(quote_identifier(c) for c in columns)}) "
        f"VALUES ({', '.join(PLACEHOLDER for _ in columns)})"
    )
    return format_statement(template, [row.get(c) for c in columns]) + ";"


async def dump_statements(repository: EntityRepository) -> AsyncIterator[str]:
    """Yield the statements of a full dump, one per item."""
    backend = repository.backend
    yield "BEGIN;"

    yield METADATA_SCHEMA.create_statement() + ";"
    for row in await backend.select(Select(METADATA_SCHEMA.name, order_by="key")):
        if row.get("key") == SCHEMA_VERSION_KEY:
            continue
        yield insert_statement(METADATA_SCHEMA, row)

    for table_name in TABLE_CREATION_ORDER:
        schema = TABLES[table_name]
        yield schema.create_statement() + ";"
        for index in schema.indexes:
            yield index.create_statement() + ";"
        for row in await backend.select(Select(table_name, order_by="createdAt")):
            yield insert_statement(schema, row)

    version = await repository.query(
        'SELECT "value" FROM "Metadata" WHERE "key" = ?', (SCHEMA_VERSION_KEY,)
    )
    if version:
        yield insert_statement(
            METADATA_SCHEMA, {"key": SCHEMA_VERSION_KEY, "value": version[0]["value"]}
        )
    yield "COMMIT;"


async def dump_sql(repository: EntityRepository) -> str:
    return "\n".join([stmt async for stmt in dump_statements(repository)]) + "\n"
