"""Table descriptors for the secondbrain store.

Each table is declared once as a TableSchema: the ordered list of fields,
their semantic types, NOT NULL constraints, enumerated values and foreign
keys. The DDL, the value codec and the repository's statement builders are
all derived from these descriptors, so nothing ever iterates an entity's
keys to decide what to write.
"""

from dataclasses import dataclass, field
from enum import Enum

ID_COLUMN = "_id"
CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"


class FieldType(str, Enum):
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    REAL = "REAL"
    BOOLEAN = "BOOLEAN"
    DATETIME = "DATETIME"
    JSON = "JSON"

    @property
    def sql_type(self) -> str:
        """Storage class used in CREATE TABLE."""
        if self in (FieldType.INTEGER, FieldType.BOOLEAN):
            return "INTEGER"
        if self is FieldType.REAL:
            return "REAL"
        return "TEXT"


@dataclass(frozen=True)
class Field:
    name: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    choices: tuple[str, ...] | None = None
    primary_key: bool = False

    def column_ddl(self) -> str:
        parts = [f'"{self.name}"', self.type.sql_type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif self.required:
            parts.append("NOT NULL")
        return " ".join(parts)


@dataclass(frozen=True)
class ForeignKey:
    column: str
    ref_table: str
    ref_column: str = ID_COLUMN
    on_delete: str = "CASCADE"

    def ddl(self) -> str:
        return (
            f'FOREIGN KEY ("{self.column}") REFERENCES {self.ref_table} '
            f'("{self.ref_column}") ON DELETE {self.on_delete}'
        )


@dataclass(frozen=True)
class Index:
    name: str
    table: str
    columns: tuple[str, ...]

    def create_statement(self) -> str:
        columns = ", ".join(f'"{c}"' for c in self.columns)
        return f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table} ({columns})"


@dataclass(frozen=True)
class TableSchema:
    name: str
    fields: tuple[Field, ...]
    foreign_keys: tuple[ForeignKey, ...] = ()
    indexes: tuple[Index, ...] = ()
    key_column: str = ID_COLUMN
    _by_name: dict[str, Field] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._by_name.update({f.name: f for f in self.fields})

    @property
    def column_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> Field | None:
        return self._by_name.get(name)

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    def create_statement(self) -> str:
        lines = [f.column_ddl() for f in self.fields]
        lines.extend(fk.ddl() for fk in self.foreign_keys)
        body = ",\n            ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n            {body}\n        )"


PRIORITIES = ("high", "medium", "low")
CHECK_IN_FREQUENCIES = ("daily", "weekly", "none")
PROVIDERS = ("email", "google")
EVENT_CATEGORIES = ("work", "personal", "health", "education", "social", "other")


def _entity(name: str, *fields: Field, **kwargs) -> TableSchema:
    """Wrap entity-specific fields with the id and timestamp columns."""
    return TableSchema(
        name=name,
        fields=(
            Field(ID_COLUMN, FieldType.TEXT, primary_key=True),
            *fields,
            Field(CREATED_AT, FieldType.DATETIME, required=True),
            Field(UPDATED_AT, FieldType.DATETIME, required=True),
        ),
        **kwargs,
    )


USER = "User"
TASK = "Task"
SUBTASK = "SubTask"
CALENDAR_EVENT = "CalendarEvent"
METADATA = "Metadata"

TABLES: dict[str, TableSchema] = {
    USER: _entity(
        USER,
        Field("userId", required=True),
        Field("email", required=True),
        Field("name", required=True),
        Field("provider", required=True, choices=PROVIDERS),
        Field("timeZone"),
        Field("notificationsEnabled", FieldType.BOOLEAN),
    ),
    TASK: _entity(
        TASK,
        Field("userId", required=True),
        Field("title", required=True),
        Field("description"),
        Field("dueDate", FieldType.DATETIME, required=True),
        Field("priority", required=True, choices=PRIORITIES),
        Field("completed", FieldType.BOOLEAN, required=True),
        Field("checkInFrequency", required=True, choices=CHECK_IN_FREQUENCIES),
        indexes=(Index("idx_task_user", TASK, ("userId",)),),
    ),
    SUBTASK: _entity(
        SUBTASK,
        Field("taskId", required=True),
        Field("title", required=True),
        Field("completed", FieldType.BOOLEAN, required=True),
        Field("priority", choices=PRIORITIES),
        Field("timeEstimate", FieldType.INTEGER),
        Field("orderIndex", FieldType.INTEGER, required=True),
        foreign_keys=(ForeignKey("taskId", TASK),),
        indexes=(Index("idx_subtask_task_order", SUBTASK, ("taskId", "orderIndex")),),
    ),
    CALENDAR_EVENT: _entity(
        CALENDAR_EVENT,
        Field("userId", required=True),
        Field("title", required=True),
        Field("description"),
        Field("start", FieldType.DATETIME, required=True),
        Field("end", FieldType.DATETIME, required=True),
        Field("allDay", FieldType.BOOLEAN),
        Field("location"),
        Field("category", required=True, choices=EVENT_CATEGORIES),
        Field("color", required=True),
        Field("googleEventId"),
        indexes=(
            Index("idx_event_user", CALENDAR_EVENT, ("userId",)),
            Index("idx_event_google", CALENDAR_EVENT, ("googleEventId",)),
        ),
    ),
}

METADATA_SCHEMA = TableSchema(
    name=METADATA,
    fields=(
        Field("key", FieldType.TEXT, primary_key=True),
        Field("value", FieldType.TEXT),
    ),
    key_column="key",
)

# Ordered list for creation: respects foreign key dependencies
TABLE_CREATION_ORDER = [USER, TASK, SUBTASK, CALENDAR_EVENT]


def get_schema(table: str) -> TableSchema:
    """Look up an entity table descriptor. Raises KeyError for unknown tables."""
    if table == METADATA:
        return METADATA_SCHEMA
    return TABLES[table]


def dependents_of(table: str) -> list[tuple[TableSchema, ForeignKey]]:
    """Tables whose rows are deleted along with a row of ``table``."""
    found = []
    for name in TABLE_CREATION_ORDER:
        schema = TABLES[name]
        for fk in schema.foreign_keys:
            if fk.ref_table == table and fk.on_delete == "CASCADE":
                found.append((schema, fk))
    return found
