"""Value codec: native Python values <-> stored primitives.

Top-level columns are typed by their declared FieldType. Inside JSON blobs
the schema has no reach, so nested datetimes are written as a tagged
``{"__type": "Date", "value": ...}`` marker and revived on decode.
"""

import json
from datetime import datetime, timezone
from typing import Any

from db.schema import Field, FieldType, TableSchema

DATE_TAG = "Date"


class CodecError(ValueError):
    """Raised when a value cannot be encoded or a stored primitive decoded."""


def format_datetime(value: datetime) -> str:
    """Render a datetime as fixed-width ISO-8601 UTC text (sortable)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_datetime(text: str) -> datetime:
    """Parse ISO-8601 text back to an aware UTC datetime."""
    if not isinstance(text, str):
        raise CodecError(f"Expected ISO-8601 text, got {type(text).__name__}")
    raw = text.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise CodecError(f"Invalid datetime: {text!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__type": DATE_TAG, "value": format_datetime(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_hook(obj: dict[str, Any]) -> Any:
    if obj.get("__type") == DATE_TAG and "value" in obj:
        return parse_datetime(obj["value"])
    return obj


def serialize(value: Any) -> str:
    try:
        return json.dumps(value, default=_json_default)
    except TypeError as e:
        raise CodecError(str(e)) from e


def deserialize(text: str) -> Any:
    try:
        return json.loads(text, object_hook=_json_hook)
    except json.JSONDecodeError as e:
        raise CodecError(f"Invalid JSON: {e}") from e


def encode_value(value: Any) -> Any:
    """Untyped encoding used for bound parameters of raw statements."""
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (dict, list)):
        return serialize(value)
    return value


def encode(field: Field, value: Any) -> Any:
    """Encode ``value`` for storage in the column described by ``field``."""
    if value is None:
        return None

    kind = field.type
    if kind is FieldType.DATETIME:
        if isinstance(value, datetime):
            return format_datetime(value)
        if isinstance(value, str):
            return format_datetime(parse_datetime(value))
        raise CodecError(f"Field '{field.name}' expects a datetime, got {value!r}")
    if kind is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return 1 if value else 0
        if value in (0, 1):
            return int(value)
        raise CodecError(f"Field '{field.name}' expects a boolean, got {value!r}")
    if kind is FieldType.JSON:
        return serialize(value)
    if kind is FieldType.INTEGER:
        if isinstance(value, bool) or not isinstance(value, int):
            raise CodecError(f"Field '{field.name}' expects an integer, got {value!r}")
        return value
    if kind is FieldType.REAL:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CodecError(f"Field '{field.name}' expects a number, got {value!r}")
        return float(value)
    return encode_value(value)


def decode(field: Field, primitive: Any) -> Any:
    """Decode a stored primitive according to ``field``'s declared type."""
    if primitive is None:
        return None

    kind = field.type
    if kind is FieldType.DATETIME:
        return parse_datetime(primitive)
    if kind is FieldType.BOOLEAN:
        return bool(primitive)
    if kind is FieldType.JSON:
        return deserialize(primitive)
    return primitive


def encode_row(schema: TableSchema, entity: dict[str, Any]) -> dict[str, Any]:
    """Encode every declared column; absent fields become NULL."""
    return {f.name: encode(f, entity.get(f.name)) for f in schema.fields}


def decode_row(schema: TableSchema, row: dict[str, Any]) -> dict[str, Any]:
    """Decode a stored row. Columns the schema does not declare pass through."""
    decoded: dict[str, Any] = {}
    for key, value in row.items():
        declared = schema.get_field(key)
        decoded[key] = decode(declared, value) if declared else value
    return decoded
