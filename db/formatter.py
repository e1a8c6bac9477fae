"""Statement formatter: parameterized template + values -> concrete SQL.

Bound parameters are the normal path to SQLite. The formatter exists for
the places that need literal SQL text: the SQL dump export and debug logs
of what actually ran.
"""

import math
import re
from collections.abc import Sequence
from typing import Any

from db.codec import encode_value

PLACEHOLDER = "?"
NULL_LITERAL = "NULL"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StatementFormatError(ValueError):
    """Raised when a template and its values cannot be combined."""


def quote_identifier(name: str) -> str:
    """Double-quote a table or column name, rejecting anything but [A-Za-z0-9_].

    Quoting keeps column names such as ``end`` and ``key`` unambiguous.
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise StatementFormatError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def render_literal(value: Any) -> str:
    """Render one value as an SQL literal."""
    value = encode_value(value)
    if value is None:
        return NULL_LITERAL
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise StatementFormatError(f"Cannot render non-finite number {value!r}")
        return repr(value)
    raise StatementFormatError(f"Cannot render value of type {type(value).__name__}")


def _placeholder_positions(template: str) -> list[int]:
    """Offsets of placeholders outside single-quoted literals."""
    positions = []
    in_quote = False
    for i, ch in enumerate(template):
        if ch == "'":
            in_quote = not in_quote
        elif ch == PLACEHOLDER and not in_quote:
            positions.append(i)
    return positions


def count_placeholders(template: str) -> int:
    return len(_placeholder_positions(template))


def format_statement(template: str, params: Sequence[Any] = ()) -> str:
    """Substitute ``params`` into ``template`` strictly left to right.

    Raises StatementFormatError when the number of placeholders does not
    match the number of values.
    """
    positions = _placeholder_positions(template)
    if len(positions) != len(params):
        raise StatementFormatError(
            f"Statement has {len(positions)} placeholder(s) but "
            f"{len(params)} value(s) were given"
        )

    parts: list[str] = []
    last = 0
    for pos, value in zip(positions, params):
        parts.append(template[last:pos])
        parts.append(render_literal(value))
        last = pos + 1
    parts.append(template[last:])
    return "".join(parts)
