"""
PostgREST-style query string parsing.

Supports horizontal filters (``col=op.value``), the grouped conjunction
``and=(col.op.value,col.op.value)``, ``select=``, ``order=`` and ``limit=``.
Values are coerced to the column's Python type before they are bound, so a
UUID column compares against ``uuid.UUID`` rather than a string.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import ColumnElement, and_
from sqlmodel import SQLModel

from app.core.errors import (
    INVALID_TEXT_REPRESENTATION,
    UNDEFINED_COLUMN,
    store_error,
)

OPERATORS = {"eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "is", "in"}
LIKE_ESCAPE = "\\"


@dataclass
class ParsedQuery:
    clauses: list[ColumnElement] = field(default_factory=list)
    columns: list[str] | None = None
    order_by: list[Any] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None


def _column(model: type[SQLModel], name: str):
    table = model.__table__
    if name not in table.c:
        raise store_error(
            400, UNDEFINED_COLUMN,
            f"column {model.__tablename__}.{name} does not exist",
        )
    return table.c[name]


def coerce_value(column, raw: Any) -> Any:
    """Convert a query-string value to the Python type of ``column``."""
    if raw is None or not isinstance(raw, str):
        return raw
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw
    try:
        if python_type is uuid.UUID:
            return uuid.UUID(raw)
        if python_type is bool:
            return raw.lower() in ("true", "t", "1")
        if python_type is int:
            return int(raw)
        if python_type is Decimal:
            return Decimal(raw)
        if python_type is float:
            return float(raw)
        if python_type is datetime:
            return datetime.fromisoformat(raw[:-1] + "+00:00" if raw.endswith("Z") else raw)
        if python_type is date:
            return date.fromisoformat(raw)
    except (ValueError, InvalidOperation):
        raise store_error(
            400, INVALID_TEXT_REPRESENTATION,
            f"invalid input syntax for {column.name}: {raw!r}",
        )
    return raw


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside parentheses or double quotes."""
    parts: list[str] = []
    depth = 0
    quoted = False
    current: list[str] = []
    for ch in text:
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        if ch == "," and depth == 0 and not quoted:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        parts.append("".join(current))
    return [p for p in parts if p]


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def build_clause(model: type[SQLModel], name: str, op: str, raw: str) -> ColumnElement:
    """One ``column op value`` predicate."""
    column = _column(model, name)
    if op not in OPERATORS:
        raise store_error(400, "PGRST100", f"unknown operator '{op}'")

    if op == "is":
        lowered = raw.lower()
        if lowered == "null":
            return column.is_(None)
        if lowered in ("true", "false"):
            return column.is_(lowered == "true")
        raise store_error(400, "PGRST100", f"invalid value for is: {raw!r}")

    if op == "in":
        inner = raw.strip()
        if not (inner.startswith("(") and inner.endswith(")")):
            raise store_error(400, "PGRST100", "in. expects a parenthesised list")
        values = [coerce_value(column, _unquote(v.strip())) for v in _split_top_level(inner[1:-1])]
        return column.in_(values)

    if op == "like":
        return column.like(_unquote(raw), escape=LIKE_ESCAPE)
    if op == "ilike":
        return column.ilike(_unquote(raw), escape=LIKE_ESCAPE)

    value = coerce_value(column, _unquote(raw))
    if op == "eq":
        return column == value
    if op == "neq":
        return column != value
    if op == "gt":
        return column > value
    if op == "gte":
        return column >= value
    if op == "lt":
        return column < value
    return column <= value


def _parse_group(model: type[SQLModel], raw: str) -> ColumnElement:
    """``(a.eq.1,b.eq.2)`` -> a = 1 AND b = 2"""
    text = raw.strip()
    if not (text.startswith("(") and text.endswith(")")):
        raise store_error(400, "PGRST100", "and= expects a parenthesised list")
    clauses = []
    for item in _split_top_level(text[1:-1]):
        try:
            name, op, value = item.split(".", 2)
        except ValueError:
            raise store_error(400, "PGRST100", f"malformed condition {item!r}")
        clauses.append(build_clause(model, name.strip(), op, value))
    return and_(*clauses)


def parse_query(model: type[SQLModel], params: Iterable[tuple[str, str]]) -> ParsedQuery:
    """Parse request query parameters against ``model``'s columns."""
    parsed = ParsedQuery()
    for key, raw in params:
        if key == "and":
            parsed.clauses.append(_parse_group(model, raw))
        elif key == "select":
            if raw.strip() != "*":
                names = [c.strip() for c in raw.split(",") if c.strip()]
                for name in names:
                    _column(model, name)
                parsed.columns = names
        elif key == "order":
            for item in raw.split(","):
                name, _, direction = item.strip().partition(".")
                column = _column(model, name)
                parsed.order_by.append(column.desc() if direction == "desc" else column.asc())
        elif key in ("limit", "offset"):
            if not raw.isdigit():
                raise store_error(400, "PGRST100", f"{key} must be a non-negative integer")
            setattr(parsed, key, int(raw))
        else:
            op, sep, value = raw.partition(".")
            if not sep:
                raise store_error(400, "PGRST100", f"malformed filter {key}={raw}")
            parsed.clauses.append(build_clause(model, key, op, value))
    return parsed
