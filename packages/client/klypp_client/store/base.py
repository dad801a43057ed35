"""
Relational store interface consumed by the membership core.

A store exposes filtered select, insert, conditional update and conditional
delete per table, server-side procedures by name, and live change channels
filtered by a column predicate. Implementations raise the store-level errors
from ``klypp_client.errors``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Sequence, Union

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "is", "in")

# Characters that force a value inside ``and=(...)`` to be double-quoted.
_RESERVED = set(',()"')


def format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _quoted(text: str) -> str:
    if any(ch in _RESERVED for ch in text):
        return '"' + text.replace('"', "") + '"'
    return text


@dataclass(frozen=True)
class Filter:
    """One ``column op value`` predicate."""
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"unknown filter operator {self.op!r}")

    def encode_value(self, *, grouped: bool = False) -> str:
        if self.op == "in":
            items = ",".join(_quoted(format_value(v)) for v in self.value)
            return f"in.({items})"
        text = format_value(self.value)
        return f"{self.op}.{_quoted(text) if grouped else text}"

    def to_param(self) -> tuple[str, str]:
        return self.column, self.encode_value()


@dataclass(frozen=True)
class Match:
    """Conjunction of equality predicates sent as one grouped ``and=(...)`` filter."""
    columns: dict[str, Any] = field(default_factory=dict)

    def filters(self) -> list[Filter]:
        return [Filter(column, "eq", value) for column, value in self.columns.items()]

    def to_param(self) -> tuple[str, str]:
        inner = ",".join(f"{f.column}.{f.encode_value(grouped=True)}" for f in self.filters())
        return "and", f"({inner})"


FilterLike = Union[Filter, Match]


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def to_params(filters: Iterable[FilterLike]) -> list[tuple[str, str]]:
    return [f.to_param() for f in filters]


ChangeHandler = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]


class ChangeChannel(Protocol):
    """A live feed of committed changes on one table, optionally filtered."""

    table: str
    filter: Optional[str]

    def on_change(self, handler: ChangeHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class RelationalStore(Protocol):
    async def select(
        self,
        table: str,
        filters: Sequence[FilterLike] = (),
        *,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(
        self, table: str, rows: Union[dict[str, Any], list[dict[str, Any]]]
    ) -> list[dict[str, Any]]: ...

    async def update(
        self, table: str, values: dict[str, Any], filters: Sequence[FilterLike]
    ) -> list[dict[str, Any]]: ...

    async def delete(self, table: str, filters: Sequence[FilterLike]) -> list[dict[str, Any]]: ...

    async def rpc(self, name: str, args: dict[str, Any]) -> Any: ...

    def channel(self, table: str, filter: Optional[str] = None) -> ChangeChannel: ...
