"""
Shared fixtures for membership core tests.

``FakeStore`` is an in-memory ``RelationalStore`` holding rows in wire form
(ids and dates as strings). Faults are injected per method and table, and
every call is recorded so tests can assert on ordering.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

import pytest

from klypp_client.errors import DuplicateKey, ProcedureUnavailable, StoreError
from klypp_client.store.base import Filter, FilterLike, Match, format_value

PRIMARY_KEYS = {
    "users": ("user_id",),
    "subscriptions": ("subscription_id",),
    "subscription_members": ("subscription_id", "user_id"),
    "notifications": ("notification_id",),
}


def _wire(value: Any) -> Any:
    if isinstance(value, (uuid.UUID,)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _like_regex(pattern: str) -> re.Pattern:
    out = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            out.append(re.escape(next(chars, "")))
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$", re.DOTALL)


def filter_matches(f: Filter, row: dict[str, Any]) -> bool:
    actual = row.get(f.column)
    if f.op == "is":
        return actual is f.value or (f.value is None and actual is None)
    if actual is None:
        return False
    text = format_value(actual)
    if f.op == "in":
        return text in {format_value(v) for v in f.value}
    if f.op == "like":
        return bool(_like_regex(str(f.value)).match(text))
    if f.op == "ilike":
        return bool(_like_regex(str(f.value).lower()).match(text.lower()))
    expected = format_value(f.value)
    return {
        "eq": text == expected,
        "neq": text != expected,
        "gt": text > expected,
        "gte": text >= expected,
        "lt": text < expected,
        "lte": text <= expected,
    }[f.op]


def row_matches(filters: list[FilterLike], row: dict[str, Any]) -> bool:
    for item in filters:
        parts = item.filters() if isinstance(item, Match) else [item]
        if not all(filter_matches(f, row) for f in parts):
            return False
    return True


@dataclass
class Fault:
    method: str
    table: Optional[str]
    error: Callable[[], StoreError]
    when: Callable[[list[FilterLike]], bool] = lambda filters: True
    times: Optional[int] = None


class FakeChannel:
    def __init__(self, store: "FakeStore", table: str, filter: Optional[str]):
        self._store = store
        self.table = table
        self.filter = filter
        self.handlers: list = []
        self.started = False
        self.stopped = False

    def on_change(self, handler) -> None:
        self.handlers.append(handler)

    async def start(self) -> None:
        self.started = True
        self._store.channels.append(self)

    async def stop(self) -> None:
        self.stopped = True
        if self in self._store.channels:
            self._store.channels.remove(self)

    def accepts(self, table: str, row: dict[str, Any]) -> bool:
        if table != self.table:
            return False
        if not self.filter:
            return True
        column, _, rest = self.filter.partition("=")
        return str(row.get(column)) == rest.partition(".")[2]


@dataclass
class FakeStore:
    tables: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {name: [] for name in PRIMARY_KEYS}
    )
    procedures: dict[str, Callable[..., Any]] = field(default_factory=dict)
    faults: list[Fault] = field(default_factory=list)
    calls: list[tuple[str, str, Any]] = field(default_factory=list)
    channels: list[FakeChannel] = field(default_factory=list)

    # -- test helpers -------------------------------------------------

    def fail(self, method: str, table: Optional[str], error: Callable[[], StoreError], **kwargs) -> Fault:
        fault = Fault(method, table, error, **kwargs)
        self.faults.append(fault)
        return fault

    def seed(self, table: str, **row: Any) -> dict[str, Any]:
        wire = {k: _wire(v) for k, v in row.items()}
        self.tables[table].append(wire)
        return wire

    def rows(self, table: str, **match: Any) -> list[dict[str, Any]]:
        wanted = {k: _wire(v) for k, v in match.items()}
        return [r for r in self.tables[table] if all(r.get(k) == v for k, v in wanted.items())]

    def _check_fault(self, method: str, table: str, filters: list[FilterLike]) -> None:
        for fault in list(self.faults):
            if fault.method != method or (fault.table is not None and fault.table != table):
                continue
            if not fault.when(filters):
                continue
            if fault.times is not None:
                fault.times -= 1
                if fault.times <= 0:
                    self.faults.remove(fault)
            raise fault.error()

    async def _emit(self, table: str, change_type: str, row: dict[str, Any]) -> None:
        for channel in list(self.channels):
            if channel.accepts(table, row):
                for handler in channel.handlers:
                    await handler({"type": change_type, "table": table, "record": row})

    # -- RelationalStore ----------------------------------------------

    async def select(self, table, filters=(), *, columns="*", order=None, limit=None):
        filters = list(filters)
        self.calls.append(("select", table, filters))
        self._check_fault("select", table, filters)
        found = [dict(r) for r in self.tables[table] if row_matches(filters, r)]
        if order:
            column, _, direction = order.partition(".")
            found.sort(key=lambda r: str(r.get(column) or ""), reverse=direction == "desc")
        if limit is not None:
            found = found[:limit]
        return found

    async def insert(self, table, rows):
        items = rows if isinstance(rows, list) else [rows]
        self.calls.append(("insert", table, items))
        self._check_fault("insert", table, [])
        created = []
        for item in items:
            row = {k: _wire(v) for k, v in item.items()}
            if table == "subscriptions":
                row.setdefault("subscription_id", str(uuid.uuid4()))
            if table == "notifications":
                row.setdefault("notification_id", str(uuid.uuid4()))
                row.setdefault("status", "unread")
                row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
            key = PRIMARY_KEYS[table]
            if any(all(r.get(k) == row.get(k) for k in key) for r in self.tables[table]):
                raise DuplicateKey("duplicate key value violates unique constraint", table=table)
            self.tables[table].append(row)
            created.append(dict(row))
            await self._emit(table, "INSERT", row)
        return created

    async def update(self, table, values, filters):
        filters = list(filters)
        self.calls.append(("update", table, filters))
        self._check_fault("update", table, filters)
        updated = []
        for row in self.tables[table]:
            if row_matches(filters, row):
                row.update({k: _wire(v) for k, v in values.items()})
                updated.append(dict(row))
                await self._emit(table, "UPDATE", row)
        return updated

    async def delete(self, table, filters):
        filters = list(filters)
        self.calls.append(("delete", table, filters))
        self._check_fault("delete", table, filters)
        doomed = [r for r in self.tables[table] if row_matches(filters, r)]
        self.tables[table] = [r for r in self.tables[table] if r not in doomed]
        for row in doomed:
            await self._emit(table, "DELETE", row)
        return doomed

    async def rpc(self, name, args):
        self.calls.append(("rpc", name, args))
        self._check_fault("rpc", name, [])
        if name not in self.procedures:
            raise ProcedureUnavailable(f"Could not find the function public.{name}")
        return await self.procedures[name](self, args)

    def channel(self, table, filter=None):
        return FakeChannel(self, table, filter)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-00000000000a")
ALICE_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
BOB_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b0")
SUB_ID = uuid.UUID("00000000-0000-0000-0000-000000000501")


def make_subscription(store: FakeStore, subscription_id=SUB_ID, admin_id=ADMIN_ID, **overrides) -> dict:
    row = {
        "subscription_id": subscription_id,
        "admin_id": admin_id,
        "name": "Streaming",
        "cost": "15.99",
        "renewal_frequency": "monthly",
        "start_date": "2024-01-01",
        "next_renewal_date": "2024-02-01",
        "category": "Entertainment",
        "auto_renews": True,
        "is_shared": True,
        "max_members": 3,
    }
    row.update(overrides)
    return store.seed("subscriptions", **row)


@pytest.fixture
def store() -> FakeStore:
    fake = FakeStore()
    fake.seed("users", user_id=ADMIN_ID, username="admin", name="Admin")
    fake.seed("users", user_id=ALICE_ID, username="alice", name="Alice")
    fake.seed("users", user_id=BOB_ID, username="bob", name="Bob")
    make_subscription(fake)
    return fake


@pytest.fixture
def ids():
    from types import SimpleNamespace

    return SimpleNamespace(admin=ADMIN_ID, alice=ALICE_ID, bob=BOB_ID, sub=SUB_ID)


@pytest.fixture
def seed_subscription():
    return make_subscription


@pytest.fixture
def add_member(store):
    def add(user_id, status="pending", subscription_id=SUB_ID, joined_at=None):
        return store.seed(
            "subscription_members",
            subscription_id=subscription_id,
            user_id=user_id,
            status=status,
            joined_at=joined_at,
        )
    return add
