"""
Table service: PostgREST-style select, insert, update and delete under the
row access policies.

Writes return the affected rows together with the change events to publish
once the caller has committed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from app.core import policies
from app.core.errors import (
    FOREIGN_KEY_VIOLATION,
    IMMUTABLE_COLUMN,
    INVALID_TRANSITION,
    MISSING_FILTER,
    NOT_NULL_VIOLATION,
    STILL_SHARED,
    UNDEFINED_COLUMN,
    UNDEFINED_TABLE,
    UNIQUE_VIOLATION,
    permission_denied,
    store_error,
)
from app.core.filters import ParsedQuery, coerce_value, parse_query
from app.core.realtime import make_change
from app.models import TABLES, Subscription, SubscriptionMember
from klypp_shared.schemas.common import ChangeType, MembershipStatus, check_transition
from klypp_shared.schemas.notifications import ChangeEvent

log = structlog.get_logger()

# Columns that can be set on insert but never changed afterwards.
IMMUTABLE_COLUMNS = {"subscriptions": {"admin_id"}}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_model(table: str) -> type[SQLModel]:
    model = TABLES.get(table)
    if model is None:
        raise store_error(404, UNDEFINED_TABLE, f'relation "public.{table}" does not exist')
    return model


def primary_key_names(model: type[SQLModel]) -> list[str]:
    return [c.name for c in model.__table__.primary_key.columns]


def row_to_dict(obj: SQLModel, columns: list[str] | None = None) -> dict[str, Any]:
    data = {c.name: getattr(obj, c.name) for c in obj.__table__.columns}
    if columns:
        data = {name: data[name] for name in columns}
    return jsonable_encoder(data)


def _payload_error(message: str):
    return store_error(400, "PGRST102", message)


def _check_columns(model: type[SQLModel], table: str, names: Iterable[str]) -> None:
    known = model.__table__.c
    for name in names:
        if name not in known:
            raise store_error(
                400, UNDEFINED_COLUMN, f"column {table}.{name} does not exist"
            )


def _integrity_error(table: str, exc: IntegrityError):
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    text = str(orig or exc).lower()
    if sqlstate == UNIQUE_VIOLATION or "unique" in text or "duplicate key" in text:
        return store_error(
            409, UNIQUE_VIOLATION, f"duplicate key value violates unique constraint on {table}"
        )
    if sqlstate == FOREIGN_KEY_VIOLATION or "foreign key" in text:
        return store_error(
            409, FOREIGN_KEY_VIOLATION, f"foreign key constraint violated on {table}"
        )
    if sqlstate == NOT_NULL_VIOLATION or "not null" in text:
        return store_error(400, NOT_NULL_VIOLATION, f"null value violates not-null constraint on {table}")
    return store_error(400, sqlstate or "23000", f"integrity constraint violated on {table}", str(orig))


async def _flush(session: AsyncSession, table: str) -> None:
    try:
        await session.flush()
    except IntegrityError as exc:
        log.info("rest.integrity_error", table=table, error=str(exc.orig))
        raise _integrity_error(table, exc)


async def _writable_targets(
    session: AsyncSession,
    model: type[SQLModel],
    table: str,
    query: ParsedQuery,
    action: policies.Action,
    actor_id: uuid.UUID,
) -> list[SQLModel]:
    """Rows matched by ``query`` that the actor may ``action``.

    When the filter matches rows the actor can see but none it may write, the
    call is refused rather than silently affecting nothing.
    """
    if not query.clauses:
        raise store_error(400, MISSING_FILTER, f"{action.upper()} requires a filter")

    result = await session.execute(
        select(model).where(policies.row_clause(model, action, actor_id), *query.clauses)
    )
    targets = list(result.scalars().all())
    if targets:
        return targets

    visible = await session.execute(
        select(func.count())
        .select_from(model)
        .where(policies.row_clause(model, "select", actor_id), *query.clauses)
    )
    if visible.scalar_one() > 0:
        log.info("rest.write_denied", table=table, action=action, actor_id=str(actor_id))
        raise permission_denied(table, action)
    return []


def _apply_membership_status(member: SubscriptionMember, values: dict[str, Any]) -> None:
    target = values.get("status")
    if target is None or target == member.status:
        return
    try:
        check_transition(MembershipStatus(member.status), MembershipStatus(target))
    except ValueError as exc:
        raise store_error(400, INVALID_TRANSITION, str(exc))
    if target == MembershipStatus.ACCEPTED.value and values.get("joined_at") is None:
        values["joined_at"] = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def select_rows(
    session: AsyncSession,
    table: str,
    params: Iterable[tuple[str, str]],
    actor_id: uuid.UUID,
) -> list[dict[str, Any]]:
    model = get_model(table)
    query = parse_query(model, params)

    stmt = select(model).where(policies.row_clause(model, "select", actor_id), *query.clauses)
    if query.order_by:
        stmt = stmt.order_by(*query.order_by)
    if query.offset is not None:
        stmt = stmt.offset(query.offset)
    if query.limit is not None:
        stmt = stmt.limit(query.limit)

    result = await session.execute(stmt)
    return [row_to_dict(obj, query.columns) for obj in result.scalars().all()]


async def insert_rows(
    session: AsyncSession,
    table: str,
    payload: Any,
    actor_id: uuid.UUID,
) -> tuple[list[dict[str, Any]], list[ChangeEvent]]:
    model = get_model(table)
    items = payload if isinstance(payload, list) else [payload]
    if not items or not all(isinstance(item, dict) for item in items):
        raise _payload_error("expected a JSON object or an array of objects")

    columns = model.__table__.c
    created: list[SQLModel] = []
    for item in items:
        _check_columns(model, table, item)
        data = {name: coerce_value(columns[name], value) for name, value in item.items()}
        try:
            obj = model.model_validate(data)
        except ValidationError as exc:
            raise store_error(400, NOT_NULL_VIOLATION, f"invalid row for {table}", str(exc))

        if model is SubscriptionMember:
            try:
                MembershipStatus(obj.status)
            except ValueError as exc:
                raise store_error(400, INVALID_TRANSITION, str(exc))

        if not await policies.can_insert(session, model, obj, actor_id):
            log.info("rest.insert_denied", table=table, actor_id=str(actor_id))
            raise store_error(
                403,
                "42501",
                f'new row violates row-level security policy for table "{table}"',
            )

        key = {name: getattr(obj, name) for name in primary_key_names(model)}
        if await session.get(model, key) is not None:
            raise store_error(
                409, UNIQUE_VIOLATION, f"duplicate key value violates unique constraint on {table}"
            )
        session.add(obj)
        created.append(obj)

    await _flush(session, table)

    rows = [row_to_dict(obj) for obj in created]
    changes = [make_change(ChangeType.INSERT, table, record=row) for row in rows]
    return rows, changes


async def update_rows(
    session: AsyncSession,
    table: str,
    params: Iterable[tuple[str, str]],
    values: Any,
    actor_id: uuid.UUID,
) -> tuple[list[dict[str, Any]], list[ChangeEvent]]:
    model = get_model(table)
    if not isinstance(values, dict) or not values:
        raise _payload_error("expected a non-empty JSON object of column values")
    _check_columns(model, table, values)

    frozen = set(primary_key_names(model)) | IMMUTABLE_COLUMNS.get(table, set())
    for name in values:
        if name in frozen:
            raise store_error(400, IMMUTABLE_COLUMN, f"column {table}.{name} cannot be changed")

    columns = model.__table__.c
    coerced = {name: coerce_value(columns[name], value) for name, value in values.items()}
    query = parse_query(model, params)
    targets = await _writable_targets(session, model, table, query, "update", actor_id)

    if model is Subscription and coerced.get("is_shared") is False and targets:
        ids = [obj.subscription_id for obj in targets]
        members = await session.execute(
            select(func.count())
            .select_from(SubscriptionMember)
            .where(SubscriptionMember.subscription_id.in_(ids))
        )
        if members.scalar_one() > 0:
            raise store_error(
                400, STILL_SHARED, "subscription still has members and cannot stop being shared"
            )

    before: list[dict[str, Any]] = []
    for obj in targets:
        before.append(row_to_dict(obj))
        row_values = dict(coerced)
        if model is SubscriptionMember:
            _apply_membership_status(obj, row_values)
        for name, value in row_values.items():
            setattr(obj, name, value)
        session.add(obj)

    await _flush(session, table)

    rows = [row_to_dict(obj) for obj in targets]
    changes = [
        make_change(ChangeType.UPDATE, table, record=new, old_record=old)
        for old, new in zip(before, rows)
    ]
    return rows, changes


async def delete_rows(
    session: AsyncSession,
    table: str,
    params: Iterable[tuple[str, str]],
    actor_id: uuid.UUID,
) -> tuple[list[dict[str, Any]], list[ChangeEvent]]:
    model = get_model(table)
    query = parse_query(model, params)
    targets = await _writable_targets(session, model, table, query, "delete", actor_id)

    if model is Subscription and targets:
        ids = [obj.subscription_id for obj in targets]
        remaining = await session.execute(
            select(func.count())
            .select_from(SubscriptionMember)
            .where(SubscriptionMember.subscription_id.in_(ids))
        )
        if remaining.scalar_one() > 0:
            raise store_error(
                409,
                FOREIGN_KEY_VIOLATION,
                "subscription is still referenced from table subscription_members",
            )

    rows = [row_to_dict(obj) for obj in targets]
    for obj in targets:
        await session.delete(obj)
    await _flush(session, table)

    changes = [make_change(ChangeType.DELETE, table, old_record=row) for row in rows]
    return rows, changes
