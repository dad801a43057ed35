"""
PostgREST-compatible table and procedure endpoints.

- GET    /{table}      : select rows (``col=op.value``, ``and=(...)``, ``select``, ``order``, ``limit``)
- POST   /{table}      : insert one row or an array of rows
- PATCH  /{table}      : update the rows matched by the filter
- DELETE /{table}      : delete the rows matched by the filter
- POST   /rpc/{name}   : call a server-side procedure

Writes answer with the affected rows. Change events are published only after
the transaction commits.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_actor
from app.core.database import get_session
from app.core.errors import store_error
from app.core.realtime import publish_changes
from app.services import outbox, procedures, rest

router = APIRouter()


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        raise store_error(400, "PGRST102", "request body is not valid JSON")


def _query_items(request: Request) -> list[tuple[str, str]]:
    return list(request.query_params.multi_items())


@router.post("/rpc/{name}")
async def call_procedure_endpoint(
    name: str,
    request: Request,
    actor_id: uuid.UUID = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    args = await _json_body(request)
    if not isinstance(args, dict):
        raise store_error(400, "PGRST102", "procedure arguments must be a JSON object")
    result, ctx = await procedures.call_procedure(session, name, args, actor_id)
    await session.commit()
    await publish_changes(ctx.changes)
    if ctx.outbox:
        await outbox.flush_outbox()
    return result


@router.get("/{table}")
async def select_endpoint(
    table: str,
    request: Request,
    actor_id: uuid.UUID = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    return await rest.select_rows(session, table, _query_items(request), actor_id)


@router.post("/{table}", status_code=201)
async def insert_endpoint(
    table: str,
    request: Request,
    actor_id: uuid.UUID = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    payload = await _json_body(request)
    rows, changes = await rest.insert_rows(session, table, payload, actor_id)
    await session.commit()
    await publish_changes(changes)
    return rows


@router.patch("/{table}")
async def update_endpoint(
    table: str,
    request: Request,
    actor_id: uuid.UUID = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    values = await _json_body(request)
    rows, changes = await rest.update_rows(session, table, _query_items(request), values, actor_id)
    await session.commit()
    await publish_changes(changes)
    return rows


@router.delete("/{table}")
async def delete_endpoint(
    table: str,
    request: Request,
    actor_id: uuid.UUID = Depends(get_current_actor),
    session: AsyncSession = Depends(get_session),
):
    rows, changes = await rest.delete_rows(session, table, _query_items(request), actor_id)
    await session.commit()
    await publish_changes(changes)
    return rows
