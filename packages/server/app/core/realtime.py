"""
Realtime change fan-out over Redis Pub/Sub and SSE.

Writes publish one ``ChangeEvent`` per affected row after their transaction
commits. Each SSE connection subscribes to the shared channel and forwards the
events that match its table, its optional ``column=eq.value`` filter and the
read policy of the connected user.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable

import structlog
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError

from app.core.errors import store_error
from app.core.policies import realtime_visible
from app.core.redis import CHANGES_CHANNEL, get_redis
from klypp_shared.schemas.common import ChangeType
from klypp_shared.schemas.notifications import ChangeEvent

log = structlog.get_logger()

POLL_TIMEOUT_SECONDS = 1.0


@dataclass(frozen=True)
class ChannelFilter:
    """Equality filter in the ``column=eq.value`` form."""
    column: str
    value: str

    def matches(self, row: dict[str, Any]) -> bool:
        if self.column not in row or row[self.column] is None:
            return False
        return str(row[self.column]) == self.value


def parse_channel_filter(raw: str | None) -> ChannelFilter | None:
    if not raw:
        return None
    column, sep, rest = raw.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or not column.strip():
        raise store_error(400, "PGRST100", f"malformed realtime filter {raw!r}")
    if op != "eq":
        raise store_error(400, "PGRST100", f"realtime filters only support eq, got {op!r}")
    return ChannelFilter(column=column.strip(), value=value)


def make_change(
    change_type: ChangeType,
    table: str,
    record: dict[str, Any] | None = None,
    old_record: dict[str, Any] | None = None,
) -> ChangeEvent:
    return ChangeEvent(
        type=change_type,
        table=table,
        record=jsonable_encoder(record) if record is not None else None,
        old_record=jsonable_encoder(old_record) if old_record is not None else None,
    )


async def publish_changes(changes: Iterable[ChangeEvent]) -> int:
    """Publish committed changes. Returns the number published.

    Publishing is best effort: the write has already committed, so a Redis
    outage costs live delivery only.
    """
    published = 0
    try:
        redis = await get_redis()
        for change in changes:
            await redis.publish(CHANGES_CHANNEL, change.model_dump_json())
            published += 1
    except RedisError as exc:
        log.warning("realtime.publish_failed", error=str(exc), published=published)
    return published


def should_deliver(
    change: ChangeEvent,
    table: str,
    channel_filter: ChannelFilter | None,
    actor_id: uuid.UUID,
) -> bool:
    if change.table != table:
        return False
    row = change.row()
    if channel_filter is not None and not channel_filter.matches(row):
        return False
    return realtime_visible(table, row, actor_id)


async def change_stream(
    request: Request,
    table: str,
    channel_filter: ChannelFilter | None,
    actor_id: uuid.UUID,
) -> AsyncGenerator[dict, None]:
    """SSE generator: one ``change`` event per matching committed row change."""
    redis = await get_redis()
    pubsub = redis.pubsub()
    await pubsub.subscribe(CHANGES_CHANNEL)
    log.info(
        "realtime.stream_opened",
        table=table,
        filter=channel_filter and f"{channel_filter.column}=eq.{channel_filter.value}",
        actor_id=str(actor_id),
    )

    try:
        yield {"event": "subscribed", "data": json.dumps({"table": table})}

        while True:
            if await request.is_disconnected():
                break

            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=POLL_TIMEOUT_SECONDS
            )
            if message is None or message.get("type") != "message":
                continue

            try:
                change = ChangeEvent.model_validate_json(message["data"])
            except ValueError:
                log.warning("realtime.bad_payload", data=str(message["data"])[:200])
                continue

            if should_deliver(change, table, channel_filter, actor_id):
                yield {"event": "change", "data": change.model_dump_json()}

    except asyncio.CancelledError:
        log.info("realtime.stream_cancelled", table=table, actor_id=str(actor_id))
        raise
    finally:
        await pubsub.unsubscribe(CHANGES_CHANNEL)
        await pubsub.close()
        log.info("realtime.stream_closed", table=table, actor_id=str(actor_id))
