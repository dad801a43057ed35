"""
ARQ background task: deliver notification outbox events that are due.

Run with ``arq app.tasks.outbox_delivery.WorkerSettings``. Events normally go
out right after the write that queued them; this task picks up whatever that
first attempt left behind, including events waiting out a retry delay.
"""

from __future__ import annotations

import structlog
from arq import cron
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.services.outbox import flush_outbox

log = structlog.get_logger()


async def deliver_outbox(ctx: dict) -> int:
    """Deliver due outbox events. Returns the number delivered."""
    delivered = await flush_outbox()
    if delivered:
        log.info("outbox.batch_delivered", count=delivered)
    return delivered


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [deliver_outbox]
    cron_jobs = [
        # Every ten seconds
        cron(deliver_outbox, second={0, 10, 20, 30, 40, 50}, run_at_startup=True),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
