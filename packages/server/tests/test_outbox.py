"""
Tests for the notification outbox.

Tests cover:
- Delivery turns a pending event into a notification row
- Events for deleted subscriptions are discarded
- Failed deliveries back off and eventually give up
- The cascade procedure drops undelivered events
- The ARQ task delivers what is due
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from app.core.auth import create_jwt
from app.core.config import get_settings
from app.core.database import async_session_factory
from app.models import Notification, NotificationOutbox
from app.models.base import _utcnow
from app.services import outbox
from app.tasks.outbox_delivery import WorkerSettings, deliver_outbox
from klypp_shared.schemas.common import NotificationType


async def _queue(user_id, subscription_id, message="hello") -> uuid.UUID:
    async with async_session_factory() as session:
        event = outbox.enqueue(session, user_id, subscription_id, message, NotificationType.INFO)
        await session.commit()
        return event.event_id


async def _event(event_id) -> NotificationOutbox:
    async with async_session_factory() as session:
        return await session.get(NotificationOutbox, event_id)


async def _notes(user_id) -> list[Notification]:
    async with async_session_factory() as session:
        result = await session.execute(select(Notification).where(Notification.user_id == user_id))
        return list(result.scalars().all())


class TestDelivery:
    @pytest.mark.asyncio
    async def test_pending_event_becomes_notification(self, seeded, redis_mock):
        event_id = await _queue(seeded.carol, seeded.sub)

        assert await outbox.flush_outbox() == 1

        event = await _event(event_id)
        assert event.state == outbox.DELIVERED
        assert event.delivered_at is not None
        notes = await _notes(seeded.carol)
        assert [n.notification_id for n in notes] == [event.notification_id]
        assert notes[0].type == "info"
        redis_mock.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delivered_events_are_not_sent_twice(self, seeded):
        await _queue(seeded.carol, seeded.sub)
        assert await outbox.flush_outbox() == 1
        assert await outbox.flush_outbox() == 0
        assert len(await _notes(seeded.carol)) == 1

    @pytest.mark.asyncio
    async def test_event_without_subscription(self, seeded):
        await _queue(seeded.carol, None)
        assert await outbox.flush_outbox() == 1
        assert (await _notes(seeded.carol))[0].subscription_id is None

    @pytest.mark.asyncio
    async def test_deleted_subscription_is_discarded(self, seeded):
        event_id = await _queue(seeded.carol, uuid.uuid4())

        assert await outbox.flush_outbox() == 0

        event = await _event(event_id)
        assert event.state == outbox.DISCARDED
        assert await _notes(seeded.carol) == []

    @pytest.mark.asyncio
    async def test_events_not_yet_due_wait(self, seeded):
        await _queue(seeded.carol, seeded.sub)
        async with async_session_factory() as session:
            delivered, changes = await outbox.deliver_pending(
                session, now=_utcnow() - timedelta(hours=1)
            )
        assert delivered == 0
        assert changes == []


class TestRetries:
    @pytest.fixture
    def failing_delivery(self, monkeypatch):
        async def fail(session, event, now):
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

        monkeypatch.setattr(outbox, "_deliver_one", fail)

    @pytest.mark.asyncio
    async def test_failure_backs_off(self, seeded, failing_delivery):
        event_id = await _queue(seeded.carol, seeded.sub)
        before = _utcnow()

        assert await outbox.flush_outbox() == 0

        event = await _event(event_id)
        assert event.state == outbox.PENDING
        assert event.attempts == 1
        assert "database is locked" in event.last_error
        assert event.next_attempt_at.replace(tzinfo=None) >= before + timedelta(
            seconds=get_settings().outbox_retry_base_seconds
        )
        # Not due again yet
        assert await outbox.flush_outbox() == 0
        assert (await _event(event_id)).attempts == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, seeded, failing_delivery, monkeypatch):
        monkeypatch.setattr(get_settings(), "outbox_max_attempts", 1)
        event_id = await _queue(seeded.carol, seeded.sub)

        await outbox.flush_outbox()

        assert (await _event(event_id)).state == outbox.DISCARDED

    def test_retry_delay_is_capped(self, monkeypatch):
        settings = get_settings()
        monkeypatch.setattr(settings, "outbox_retry_base_seconds", 2.0)
        monkeypatch.setattr(settings, "outbox_retry_max_seconds", 60.0)
        assert outbox.retry_delay(1) == timedelta(seconds=2)
        assert outbox.retry_delay(3) == timedelta(seconds=8)
        assert outbox.retry_delay(20) == timedelta(seconds=60)


class TestCascade:
    @pytest.mark.asyncio
    async def test_cascade_drops_undelivered_events(self, client, seeded):
        event_id = await _queue(seeded.carol, seeded.sub)

        response = await client.post(
            "/rest/v1/rpc/delete_subscription_with_related",
            json={"p_subscription_id": str(seeded.sub)},
            headers={"Authorization": f"Bearer {create_jwt(seeded.admin)}"},
        )

        assert response.json()["success"] is True
        assert await _event(event_id) is None
        assert await _notes(seeded.carol) == []


class TestWorkerTask:
    @pytest.mark.asyncio
    async def test_deliver_outbox(self, seeded):
        await _queue(seeded.carol, seeded.sub)
        await _queue(seeded.alice, seeded.sub)
        assert await deliver_outbox({}) == 2

    def test_worker_settings(self):
        assert deliver_outbox in WorkerSettings.functions
        assert len(WorkerSettings.cron_jobs) == 1
