#!/usr/bin/env python3
"""Seed a development database with users, a shared subscription and an invite.

Usage:
    python scripts/seed_dev_data.py

Uses KLYPP_DATABASE_URL (or the default local Postgres). Prints an access
token per user for the ``klypp`` CLI.
"""

import asyncio
import uuid
from datetime import date
from decimal import Decimal

from app.core.auth import create_jwt
from app.core.database import engine, get_session_context, init_db
from app.models import Notification, Subscription, SubscriptionMember, User

# Deterministic UUIDs for reproducibility
ALICE_ID = uuid.UUID("00000000-0000-0000-0000-000000000010")
BOB_ID = uuid.UUID("00000000-0000-0000-0000-000000000011")
CAROL_ID = uuid.UUID("00000000-0000-0000-0000-000000000012")
SUBSCRIPTION_ID = uuid.UUID("00000000-0000-0000-0000-000000000100")
INVITE_NOTIFICATION_ID = uuid.UUID("00000000-0000-0000-0000-000000000200")


async def seed():
    await init_db()

    async with get_session_context() as session:
        for user_id, username, name in [
            (ALICE_ID, "alice", "Alice"),
            (BOB_ID, "bob", "Bob"),
            (CAROL_ID, "carol", "Carol"),
        ]:
            await session.merge(User(user_id=user_id, username=username, name=name))

        await session.merge(
            Subscription(
                subscription_id=SUBSCRIPTION_ID,
                admin_id=ALICE_ID,
                name="Family Streaming",
                cost=Decimal("17.99"),
                renewal_frequency="monthly",
                start_date=date(2024, 1, 1),
                next_renewal_date=date(2024, 2, 1),
                category="Entertainment",
                is_shared=True,
                max_members=4,
            )
        )
        await session.flush()

        # Bob is already in, Carol has a pending invite
        await session.merge(
            SubscriptionMember(subscription_id=SUBSCRIPTION_ID, user_id=BOB_ID, status="accepted")
        )
        await session.merge(
            SubscriptionMember(subscription_id=SUBSCRIPTION_ID, user_id=CAROL_ID, status="pending")
        )
        await session.merge(
            Notification(
                notification_id=INVITE_NOTIFICATION_ID,
                user_id=CAROL_ID,
                subscription_id=SUBSCRIPTION_ID,
                message="You have been invited to join the Family Streaming subscription",
                type="invite",
            )
        )

    await engine.dispose()
    print(f"Seeded subscription '{SUBSCRIPTION_ID}' with admin alice, member bob, invitee carol.")
    for name, user_id in [("alice", ALICE_ID), ("bob", BOB_ID), ("carol", CAROL_ID)]:
        print(f"  {name}: {create_jwt(user_id)}")


if __name__ == "__main__":
    asyncio.run(seed())
