"""
Integration tests for the table endpoints.

Tests cover:
- Read policies per table (directory, subscriptions, memberships, notifications)
- Insert policies, duplicate keys and payload validation
- Conditional update/delete: missing filter, denied writes, immutable columns
- A subscription with members cannot stop being shared
- Membership status transitions enforced on update
- Subscriptions cannot be deleted while memberships reference them
- Error bodies and codes clients classify on
- Change publication after committed writes
"""

from __future__ import annotations

import json
import uuid

import pytest

from app.core.config import get_settings
from app.core.redis import CHANGES_CHANNEL


def _code(response) -> str:
    return response.json()["detail"]["code"]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReadPolicies:
    @pytest.mark.asyncio
    async def test_directory_is_public_by_default(self, client, seeded, auth):
        response = await client.get("/rest/v1/users", headers=auth(seeded.carol))
        assert response.status_code == 200
        assert len(response.json()) == 4

    @pytest.mark.asyncio
    async def test_private_directory_shows_only_self(self, client, seeded, auth, monkeypatch):
        monkeypatch.setattr(get_settings(), "users_directory_public", False)
        response = await client.get("/rest/v1/users", headers=auth(seeded.carol))
        assert [u["username"] for u in response.json()] == ["Carol"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("who,visible", [("admin", 1), ("alice", 1), ("bob", 0), ("carol", 0)])
    async def test_subscription_visibility(self, client, seeded, auth, who, visible):
        response = await client.get(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(getattr(seeded, who)),
        )
        assert response.status_code == 200
        assert len(response.json()) == visible

    @pytest.mark.asyncio
    async def test_members_visible_to_admin_and_self(self, client, seeded, auth):
        admin_view = await client.get("/rest/v1/subscription_members", headers=auth(seeded.admin))
        bob_view = await client.get("/rest/v1/subscription_members", headers=auth(seeded.bob))
        carol_view = await client.get("/rest/v1/subscription_members", headers=auth(seeded.carol))

        assert len(admin_view.json()) == 2
        assert [m["user_id"] for m in bob_view.json()] == [str(seeded.bob)]
        assert carol_view.json() == []

    @pytest.mark.asyncio
    async def test_notifications_visible_to_recipient_only(self, client, seeded, auth):
        bob_view = await client.get("/rest/v1/notifications", headers=auth(seeded.bob))
        admin_view = await client.get("/rest/v1/notifications", headers=auth(seeded.admin))
        assert len(bob_view.json()) == 1
        assert admin_view.json() == []

    @pytest.mark.asyncio
    async def test_column_selection_and_ordering(self, client, seeded, auth):
        response = await client.get(
            "/rest/v1/users",
            params=[("select", "username"), ("order", "username.desc"), ("limit", "2")],
            headers=auth(seeded.admin),
        )
        assert response.json() == [{"username": "bob"}, {"username": "alice"}]

    @pytest.mark.asyncio
    async def test_case_insensitive_like_with_escape(self, client, seeded, auth):
        found = await client.get(
            "/rest/v1/users", params={"username": "ilike.carol"}, headers=auth(seeded.admin)
        )
        wildcard = await client.get(
            "/rest/v1/users", params={"username": "ilike.c\\_rol"}, headers=auth(seeded.admin)
        )
        assert [u["user_id"] for u in found.json()] == [str(seeded.carol)]
        assert wildcard.json() == []

    @pytest.mark.asyncio
    async def test_in_filter(self, client, seeded, auth):
        response = await client.get(
            "/rest/v1/subscription_members",
            params={"status": "in.(pending,accepted)", "subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.admin),
        )
        assert {m["status"] for m in response.json()} == {"pending", "accepted"}


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------


class TestRequestErrors:
    @pytest.mark.asyncio
    async def test_missing_auth(self, client, seeded):
        response = await client.get("/rest/v1/users")
        assert response.status_code == 401
        assert _code(response) == "PGRST301"

    @pytest.mark.asyncio
    async def test_unknown_table(self, client, seeded, auth):
        response = await client.get("/rest/v1/projects", headers=auth(seeded.admin))
        assert response.status_code == 404
        assert _code(response) == "42P01"

    @pytest.mark.asyncio
    async def test_unknown_column(self, client, seeded, auth):
        response = await client.get(
            "/rest/v1/users", params={"nickname": "eq.x"}, headers=auth(seeded.admin)
        )
        assert response.status_code == 400
        assert _code(response) == "42703"

    @pytest.mark.asyncio
    async def test_malformed_uuid(self, client, seeded, auth):
        response = await client.get(
            "/rest/v1/users", params={"user_id": "eq.not-a-uuid"}, headers=auth(seeded.admin)
        )
        assert response.status_code == 400
        assert _code(response) == "22P02"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, seeded, auth):
        response = await client.post(
            "/rest/v1/notifications",
            content=b"{nope",
            headers={**auth(seeded.admin), "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert _code(response) == "PGRST102"


# ---------------------------------------------------------------------------
# Inserts
# ---------------------------------------------------------------------------


class TestInsert:
    @pytest.mark.asyncio
    async def test_admin_invites_member(self, client, seeded, auth, redis_mock):
        response = await client.post(
            "/rest/v1/subscription_members",
            json={"subscription_id": str(seeded.sub), "user_id": str(seeded.carol), "status": "pending"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 201
        row = response.json()[0]
        assert row["status"] == "pending"
        assert row["joined_at"] is None

        channel, payload = redis_mock.publish.await_args.args
        assert channel == CHANGES_CHANNEL
        change = json.loads(payload)
        assert change["type"] == "INSERT"
        assert change["table"] == "subscription_members"
        assert change["record"]["user_id"] == str(seeded.carol)

    @pytest.mark.asyncio
    async def test_non_admin_cannot_invite(self, client, seeded, auth, redis_mock):
        response = await client.post(
            "/rest/v1/subscription_members",
            json={"subscription_id": str(seeded.sub), "user_id": str(seeded.carol), "status": "pending"},
            headers=auth(seeded.alice),
        )
        assert response.status_code == 403
        assert _code(response) == "42501"
        redis_mock.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_membership(self, client, seeded, auth):
        response = await client.post(
            "/rest/v1/subscription_members",
            json={"subscription_id": str(seeded.sub), "user_id": str(seeded.bob), "status": "pending"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 409
        assert _code(response) == "23505"

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, client, seeded, auth):
        response = await client.post(
            "/rest/v1/subscription_members",
            json={"subscription_id": str(seeded.sub), "user_id": str(seeded.carol), "status": "maybe"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_subscription_admin_must_be_actor(self, client, seeded, auth):
        body = {
            "admin_id": str(seeded.admin),
            "name": "Music",
            "cost": "9.99",
            "renewal_frequency": "monthly",
            "start_date": "2024-03-01",
            "next_renewal_date": "2024-04-01",
        }
        denied = await client.post("/rest/v1/subscriptions", json=body, headers=auth(seeded.carol))
        allowed = await client.post(
            "/rest/v1/subscriptions", json={**body, "admin_id": str(seeded.carol)}, headers=auth(seeded.carol)
        )
        assert denied.status_code == 403
        assert allowed.status_code == 201
        assert allowed.json()[0]["admin_id"] == str(seeded.carol)

    @pytest.mark.asyncio
    async def test_anyone_may_notify(self, client, seeded, auth):
        response = await client.post(
            "/rest/v1/notifications",
            json={"user_id": str(seeded.admin), "message": "hi", "type": "info"},
            headers=auth(seeded.carol),
        )
        assert response.status_code == 201
        assert response.json()[0]["status"] == "unread"


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_requires_filter(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/notifications", json={"status": "read"}, headers=auth(seeded.bob)
        )
        assert response.status_code == 400
        assert _code(response) == "21000"

    @pytest.mark.asyncio
    async def test_visible_but_not_writable_is_denied(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            json={"name": "Mine now"},
            headers=auth(seeded.alice),
        )
        assert response.status_code == 403
        assert _code(response) == "42501"

    @pytest.mark.asyncio
    async def test_invisible_rows_match_nothing(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            json={"name": "Mine now"},
            headers=auth(seeded.carol),
        )
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_admin_id_is_immutable(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            json={"admin_id": str(seeded.alice)},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 400
        assert _code(response) == "KL001"

    @pytest.mark.asyncio
    async def test_cannot_unshare_with_members(self, client, seeded, auth, redis_mock):
        response = await client.patch(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            json={"is_shared": False},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 400
        assert _code(response) == "KL004"
        redis_mock.publish.assert_not_awaited()

        rows = (await client.get("/rest/v1/subscriptions", headers=auth(seeded.admin))).json()
        assert rows[0]["is_shared"] is True

    @pytest.mark.asyncio
    async def test_unshare_after_members_removed(self, client, seeded, auth):
        await client.delete(
            "/rest/v1/subscription_members",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.admin),
        )
        response = await client.patch(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            json={"is_shared": False},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 200
        assert response.json()[0]["is_shared"] is False

    @pytest.mark.asyncio
    async def test_accept_sets_joined_at(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscription_members",
            params={
                "subscription_id": f"eq.{seeded.sub}",
                "user_id": f"eq.{seeded.bob}",
                "status": "eq.pending",
            },
            json={"status": "accepted"},
            headers=auth(seeded.bob),
        )
        assert response.status_code == 200
        row = response.json()[0]
        assert row["status"] == "accepted"
        assert row["joined_at"] is not None

    @pytest.mark.asyncio
    async def test_conditional_update_skips_changed_rows(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscription_members",
            params={"user_id": f"eq.{seeded.alice}", "status": "eq.pending"},
            json={"status": "accepted"},
            headers=auth(seeded.alice),
        )
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_invalid_transition(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscription_members",
            params={"user_id": f"eq.{seeded.bob}"},
            json={"status": "left"},
            headers=auth(seeded.bob),
        )
        assert response.status_code == 400
        assert _code(response) == "KL002"

    @pytest.mark.asyncio
    async def test_member_leaves(self, client, seeded, auth):
        response = await client.patch(
            "/rest/v1/subscription_members",
            params={"user_id": f"eq.{seeded.alice}", "status": "eq.accepted"},
            json={"status": "left"},
            headers=auth(seeded.alice),
        )
        assert response.json()[0]["status"] == "left"


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_subscription_with_members_is_protected(self, client, seeded, auth):
        response = await client.delete(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 409
        assert _code(response) == "23503"

    @pytest.mark.asyncio
    async def test_grouped_match_delete(self, client, seeded, auth, redis_mock):
        response = await client.delete(
            "/rest/v1/subscription_members",
            params={"and": f"(subscription_id.eq.{seeded.sub},user_id.eq.{seeded.bob})"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 200
        assert [r["user_id"] for r in response.json()] == [str(seeded.bob)]
        change = json.loads(redis_mock.publish.await_args.args[1])
        assert change["type"] == "DELETE"
        assert change["old_record"]["user_id"] == str(seeded.bob)

    @pytest.mark.asyncio
    async def test_admin_removes_invite_notifications(self, client, seeded, auth):
        response = await client.delete(
            "/rest/v1/notifications",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.admin),
        )
        assert len(response.json()) == 1

    @pytest.mark.asyncio
    async def test_member_cannot_delete_subscription(self, client, seeded, auth):
        response = await client.delete(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.alice),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_users_cannot_be_deleted(self, client, seeded, auth):
        response = await client.delete(
            "/rest/v1/users",
            params={"user_id": f"eq.{seeded.carol}"},
            headers=auth(seeded.carol),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_empty_subscription_deletes(self, client, seeded, auth):
        for user_id in (seeded.alice, seeded.bob):
            await client.delete(
                "/rest/v1/subscription_members",
                params={"user_id": f"eq.{user_id}"},
                headers=auth(seeded.admin),
            )
        response = await client.delete(
            "/rest/v1/subscriptions",
            params={"subscription_id": f"eq.{seeded.sub}"},
            headers=auth(seeded.admin),
        )
        assert response.status_code == 200
        assert response.json()[0]["subscription_id"] == str(seeded.sub)
