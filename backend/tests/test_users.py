from __future__ import annotations

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from conftest import headers_for

from app.core.errors import Unauthenticated
from app.core.security import (
    create_identity_token,
    resolve_identity,
    sign_webhook_payload,
    verify_webhook_signature,
)
from app.models import Channel, ChannelMember, ChannelRole, PresenceStatus, User, UserRole


def test_identity_token_round_trip() -> None:
    token = create_identity_token("user_123", email="a@example.com", name="Ada")

    identity = resolve_identity(token)

    assert identity.user_id == "user_123"
    assert identity.email == "a@example.com"
    assert identity.name == "Ada"


def test_expired_or_missing_tokens_are_rejected() -> None:
    expired = create_identity_token("user_123", expires_delta=timedelta(seconds=-5))

    with pytest.raises(Unauthenticated) as exc_info:
        resolve_identity(expired)
    assert exc_info.value.detail == "Token has expired"
    with pytest.raises(Unauthenticated):
        resolve_identity(None)
    with pytest.raises(Unauthenticated):
        resolve_identity("garbage")


def test_webhook_signature_verification() -> None:
    body = b'{"type": "user.created"}'
    signature = sign_webhook_payload(body)

    assert verify_webhook_signature(body, signature)
    assert verify_webhook_signature(body, f"sha256={signature}")
    assert not verify_webhook_signature(body + b" ", signature)
    assert not verify_webhook_signature(body, None)


def test_sync_creates_user_and_joins_general(client: TestClient, session_factory) -> None:
    response = client.post("/api/users/sync", headers=headers_for("alice"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["id"] == "alice"
    assert body["email"] == "alice@example.com"
    assert body["status"] == "ONLINE"
    assert body["role"] == "USER"

    second = client.post("/api/users/sync", headers=headers_for("alice"))
    assert second.status_code == 200

    with session_factory() as session:
        general = session.execute(select(Channel).where(Channel.name == "general")).scalar_one()
        memberships = session.execute(
            select(ChannelMember).where(ChannelMember.channel_id == general.id)
        ).scalars().all()
        assert [(member.user_id, member.role_in_channel) for member in memberships] == [
            ("alice", ChannelRole.ADMIN)
        ]


def test_unsynced_user_is_unauthenticated(client: TestClient) -> None:
    response = client.get("/api/users/me", headers=headers_for("ghost"))

    assert response.status_code == 401
    assert response.json()["detail"] == "User has not been synced"


def test_profile_and_status_updates(client: TestClient, provision) -> None:
    alice = provision("alice")

    profile = client.patch("/api/users/me", json={"name": "Alice Liddell", "bio": "Down the hole"}, headers=alice)
    assert profile.status_code == 200
    assert profile.json()["name"] == "Alice Liddell"

    status = client.put(
        "/api/users/me/status",
        json={"status": "AWAY", "status_message": "Lunch", "status_emoji": "🍕"},
        headers=alice,
    )
    assert status.status_code == 200
    assert status.json()["status"] == "AWAY"
    assert status.json()["status_message"] == "Lunch"

    too_long = client.put("/api/users/me/status", json={"status_message": "x" * 26}, headers=alice)
    assert too_long.status_code == 400
    assert too_long.json()["error"] == "invalid_input"

    me = client.get("/api/users/me", headers=alice).json()
    assert me["status_message"] == "Lunch"
    assert me["bio"] == "Down the hole"


def _signed_post(client: TestClient, payload: dict, *, signature: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/api/webhooks/identity",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Identity-Signature": signature or f"sha256={sign_webhook_payload(body)}",
        },
    )


def test_identity_webhook_lifecycle(client: TestClient, session_factory) -> None:
    created = _signed_post(
        client,
        {
            "type": "user.created",
            "data": {
                "id": "user_1",
                "email_addresses": [{"email_address": "grace@example.com"}],
                "first_name": "Grace",
                "last_name": "Hopper",
                "image_url": "https://img.example.com/grace.png",
                "public_metadata": {"role": "admin"},
            },
        },
    )
    assert created.status_code == 204, created.text

    with session_factory() as session:
        user = session.get(User, "user_1")
        assert user.name == "Grace Hopper"
        assert user.role == UserRole.ADMIN
        assert user.status == PresenceStatus.OFFLINE
        assert user.avatar_ref == "https://img.example.com/grace.png"

    deleted = _signed_post(client, {"type": "user.deleted", "data": {"id": "user_1"}})
    assert deleted.status_code == 204
    with session_factory() as session:
        assert session.get(User, "user_1") is None
        assert session.execute(select(ChannelMember)).scalars().all() == []


def test_identity_webhook_rejects_bad_signature_and_payloads(client: TestClient) -> None:
    payload = {"type": "user.created", "data": {"id": "user_2"}}

    forged = _signed_post(client, payload, signature="sha256=deadbeef")
    assert forged.status_code == 401

    no_email = _signed_post(client, payload)
    assert no_email.status_code == 400

    body = b"not json"
    malformed = client.post(
        "/api/webhooks/identity",
        content=body,
        headers={"X-Identity-Signature": sign_webhook_payload(body)},
    )
    assert malformed.status_code == 400


def test_deleting_sole_admin_promotes_earliest_member(client: TestClient, provision, session_factory) -> None:
    provision("alice")
    provision("bob")
    provision("carol")
    with session_factory() as session:
        ops = Channel(name="ops", created_by="alice")
        session.add(ops)
        session.flush()
        session.add_all(
            [
                ChannelMember(channel_id=ops.id, user_id="alice", role_in_channel=ChannelRole.ADMIN),
                ChannelMember(channel_id=ops.id, user_id="carol", role_in_channel=ChannelRole.ADMIN),
                ChannelMember(channel_id=ops.id, user_id="bob", role_in_channel=ChannelRole.MEMBER),
            ]
        )
        session.commit()

    deleted = _signed_post(client, {"type": "user.deleted", "data": {"id": "alice"}})
    assert deleted.status_code == 204

    with session_factory() as session:
        roles = {
            (member.channel.name, member.user_id): member.role_in_channel
            for member in session.execute(select(ChannelMember)).scalars()
        }
    assert roles[("general", "bob")] == ChannelRole.ADMIN
    assert roles[("general", "carol")] == ChannelRole.MEMBER
    assert roles[("ops", "carol")] == ChannelRole.ADMIN
    assert roles[("ops", "bob")] == ChannelRole.MEMBER
    assert not any(user_id == "alice" for _, user_id in roles)
