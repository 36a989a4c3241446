from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import headers_for, token_for

from app.api.ws import authorize_subscription, can_receive
from app.core.errors import Forbidden, InvalidInput, NotFound
from app.models import Channel, ChannelMember, ChannelRole, Message
from app.services.onboarding import get_default_channel
from parley.realtime import ChangeAction, ChangeEvent, parse_filter


@pytest.fixture()
def workspace(provision, session_factory) -> dict[str, int]:
    """general (alice, bob), private 'staff' (alice only) and one message in each."""

    provision("alice")
    provision("bob")
    with session_factory() as session:
        general = get_default_channel(session)
        staff = Channel(name="staff", is_private=True, created_by="alice")
        session.add(staff)
        session.flush()
        session.add(ChannelMember(channel_id=staff.id, user_id="alice", role_in_channel=ChannelRole.ADMIN))
        public_message = Message(channel_id=general.id, user_id="alice", content="hello")
        private_message = Message(channel_id=staff.id, user_id="alice", content="psst")
        session.add_all([public_message, private_message])
        session.commit()
        return {
            "general": general.id,
            "staff": staff.id,
            "public_message": public_message.id,
            "private_message": private_message.id,
        }


def test_authorize_channel_scoped_filters(workspace, db_session) -> None:
    general = parse_filter("messages", f"channel_id=eq.{workspace['general']}")
    staff = parse_filter("messages", f"channel_id=eq.{workspace['staff']}")

    assert authorize_subscription(general, "bob", db_session) == general
    assert authorize_subscription(staff, "alice", db_session) == staff
    with pytest.raises(Forbidden):
        authorize_subscription(staff, "bob", db_session)
    with pytest.raises(NotFound):
        authorize_subscription(parse_filter("messages", "channel_id=eq.9999"), "bob", db_session)
    with pytest.raises(InvalidInput):
        authorize_subscription(parse_filter("messages", None), "bob", db_session)


def test_authorize_reaction_filters_are_narrowed(workspace, db_session) -> None:
    both = parse_filter(
        "message_reactions",
        f"message_id=in.({workspace['public_message']},{workspace['private_message']})",
    )

    narrowed = authorize_subscription(both, "bob", db_session)

    assert narrowed.values == (str(workspace["public_message"]),)
    assert authorize_subscription(both, "alice", db_session).values == both.values
    with pytest.raises(Forbidden):
        authorize_subscription(
            parse_filter("message_reactions", f"message_id=eq.{workspace['private_message']}"),
            "bob",
            db_session,
        )


def test_authorize_thread_and_membership_filters(workspace, db_session) -> None:
    thread = parse_filter("messages", f"parent_id=eq.{workspace['private_message']}")

    assert authorize_subscription(thread, "alice", db_session) == thread
    with pytest.raises(Forbidden):
        authorize_subscription(thread, "bob", db_session)
    with pytest.raises(Forbidden):
        authorize_subscription(parse_filter("channel_members", "user_id=eq.alice"), "bob", db_session)
    assert authorize_subscription(parse_filter("users", None), "bob", db_session).table == "users"


def test_websocket_requires_valid_token(client: TestClient, workspace) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/changes?token=nope"):
            pass
    assert exc_info.value.code == 1008

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/changes?token={token_for('ghost')}"):
            pass
    assert exc_info.value.code == 1008


def test_websocket_subscription_protocol(client: TestClient, workspace) -> None:
    with client.websocket_connect(f"/ws/changes?token={token_for('bob')}") as connection:
        connection.send_json(
            {"type": "subscribe", "id": "general", "table": "messages", "filter": f"channel_id=eq.{workspace['general']}"}
        )
        assert connection.receive_json() == {"type": "subscribed", "id": "general"}

        connection.send_json(
            {"type": "subscribe", "id": "staff", "table": "messages", "filter": f"channel_id=eq.{workspace['staff']}"}
        )
        rejected = connection.receive_json()
        assert rejected["type"] == "error"
        assert rejected["id"] == "staff"

        connection.send_json({"type": "subscribe", "id": "bad", "table": "messages", "filter": "channel_id=lt.1"})
        assert connection.receive_json()["type"] == "error"

        connection.send_json({"type": "ping"})
        assert connection.receive_json() == {"type": "pong"}

        connection.send_json({"type": "unsubscribe", "id": "general"})
        connection.send_text("not json")
        assert connection.receive_json() == {"type": "error", "detail": "Invalid payload"}


def test_events_are_filtered_by_current_membership(workspace, db_session) -> None:
    def event(table: str, **record) -> ChangeEvent:
        return ChangeEvent(table=table, action=ChangeAction.INSERT, record=record)

    staff_message = event("messages", id=99, channel_id=workspace["staff"], content="psst")
    staff_reaction = event("message_reactions", message_id=workspace["private_message"], emoji="👍")

    assert can_receive(staff_message, "alice", db_session)
    assert not can_receive(staff_message, "bob", db_session)
    assert can_receive(staff_reaction, "alice", db_session)
    assert not can_receive(staff_reaction, "bob", db_session)
    assert not can_receive(event("channels", id=workspace["staff"], is_private=True), "bob", db_session)
    assert can_receive(event("channels", id=workspace["general"], is_private=False), "bob", db_session)
    assert can_receive(event("channel_members", channel_id=workspace["staff"], user_id="bob"), "bob", db_session)
    assert can_receive(event("users", id="alice"), "bob", db_session)


def test_removed_member_stops_receiving_channel_messages(client: TestClient, workspace) -> None:
    general = workspace["general"]
    with client.websocket_connect(f"/ws/changes?token={token_for('bob')}") as connection:
        connection.send_json(
            {"type": "subscribe", "id": "general", "table": "messages", "filter": f"channel_id=eq.{general}"}
        )
        assert connection.receive_json() == {"type": "subscribed", "id": "general"}

        before = client.post(
            f"/api/channels/{general}/messages", json={"content": "still here"}, headers=headers_for("alice")
        )
        assert before.status_code == 200
        change = connection.receive_json()
        assert change["type"] == "change"
        assert change["event"]["record"]["content"] == "still here"

        removed = client.delete(f"/api/channels/{general}/members/bob", headers=headers_for("alice"))
        assert removed.status_code == 204
        after = client.post(
            f"/api/channels/{general}/messages", json={"content": "after removal"}, headers=headers_for("alice")
        )
        assert after.status_code == 200

        connection.send_json({"type": "ping"})
        assert connection.receive_json() == {"type": "pong"}
