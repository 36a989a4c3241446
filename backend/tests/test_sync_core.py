from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import token_for

from app.main import app
from app.models import Message
from app.services.onboarding import get_default_channel
from parley.reactions import ReactingUser, group_reactions, ReactionRow
from parley.realtime import ChangeFeed, get_change_feed
from parley.sync import (
    REACTION_FAILED_MESSAGE,
    SEND_FAILED_MESSAGE,
    ApiError,
    ChannelChangeListener,
    ChannelViewState,
    ChatApiClient,
    ErrorKind,
    FeedChangeSource,
    MessagesSnapshot,
    MessageView,
    OptimisticMutationEngine,
    PaginationCursorManager,
    ReplaceReconciler,
    RequestSequencer,
    ScrollPreservingReconciler,
    ThreadChangeListener,
)

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def transport(app_db) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=app)


@pytest.fixture()
def general_id(provision, session_factory) -> int:
    provision("alice")
    provision("bob")
    with session_factory() as session:
        return get_default_channel(session).id


def _api(transport: httpx.AsyncBaseTransport, user_id: str) -> ChatApiClient:
    return ChatApiClient("http://testserver", token=token_for(user_id), transport=transport)


def _mock_api(handler) -> ChatApiClient:
    return ChatApiClient("http://testserver", token="unused", transport=httpx.MockTransport(handler))


def _view(message_id: int | str, *, user_id: str = "alice", content: str | None = None, offset: int | None = None) -> MessageView:
    created = BASE_TIME + timedelta(seconds=message_id if offset is None else offset)
    return MessageView(
        id=message_id,
        content=content if content is not None else f"message {message_id}",
        channel_id=1,
        user_id=user_id,
        created_at=created,
        updated_at=created,
    )


@pytest.mark.anyio
async def test_posted_message_reaches_other_clients(transport, general_id) -> None:
    async with _api(transport, "alice") as alice_api, _api(transport, "bob") as bob_api:
        alice_view = ChannelViewState(general_id, "alice")
        bob_view = ChannelViewState(general_id, "bob")
        await PaginationCursorManager(bob_view, bob_api).load_initial()
        listener = ChannelChangeListener(bob_view, bob_api, FeedChangeSource(get_change_feed()))
        await listener.start()
        engine = OptimisticMutationEngine(alice_view, alice_api)

        alice_view.draft = "hello"
        sending = asyncio.create_task(engine.send_message())
        await asyncio.sleep(0)

        assert alice_view.draft == ""
        assert len(alice_view.messages) == 1
        assert alice_view.messages[0].is_temporary
        assert alice_view.messages[0].content == "hello"

        message = await sending
        assert message is not None
        assert [item.id for item in alice_view.messages] == [message.id]

        await listener.settle()
        assert [(item.id, item.content) for item in bob_view.messages] == [(message.id, "hello")]
        await listener.close()


@pytest.mark.anyio
async def test_listener_tracks_reactions_of_visible_messages(transport, general_id) -> None:
    async with _api(transport, "alice") as alice_api, _api(transport, "bob") as bob_api:
        posted = await alice_api.post_message(general_id, "react here")
        bob_view = ChannelViewState(general_id, "bob")
        await PaginationCursorManager(bob_view, bob_api).load_initial()
        listener = ChannelChangeListener(bob_view, bob_api, FeedChangeSource(get_change_feed()))
        await listener.start()

        await alice_api.toggle_reaction(general_id, posted["id"], "🎉")
        await listener.settle()

        reactions = bob_view.find(posted["id"]).reactions
        assert reactions["🎉"].count == 1
        assert [user.id for user in reactions["🎉"].users] == ["alice"]

        await listener.close()
        await alice_api.toggle_reaction(general_id, posted["id"], "🎉")
        await listener.settle()
        assert bob_view.find(posted["id"]).reactions["🎉"].count == 1


@pytest.mark.anyio
async def test_optimistic_reaction_toggle_round_trip(transport, general_id) -> None:
    async with _api(transport, "alice") as alice_api:
        posted = await alice_api.post_message(general_id, "thumbs?")
        view = ChannelViewState(general_id, "alice")
        await PaginationCursorManager(view, alice_api).load_initial()
        engine = OptimisticMutationEngine(view, alice_api)

        toggling = asyncio.create_task(engine.toggle_reaction(posted["id"], "👍"))
        await asyncio.sleep(0)
        optimistic = view.find(posted["id"]).reactions
        assert optimistic["👍"].users == [ReactingUser(id="alice", name="You")]

        confirmed = await toggling
        assert confirmed["👍"].count == 1
        assert view.find(posted["id"]).reactions["👍"].users[0].name == "Alice"

        assert await engine.toggle_reaction(posted["id"], "👍") == {}
        assert view.find(posted["id"]).reactions == {}


@pytest.mark.anyio
async def test_same_key_toggles_run_one_after_another(transport, general_id) -> None:
    async with _api(transport, "alice") as alice_api:
        posted = await alice_api.post_message(general_id, "double tap")
        view = ChannelViewState(general_id, "alice")
        await PaginationCursorManager(view, alice_api).load_initial()
        engine = OptimisticMutationEngine(view, alice_api)

        first, second = await asyncio.gather(
            engine.toggle_reaction(posted["id"], "👍"),
            engine.toggle_reaction(posted["id"], "👍"),
        )

        assert first["👍"].count == 1
        assert second == {}
        assert view.find(posted["id"]).reactions == {}


@pytest.mark.anyio
async def test_failed_send_removes_temporary_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "upstream_failure", "detail": "Internal server error"})

    notifications: list[str] = []
    view = ChannelViewState(1, "alice", draft="hello")
    async with _mock_api(handler) as api:
        engine = OptimisticMutationEngine(view, api, notifier=notifications.append)
        result = await engine.send_message()

    assert result is None
    assert view.messages == []
    assert notifications == [SEND_FAILED_MESSAGE]


@pytest.mark.anyio
async def test_blank_message_is_never_sent() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    view = ChannelViewState(1, "alice")
    async with _mock_api(handler) as api:
        engine = OptimisticMutationEngine(view, api)
        assert await engine.send_message("   ") is None

    assert requests == []
    assert view.messages == []


@pytest.mark.anyio
async def test_failed_reaction_refetches_server_state() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(500, json={"error": "upstream_failure", "detail": "boom"})
        return httpx.Response(
            200,
            json=[
                {
                    "message_id": 1,
                    "user_id": "bob",
                    "emoji": "🎉",
                    "created_at": BASE_TIME.isoformat(),
                    "user": {"id": "bob", "name": "Bob"},
                }
            ],
        )

    notifications: list[str] = []
    view = ChannelViewState(1, "alice", messages=[_view(1)])
    async with _mock_api(handler) as api:
        engine = OptimisticMutationEngine(view, api, notifier=notifications.append)
        assert await engine.toggle_reaction(1, "👍") is None

    reactions = view.find(1).reactions
    assert list(reactions) == ["🎉"]
    assert reactions["🎉"].users[0].id == "bob"
    assert notifications == [REACTION_FAILED_MESSAGE]


@pytest.mark.anyio
async def test_superseded_toggle_response_triggers_refetch() -> None:
    thumbs_entered = asyncio.Event()
    release_thumbs = asyncio.Event()
    reactor = {"id": "alice", "name": "Alice", "avatar_url": None}

    def group(emoji: str) -> dict:
        return {"emoji": emoji, "count": 1, "users": [reactor]}

    def row(emoji: str) -> dict:
        return {
            "message_id": 1,
            "user_id": "alice",
            "emoji": emoji,
            "created_at": BASE_TIME.isoformat(),
            "user": reactor,
        }

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=[row("❤️"), row("👍")])
        emoji = json.loads(request.content)["emoji"]
        if emoji == "👍":
            thumbs_entered.set()
            await release_thumbs.wait()
            return httpx.Response(200, json={"❤️": group("❤️"), "👍": group("👍")})
        return httpx.Response(200, json={"❤️": group("❤️")})

    view = ChannelViewState(1, "alice", messages=[_view(1)])
    async with _mock_api(handler) as api:
        engine = OptimisticMutationEngine(view, api)
        thumbs = asyncio.create_task(engine.toggle_reaction(1, "👍"))
        await thumbs_entered.wait()
        await engine.toggle_reaction(1, "❤️")
        assert list(view.find(1).reactions) == ["❤️"]

        release_thumbs.set()
        await thumbs

    assert sorted(view.find(1).reactions) == sorted(["❤️", "👍"])


@pytest.mark.anyio
async def test_api_errors_are_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/messages"):
            return httpx.Response(
                429,
                headers={"Retry-After": "12"},
                json={"error": "rate_limited", "detail": "Too many requests", "retry_after": 12},
            )
        raise httpx.ConnectError("connection refused", request=request)

    async with _mock_api(handler) as api:
        with pytest.raises(ApiError) as limited:
            await api.post_message(1, "hi")
        with pytest.raises(ApiError) as offline:
            await api.list_replies(1, 2)

    assert limited.value.kind is ErrorKind.LIMIT_REACHED
    assert limited.value.code == "rate_limited"
    assert limited.value.retry_after == 12
    assert offline.value.kind is ErrorKind.NETWORK


def test_request_sequencer_only_honours_latest_tag() -> None:
    sequencer = RequestSequencer()

    first = sequencer.next(("reactions", 1))
    second = sequencer.next(("reactions", 1))
    other = sequencer.next(("reactions", 2))

    assert not sequencer.is_current(("reactions", 1), first)
    assert sequencer.is_current(("reactions", 1), second)
    assert sequencer.is_current(("reactions", 2), other)


@pytest.mark.anyio
async def test_stale_refetch_response_is_discarded() -> None:
    entered = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    def row(name: str) -> dict:
        return {
            "message_id": 1,
            "user_id": name,
            "emoji": "👍",
            "created_at": BASE_TIME.isoformat(),
            "user": {"id": name, "name": name.title()},
        }

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            entered.set()
            await release.wait()
            return httpx.Response(200, json=[row("old")])
        return httpx.Response(200, json=[row("new")])

    view = ChannelViewState(1, "alice", messages=[_view(1)])
    async with _mock_api(handler) as api:
        listener = ChannelChangeListener(view, api, FeedChangeSource(ChangeFeed()))
        slow = asyncio.create_task(listener.refresh_reactions(1))
        await entered.wait()
        await listener.refresh_reactions(1)
        release.set()
        await slow

    assert [user.id for user in view.find(1).reactions["👍"].users] == ["new"]


def _seed(session_factory, channel_id: int, count: int, *, same_time_as_next: int | None = None) -> None:
    with session_factory() as session:
        for index in range(count):
            offset = index + 1 if index == same_time_as_next else index
            created = BASE_TIME + timedelta(seconds=offset)
            session.add(
                Message(
                    channel_id=channel_id,
                    user_id="alice",
                    content=f"message {index}",
                    created_at=created,
                    updated_at=created,
                )
            )
        session.commit()


@pytest.mark.anyio
async def test_load_older_pages_until_history_is_exhausted(transport, general_id, session_factory) -> None:
    _seed(session_factory, general_id, 120)
    view = ChannelViewState(general_id, "bob")

    async with _api(transport, "bob") as api:
        manager = PaginationCursorManager(view, api)
        pages = []
        while manager.has_more:
            pages.append(await manager.load_older())
        assert await manager.load_older() == []

    assert [len(page) for page in pages] == [50, 50, 20]
    ids = [message.id for page in pages for message in page]
    assert len(ids) == len(set(ids)) == 120
    assert view.messages[0].content == "message 0"
    assert view.messages[-1].content == "message 119"


@pytest.mark.anyio
async def test_load_older_keeps_messages_sharing_a_boundary_timestamp(transport, general_id, session_factory) -> None:
    _seed(session_factory, general_id, 120, same_time_as_next=69)
    view = ChannelViewState(general_id, "bob")

    async with _api(transport, "bob") as api:
        manager = PaginationCursorManager(view, api)
        await manager.load_initial()
        assert view.messages[0].content == "message 70"
        while manager.has_more:
            await manager.load_older()

    contents = [message.content for message in view.messages]
    assert len(contents) == len(set(contents)) == 120
    assert contents[69:71] == ["message 69", "message 70"]


@pytest.mark.anyio
async def test_window_refresh_starts_at_oldest_loaded_message(transport, general_id, session_factory) -> None:
    _seed(session_factory, general_id, 120, same_time_as_next=69)
    view = ChannelViewState(general_id, "bob")

    async with _api(transport, "bob") as api:
        await PaginationCursorManager(view, api).load_initial()
        listener = ChannelChangeListener(view, api, FeedChangeSource(ChangeFeed()))
        await listener.refresh_window()

    assert [message.content for message in view.messages] == [f"message {index}" for index in range(70, 120)]


@pytest.mark.anyio
async def test_concurrent_load_older_calls_collapse(transport, general_id, session_factory) -> None:
    _seed(session_factory, general_id, 60)
    view = ChannelViewState(general_id, "bob")

    async with _api(transport, "bob") as api:
        manager = PaginationCursorManager(view, api)
        await manager.load_initial()
        assert manager.has_more

        results = await asyncio.gather(manager.load_older(), manager.load_older())

    assert sorted(len(result) for result in results) == [0, 10]
    assert len(view.messages) == 60
    assert not manager.has_more


@pytest.mark.anyio
async def test_thread_listener_follows_replies(transport, general_id) -> None:
    async with _api(transport, "alice") as alice_api, _api(transport, "bob") as bob_api:
        parent = await alice_api.post_message(general_id, "thread starter")
        view = ChannelViewState(general_id, "alice")
        listener = ThreadChangeListener(view, alice_api, FeedChangeSource(get_change_feed()), parent["id"])
        await listener.start()
        assert view.threads[parent["id"]] == []

        await bob_api.post_message(general_id, "a reply", parent_id=parent["id"])
        await bob_api.post_message(general_id, "unrelated")
        await listener.settle()

        assert [reply.content for reply in view.threads[parent["id"]]] == ["a reply"]
        await listener.close()
        assert parent["id"] not in view.threads


def test_replace_reconciler_drops_confirmed_temporaries() -> None:
    view = ChannelViewState(1, "alice")
    confirmed = _view("temp-a", content="hi", offset=10)
    pending = _view("temp-b", content="still sending", offset=11)
    view.messages = [_view(1), confirmed, pending]

    ReplaceReconciler(view).reconcile(MessagesSnapshot([_view(1), _view(2, content="hi", offset=12)]))

    assert [message.id for message in view.messages] == [1, 2, "temp-b"]


class FakeViewport:
    def __init__(self, view: ChannelViewState, *, scroll_top: float, client_height: float = 500) -> None:
        self.view = view
        self.scroll_top = scroll_top
        self.client_height = client_height

    @property
    def scroll_height(self) -> float:
        return 50.0 * len(self.view.messages)


def _scroll_setup(scroll_top: float, **options) -> tuple[ChannelViewState, FakeViewport, ScrollPreservingReconciler]:
    view = ChannelViewState(1, "alice", messages=[_view(index) for index in range(10, 30)])
    viewport = FakeViewport(view, scroll_top=scroll_top)
    reconciler = ScrollPreservingReconciler(
        ReplaceReconciler(view), viewport, current_user_id="alice", **options
    )
    return view, viewport, reconciler


def test_scroll_position_is_kept_when_older_messages_arrive() -> None:
    view, viewport, reconciler = _scroll_setup(scroll_top=0)

    reconciler.reconcile(MessagesSnapshot([_view(index) for index in range(8, 30)]))

    assert viewport.scroll_top == 100


def test_reader_at_bottom_follows_own_message_only() -> None:
    view, viewport, reconciler = _scroll_setup(scroll_top=500)
    reconciler.reconcile(MessagesSnapshot([_view(index) for index in range(10, 30)] + [_view(30, user_id="bob")]))
    assert viewport.scroll_top == 500

    reconciler.reconcile(MessagesSnapshot([_view(index) for index in range(10, 31)] + [_view(31)]))
    assert viewport.scroll_top == 600


def test_reader_at_bottom_can_follow_everyone() -> None:
    view, viewport, reconciler = _scroll_setup(scroll_top=500, follow_others_at_bottom=True)

    reconciler.reconcile(MessagesSnapshot([_view(index) for index in range(10, 30)] + [_view(30, user_id="bob")]))

    assert viewport.scroll_top == 550


def test_optimistic_map_matches_server_grouping() -> None:
    bob = ReactingUser(id="bob", name="Bob")
    grouped = group_reactions([ReactionRow("👍", bob)])

    assert grouped["👍"].to_dict() == {
        "emoji": "👍",
        "count": 1,
        "users": [{"id": "bob", "name": "Bob", "avatar_url": None}],
    }
