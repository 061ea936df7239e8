import os

os.environ["TESTING"] = "True"

import asyncio
import pytest
import pytest_asyncio
from datetime import timedelta
from contextlib import asynccontextmanager
from typing import AsyncGenerator
from unittest.mock import AsyncMock

from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from campus_share.database.models import Base, new_id
from campus_share.services import errors
from campus_share.services.chat import ChatEngine
from campus_share.services.directory import Directory
from campus_share.services.document_store import DocumentStore
from campus_share.services.live_query import ChangeType, OrderBy, where
from campus_share.services.notification_fanout import NotificationFanout, NotificationListener
from campus_share.services.request_lifecycle import Location, RequestLifecycle
from campus_share.services.stream_merge import StreamMerger
from campus_share.utils.time_utils import get_utc_now

HERE = Location(13.7563, 100.5018, "Main Hall, Campus Road")


# --- Store on a file database so concurrent sessions get their own connections ---

@pytest_asyncio.fixture(scope="function")
async def store(tmp_path) -> AsyncGenerator[DocumentStore, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'campus_share.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield DocumentStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


async def add_user(store: DocumentStore, name: str, campus: str, **fields) -> dict:
    return await store.put("users", new_id(), {
        "firebase_uid": f"uid-{name}",
        "email": f"{name}@example.com",
        "display_name": name.title(),
        "campus": campus,
        "created_at": get_utc_now(),
        **fields,
    })


@pytest_asyncio.fixture(scope="function")
async def people(store: DocumentStore) -> dict:
    return {
        "alice": await add_user(store, "alice", "X"),
        "bob": await add_user(store, "bob", "X"),
        "carol": await add_user(store, "carol", "X"),
        "dave": await add_user(store, "dave", "X"),
        "erin": await add_user(store, "erin", "Y"),
        "frank": await add_user(store, "frank", "Y"),
    }


@pytest.fixture
def lifecycle(store: DocumentStore) -> RequestLifecycle:
    return RequestLifecycle(store, NotificationFanout(store, Directory(store), radius_meters=0))


async def post(lifecycle: RequestLifecycle, owner: dict, title: str = "Borrow a calculator") -> dict:
    request, _ = await lifecycle.create(owner, title, "Academic", "For the exam", "2 hours", HERE)
    return request


async def next_event(live, timeout: float = 2):
    return await asyncio.wait_for(live.__anext__(), timeout)


class RecordingSink:
    def __init__(self):
        self.alerts = []
        self.arrived = asyncio.Event()

    async def present(self, title, body, data=None):
        self.alerts.append((title, body, data))
        self.arrived.set()


###############################################################
# 1. Request lifecycle: exactly-once accept
###############################################################

@pytest.mark.asyncio
async def test_etc_001_concurrent_accept_has_one_winner(lifecycle, people):
    request = await post(lifecycle, people["alice"])

    results = await asyncio.gather(
        lifecycle.accept(request["id"], people["bob"]["id"]),
        lifecycle.accept(request["id"], people["carol"]["id"]),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if isinstance(r, errors.PreconditionFailed)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = await lifecycle.get(request["id"])
    assert stored["status"] == "accepted"
    assert stored["accepted_by"] == winners[0]["accepted_by"]
    assert stored["accepted_by"] in (people["bob"]["id"], people["carol"]["id"])


@pytest.mark.asyncio
async def test_etc_002_second_accept_is_rejected(lifecycle, people):
    request = await post(lifecycle, people["alice"])
    accepted = await lifecycle.accept(request["id"], people["bob"]["id"])
    assert accepted["accepted_by"] == people["bob"]["id"]

    with pytest.raises(errors.PreconditionFailed, match="already been accepted"):
        await lifecycle.accept(request["id"], people["carol"]["id"])

    stored = await lifecycle.get(request["id"])
    assert stored["accepted_by"] == people["bob"]["id"]


@pytest.mark.asyncio
async def test_etc_003_owner_cannot_accept_own_request(lifecycle, people):
    request = await post(lifecycle, people["alice"])
    with pytest.raises(errors.ValidationError):
        await lifecycle.accept(request["id"], people["alice"]["id"])

    stored = await lifecycle.get(request["id"])
    assert stored["status"] == "open"
    assert stored["accepted_by"] is None


@pytest.mark.asyncio
async def test_etc_004_accepted_by_is_set_exactly_when_accepted(lifecycle, people):
    first = await post(lifecycle, people["alice"], "Umbrella")
    second = await post(lifecycle, people["bob"], "Stapler")
    await lifecycle.accept(first["id"], people["carol"]["id"])

    for request in await lifecycle.store.find("requests"):
        assert (request["status"] == "accepted") == (request["accepted_by"] is not None)
        assert request["accepted_by"] != request["owner_id"]
    assert (await lifecycle.get(second["id"]))["status"] == "open"


###############################################################
# 2. Notification fan-out
###############################################################

@pytest.mark.asyncio
async def test_etc_005_fanout_reaches_campus_neighbors_only(lifecycle, people, store):
    request, report = await lifecycle.create(people["alice"], "Need tape", "Household", location=HERE)

    notifications = await store.find("notifications")
    assert len(notifications) == 3
    assert {n["recipient_id"] for n in notifications} == {people[p]["id"] for p in ("bob", "carol", "dave")}
    assert all(n["body"] == "Alice needs: Need tape" for n in notifications)
    assert all(n["link"] == f"/requests/{request['id']}" for n in notifications)
    assert report.notified == 3
    assert report.failure is None
    assert report.message == "Request posted! We've notified 3 neighbors in X."


@pytest.mark.asyncio
async def test_etc_006_fanout_with_no_neighbors(lifecycle, store):
    loner = await add_user(store, "zoe", "Z")
    _, report = await lifecycle.create(loner, "Need tape", "Household", location=HERE)
    assert report.notified == 0
    assert report.message == "Request posted! (No other neighbors found in Z)"
    assert await store.count("notifications") == 0


@pytest.mark.asyncio
async def test_etc_007_batch_failure_falls_back_to_single_writes(lifecycle, people, store, mocker):
    mocker.patch.object(store, "put_many", AsyncMock(side_effect=errors.TransientStoreError("batch lost")))

    _, report = await lifecycle.create(people["alice"], "Need tape", "Household", location=HERE)

    assert report.notified == 3
    assert report.failure is None
    assert await store.count("notifications") == 3


@pytest.mark.asyncio
async def test_etc_008_partial_fanout_is_reported_not_raised(lifecycle, people, store, mocker):
    real_put = store.put
    carol_id = people["carol"]["id"]

    async def flaky_put(collection, doc_id, fields):
        if collection == "notifications" and fields["recipient_id"] == carol_id:
            raise errors.TransientStoreError("write lost")
        return await real_put(collection, doc_id, fields)

    mocker.patch.object(store, "put_many", AsyncMock(side_effect=errors.TransientStoreError("batch lost")))
    mocker.patch.object(store, "put", side_effect=flaky_put)

    request, report = await lifecycle.create(people["alice"], "Need tape", "Household", location=HERE)

    assert await store.get("requests", request["id"]) is not None
    assert report.intended == 3
    assert report.notified == 2
    assert report.failure.failed_recipients == [carol_id]
    assert carol_id not in report.recipient_ids
    assert await store.count("notifications", [where("recipient_id", "==", carol_id)]) == 0


@pytest.mark.asyncio
async def test_etc_009_radius_limits_fanout(store):
    poster = await add_user(store, "pim", "X", latitude=HERE.latitude, longitude=HERE.longitude)
    near = await add_user(store, "nok", "X", latitude=13.7570, longitude=100.5020)
    await add_user(store, "far", "X", latitude=14.7563, longitude=100.5018)
    lifecycle = RequestLifecycle(store, NotificationFanout(store, Directory(store), radius_meters=500))

    _, report = await lifecycle.create(poster, "Need tape", "Household", location=HERE)

    assert report.recipient_ids == [near["id"]]


###############################################################
# 3. Chat threads
###############################################################

@pytest.mark.asyncio
async def test_etc_010_empty_message_writes_nothing(lifecycle, people, store):
    request = await post(lifecycle, people["alice"])
    with pytest.raises(errors.ValidationError):
        await ChatEngine(store).send(request["id"], people["alice"]["id"], "Alice", "")
    assert await store.count("messages") == 0


@pytest.mark.asyncio
async def test_etc_011_history_is_oldest_first(lifecycle, people, store):
    request = await post(lifecycle, people["alice"])
    await lifecycle.accept(request["id"], people["bob"]["id"])
    chat = ChatEngine(store)
    await chat.send(request["id"], people["alice"]["id"], "Alice", "Hi, still need it?")
    await chat.send(request["id"], people["bob"]["id"], None, "On my way")

    history = await chat.history(request["id"])
    assert [m["text"] for m in history] == ["Hi, still need it?", "On my way"]
    assert history[1]["sender_name"] == "User"


@pytest.mark.asyncio
async def test_etc_012_chat_on_deleted_request_is_not_found(lifecycle, people, store):
    request = await post(lifecycle, people["alice"])
    chat = ChatEngine(store)
    await chat.send(request["id"], people["alice"]["id"], "Alice", "hello")
    await lifecycle.delete(request["id"], people["alice"]["id"])

    with pytest.raises(errors.NotFound):
        await chat.send(request["id"], people["alice"]["id"], "Alice", "anyone?")
    with pytest.raises(errors.NotFound):
        await chat.history(request["id"])


@pytest.mark.asyncio
async def test_etc_013_live_thread_receives_new_messages(lifecycle, people, store):
    request = await post(lifecycle, people["alice"])
    chat = ChatEngine(store)
    await chat.send(request["id"], people["alice"]["id"], "Alice", "first")

    async with await chat.subscribe(request["id"]) as live:
        assert [m["text"] for m in live.snapshot()] == ["first"]
        await chat.send(request["id"], people["bob"]["id"], "Bob", "second")
        event = await next_event(live)

    assert event.type == ChangeType.ADDED
    assert event.document["text"] == "second"
    assert event.new_index == 1


###############################################################
# 4. Deletion
###############################################################

@pytest.mark.asyncio
async def test_etc_014_only_owner_can_delete(lifecycle, people):
    request = await post(lifecycle, people["alice"])
    with pytest.raises(errors.PermissionDenied):
        await lifecycle.delete(request["id"], people["bob"]["id"])

    await lifecycle.delete(request["id"], people["alice"]["id"])
    with pytest.raises(errors.NotFound):
        await lifecycle.get(request["id"])
    with pytest.raises(errors.NotFound):
        await lifecycle.delete(request["id"], people["alice"]["id"])


###############################################################
# 5. Live queries
###############################################################

@pytest.mark.asyncio
async def test_etc_015_live_query_snapshot_and_events(lifecycle, people, store):
    older = await post(lifecycle, people["alice"], "Older")
    open_only = [where("status", "==", "open")]

    async with store.query("requests", open_only, [OrderBy("created_at", descending=True)]) as live:
        assert [r["id"] for r in live.snapshot()] == [older["id"]]

        newer = await post(lifecycle, people["bob"], "Newer")
        added = await next_event(live)
        assert added.type == ChangeType.ADDED
        assert added.id == newer["id"]
        assert added.new_index == 0

        await lifecycle.accept(older["id"], people["carol"]["id"])
        removed = await next_event(live)
        assert removed.type == ChangeType.REMOVED
        assert removed.id == older["id"]
        assert removed.old_index == 1
        assert [r["id"] for r in live.snapshot()] == [newer["id"]]


@pytest.mark.asyncio
async def test_etc_016_live_query_reports_modifications(lifecycle, people, store):
    request = await post(lifecycle, people["alice"])
    async with lifecycle.owned_by(people["alice"]["id"]) as live:
        await lifecycle.accept(request["id"], people["bob"]["id"])
        event = await next_event(live)
    assert event.type == ChangeType.MODIFIED
    assert event.document["accepted_by"] == people["bob"]["id"]
    assert (event.old_index, event.new_index) == (0, 0)


@pytest.mark.asyncio
async def test_etc_017_unsubscribe_is_idempotent_and_stops_delivery(lifecycle, people, store):
    live = await lifecycle.feed().open()
    assert store.feed.listener_count("requests") == 1

    live.unsubscribe()
    live.unsubscribe()
    await post(lifecycle, people["alice"])

    assert store.feed.listener_count("requests") == 0
    assert [event async for event in live] == []
    assert live.closed


@pytest.mark.asyncio
async def test_etc_018_live_query_retries_transient_errors(store, mocker):
    mocker.patch.object(store, "find", AsyncMock(side_effect=[
        errors.TransientStoreError("down"), errors.TransientStoreError("still down"), [],
    ]))
    live = store.query("requests", retry_attempts=5, retry_base_delay=0)
    async with live:
        assert live.snapshot() == []
        assert live.stale is False
    assert store.find.await_count == 3


@pytest.mark.asyncio
async def test_etc_019_live_query_gives_up_after_retries(store, mocker):
    mocker.patch.object(store, "find", AsyncMock(side_effect=errors.TransientStoreError("down")))
    live = store.query("requests", retry_attempts=2, retry_base_delay=0)
    with pytest.raises(errors.TransientStoreError):
        await live.open()
    assert live.closed
    assert store.feed.listener_count("requests") == 0


@pytest.mark.asyncio
async def test_etc_020_failed_resync_terminates_iteration(lifecycle, people, store, mocker):
    live = await store.query("requests", retry_attempts=1, retry_base_delay=0).open()
    mocker.patch.object(store, "find", AsyncMock(side_effect=errors.TransientStoreError("down")))

    with pytest.raises(errors.TransientStoreError):
        await live.resync()
    with pytest.raises(errors.TransientStoreError):
        await next_event(live)
    assert live.closed


@pytest.mark.asyncio
async def test_etc_021_resync_emits_missed_changes(lifecycle, people, store):
    async with lifecycle.feed() as live:
        # Another worker shares the database but not this process's change feed.
        other_worker = RequestLifecycle(DocumentStore(store._session_factory))
        missed = await post(other_worker, people["alice"])
        assert len(live) == 0

        await live.resync()
        event = await next_event(live)
    assert event.type == ChangeType.ADDED
    assert event.id == missed["id"]


###############################################################
# 6. Merged chat views
###############################################################

@pytest.mark.asyncio
async def test_etc_022_chat_list_merges_owned_and_helped_requests(lifecycle, people):
    bob_id = people["bob"]["id"]
    helped = await post(lifecycle, people["alice"], "Helped by Bob")
    owned = await post(lifecycle, people["bob"], "Posted by Bob")

    streams = lifecycle.chats_of(bob_id)
    for live in streams.values():
        await live.open()
    views = StreamMerger().merge(streams)
    try:
        assert await asyncio.wait_for(views.__anext__(), 2) == []

        await lifecycle.accept(helped["id"], bob_id)
        view = await asyncio.wait_for(views.__anext__(), 2)
        assert [r["id"] for r in view] == [helped["id"]]

        await lifecycle.accept(owned["id"], people["carol"]["id"])
        view = await asyncio.wait_for(views.__anext__(), 2)
        assert [r["id"] for r in view] == [owned["id"], helped["id"]]
    finally:
        await views.aclose()
        for live in streams.values():
            live.unsubscribe()


@pytest.mark.asyncio
async def test_etc_023_stats_count_posted_and_helped(lifecycle, people):
    request = await post(lifecycle, people["alice"])
    await post(lifecycle, people["alice"], "Another")
    await lifecycle.accept(request["id"], people["bob"]["id"])

    assert await lifecycle.stats(people["alice"]["id"]) == {"requests": 2, "fulfilled": 0}
    assert await lifecycle.stats(people["bob"]["id"]) == {"requests": 0, "fulfilled": 1}


###############################################################
# 7. Notification listener
###############################################################

@pytest.mark.asyncio
async def test_etc_024_listener_alerts_fresh_notifications_only(lifecycle, people, store):
    bob_id = people["bob"]["id"]
    await store.put("notifications", new_id(), {
        "recipient_id": bob_id, "title": "Old", "body": "backlog", "read": False,
        "created_at": get_utc_now() - timedelta(minutes=5),
    })
    sink = RecordingSink()
    listener = NotificationListener(store, bob_id, sink)

    async with listener.subscription() as live:
        task = asyncio.create_task(listener.run(live))
        await asyncio.sleep(0)
        assert sink.alerts == []

        await lifecycle.create(people["alice"], "Need tape", "Household", location=HERE)
        await asyncio.wait_for(sink.arrived.wait(), 2)

    await asyncio.wait_for(task, 2)
    assert len(sink.alerts) == 1
    title, body, data = sink.alerts[0]
    assert (title, body) == ("New Request Nearby!", "Alice needs: Need tape")
    assert data["link"].startswith("/requests/")


###############################################################
# 8. Write ordering and failure isolation
###############################################################

@pytest.mark.asyncio
async def test_etc_025_overlapping_accept_and_delete_publish_in_commit_order(lifecycle, people, store, mocker):
    request = await post(lifecycle, people["alice"])
    live = await store.query("requests").open()

    real_session = store.session
    calls = []

    @asynccontextmanager
    async def slow_session():
        first = not calls
        calls.append(1)
        async with real_session() as db:
            yield db
        if first:
            # The accept has committed but not yet published.
            await asyncio.sleep(0.2)

    mocker.patch.object(store, "session", slow_session)

    async def delete_later():
        await asyncio.sleep(0.05)
        return await store.delete("requests", request["id"])

    try:
        accepted, deleted = await asyncio.gather(
            store.conditional_update("requests", request["id"], [where("status", "==", "open")],
                                     {"status": "accepted", "accepted_by": people["bob"]["id"]}),
            delete_later(),
        )
        assert accepted is True
        assert deleted is True

        assert (await next_event(live)).type == ChangeType.MODIFIED
        assert (await next_event(live)).type == ChangeType.REMOVED
        assert live.snapshot() == []
        assert await store.get("requests", request["id"]) is None
    finally:
        live.unsubscribe()


@pytest.mark.asyncio
async def test_etc_026_unexpected_resync_error_closes_the_query(lifecycle, people, store, mocker):
    live = await store.query("requests", retry_attempts=1, retry_base_delay=0).open()
    real_find = store.find
    calls = []

    async def broken_once(*args, **kwargs):
        if not calls:
            calls.append(1)
            raise ProgrammingError("SELECT", {}, Exception("no such column"))
        return await real_find(*args, **kwargs)

    mocker.patch.object(store, "find", AsyncMock(side_effect=broken_once))

    with pytest.raises(ProgrammingError):
        await live.resync()
    assert live.closed
    assert store.feed.listener_count("requests") == 0

    await post(lifecycle, people["alice"])
    with pytest.raises(ProgrammingError):
        await next_event(live)


@pytest.mark.asyncio
async def test_etc_027_recipient_lookup_failure_keeps_the_request(lifecycle, people, store, mocker):
    mocker.patch.object(Directory, "users_by_campus", AsyncMock(
        side_effect=ProgrammingError("SELECT", {}, Exception("no such table"))))

    request, report = await lifecycle.create(people["alice"], "Need tape", "Household", location=HERE)

    assert report is None
    assert (await lifecycle.get(request["id"]))["status"] == "open"
    assert await store.count("requests") == 1
    assert await store.count("notifications") == 0


def pump_tasks():
    return [t for t in asyncio.all_tasks() if t.get_coro().__qualname__.endswith("pump")]


@pytest.mark.asyncio
async def test_etc_028_closing_a_merge_finishes_its_stream_readers(lifecycle, people, store):
    streams = lifecycle.chats_of(people["bob"]["id"])
    for live in streams.values():
        await live.open()
    views = StreamMerger().merge(streams)
    try:
        assert await asyncio.wait_for(views.__anext__(), 2) == []
        request = await post(lifecycle, people["alice"])
        await lifecycle.accept(request["id"], people["bob"]["id"])
        await asyncio.wait_for(views.__anext__(), 2)
        assert len(pump_tasks()) == len(streams)
    finally:
        await views.aclose()
        for live in streams.values():
            live.unsubscribe()

    assert pump_tasks() == []


@pytest.mark.asyncio
async def test_etc_029_merge_reraises_any_terminal_stream_error(lifecycle, people, store, mocker):
    streams = lifecycle.chats_of(people["bob"]["id"])
    for live in streams.values():
        await live.open()
    views = StreamMerger().merge(streams)
    mocker.patch.object(store, "find", AsyncMock(side_effect=ProgrammingError("SELECT", {}, Exception("boom"))))
    try:
        assert await asyncio.wait_for(views.__anext__(), 2) == []
        first = next(iter(streams.values()))
        with pytest.raises(ProgrammingError):
            await first.resync()
        with pytest.raises(ProgrammingError):
            await asyncio.wait_for(views.__anext__(), 2)
    finally:
        await views.aclose()
        for live in streams.values():
            live.unsubscribe()
