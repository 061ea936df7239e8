import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from campus_share.models.message import MessageResponse
from campus_share.models.notification import NotificationResponse
from campus_share.models.request import RequestResponse
from campus_share.services.chat import ChatEngine
from campus_share.services.document_store import DocumentStore, get_store
from campus_share.services.errors import TransientStoreError
from campus_share.services.firebase_auth import InvalidToken, find_user_by_uid, verify_token
from campus_share.services.live_query import ChangeEvent, LiveQuery
from campus_share.services.notification_fanout import NotificationListener
from campus_share.services.push import PresentationSink
from campus_share.services.request_lifecycle import RequestLifecycle
from campus_share.services.stream_merge import StreamMerger

logger = logging.getLogger(__name__)

router = APIRouter()

SERIALIZERS = {
    "requests": lambda doc: RequestResponse.from_document(doc).model_dump(mode="json"),
    "messages": lambda doc: MessageResponse.model_validate(doc).model_dump(mode="json"),
    "notifications": lambda doc: NotificationResponse.model_validate(doc).model_dump(mode="json"),
}


def change_frame(collection: str, event: ChangeEvent) -> dict:
    return {
        "type": event.type.value,
        "item": SERIALIZERS[collection](event.document),
        "old_index": event.old_index,
        "new_index": event.new_index,
    }


def snapshot_frame(live: LiveQuery) -> dict:
    serialize = SERIALIZERS[live.collection]
    return {"type": "snapshot", "items": [serialize(doc) for doc in live.snapshot()]}


class WebSocketSink(PresentationSink):
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def present(self, title: str, body: str, data: Optional[dict] = None):
        await self.websocket.send_json({"type": "alert", "title": title, "body": body, "data": data or {}})


async def authenticate(websocket: WebSocket, store: DocumentStore) -> Optional[dict]:
    """Accept the socket if its `token` query parameter belongs to a known user."""
    try:
        uid = verify_token(websocket.query_params.get("token"))
    except InvalidToken as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return None
    user = await find_user_by_uid(store, uid)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="User profile not found")
        return None
    await websocket.accept()
    return user


async def serve(websocket: WebSocket, producer: Callable[[], Awaitable[None]]):
    """
    Run `producer` until it finishes or the client goes away, whichever comes
    first. A terminal store error is reported to the client before closing.
    """

    async def drain():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    producer_task = asyncio.create_task(producer())
    drain_task = asyncio.create_task(drain())
    done, pending = await asyncio.wait({producer_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if producer_task in done:
        error = producer_task.exception()
        if isinstance(error, TransientStoreError):
            logger.warning("Live stream ended with a store error: %s", error)
            await websocket.send_json({"type": "error", "detail": "Live updates are unavailable. Please reconnect."})
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        elif error is not None:
            raise error
        else:
            await websocket.close()


async def stream_query(websocket: WebSocket, live: LiveQuery):
    async with live:
        await websocket.send_json(snapshot_frame(live))
        async for event in live:
            await websocket.send_json(change_frame(live.collection, event))


@router.websocket("/requests")
async def feed_socket(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    if await authenticate(websocket, store) is None:
        return
    await serve(websocket, lambda: stream_query(websocket, RequestLifecycle(store).feed()))


@router.websocket("/requests/mine")
async def my_requests_socket(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    user = await authenticate(websocket, store)
    if user is None:
        return
    await serve(websocket, lambda: stream_query(websocket, RequestLifecycle(store).owned_by(user["id"])))


@router.websocket("/chats")
async def chats_socket(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    user = await authenticate(websocket, store)
    if user is None:
        return

    async def produce():
        serialize = SERIALIZERS["requests"]
        async with AsyncExitStack() as stack:
            streams = {
                tag: await stack.enter_async_context(live)
                for tag, live in RequestLifecycle(store).chats_of(user["id"]).items()
            }
            async for view in StreamMerger().merge(streams):
                await websocket.send_json({"type": "view", "items": [serialize(doc) for doc in view]})

    await serve(websocket, produce)


@router.websocket("/requests/{request_id}/messages")
async def messages_socket(websocket: WebSocket, request_id: str, store: DocumentStore = Depends(get_store)):
    user = await authenticate(websocket, store)
    if user is None:
        return
    request = await store.get("requests", request_id)
    if request is None or user["id"] not in (request["owner_id"], request.get("accepted_by")):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Conversation not available")
        return
    live = await ChatEngine(store).subscribe(request_id)
    await serve(websocket, lambda: stream_query(websocket, live))


@router.websocket("/notifications")
async def notifications_socket(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    user = await authenticate(websocket, store)
    if user is None:
        return
    listener = NotificationListener(store, user["id"], WebSocketSink(websocket))

    async def produce():
        async with listener.subscription() as live:
            await websocket.send_json(snapshot_frame(live))

            async def forward(event: ChangeEvent):
                await websocket.send_json(change_frame("notifications", event))

            await listener.run(live, on_event=forward)

    await serve(websocket, produce)
