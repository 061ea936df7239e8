import logging
from typing import List

from campus_share.database.models import new_id
from campus_share.services import errors
from campus_share.services.document_store import DocumentStore
from campus_share.services.live_query import LiveQuery, OrderBy, where
from campus_share.utils.time_utils import get_utc_now

logger = logging.getLogger(__name__)

OLDEST_FIRST = [OrderBy("created_at")]


class ChatEngine:
    """
    Append-only message threads keyed by request id. A thread has no record of
    its own; it is whatever messages reference the request.

    Who may read or write a thread is decided by the caller.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _require_request(self, request_id: str):
        if await self.store.get("requests", request_id) is None:
            raise errors.NotFound("Request not found.")

    async def send(self, request_id: str, sender_id: str, sender_name: str, text: str) -> dict:
        if not text or not text.strip():
            raise errors.ValidationError("Message cannot be empty.")
        await self._require_request(request_id)
        message = await self.store.put("messages", new_id(), {
            "request_id": request_id,
            "sender_id": sender_id,
            "sender_name": sender_name or "User",
            "text": text,
            "created_at": get_utc_now(),
        })
        logger.debug("Message %s sent on thread %s", message["id"], request_id)
        return message

    async def history(self, request_id: str) -> List[dict]:
        await self._require_request(request_id)
        return await self.store.find("messages", [where("request_id", "==", request_id)], OLDEST_FIRST)

    async def subscribe(self, request_id: str) -> LiveQuery:
        await self._require_request(request_id)
        return self.store.query("messages", [where("request_id", "==", request_id)], OLDEST_FIRST)
