import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from campus_share.database.models import new_id
from campus_share.services import errors
from campus_share.services.document_store import DocumentStore
from campus_share.services.live_query import LiveQuery, OrderBy, where
from campus_share.services.notification_fanout import FanoutReport, NotificationFanout
from campus_share.utils.time_utils import get_utc_now

logger = logging.getLogger(__name__)

CATEGORIES = ("Academic", "Tech", "Household", "Transport", "Other")

NEWEST_FIRST = [OrderBy("created_at", descending=True)]


class RequestStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    # Reserved: no operation moves a request here yet.
    FULFILLED = "fulfilled"


@dataclass
class Location:
    latitude: float
    longitude: float
    address: Optional[str] = None


Geocoder = Callable[[float, float], Awaitable[Optional[str]]]


class RequestLifecycle:
    """
    Owns the request state machine: open -> accepted -> fulfilled, plus
    deletion by the owner. The accepted_by/status pair only ever changes
    through a conditional update guarded on status == open.
    """

    def __init__(self, store: DocumentStore, fanout: Optional[NotificationFanout] = None,
                 geocoder: Optional[Geocoder] = None):
        self.store = store
        self.fanout = fanout
        self.geocoder = geocoder

    async def get(self, request_id: str) -> dict:
        request = await self.store.get("requests", request_id)
        if request is None:
            raise errors.NotFound("Request not found.")
        return request

    async def create(self, owner: dict, title: str, category: str = "Other", description: str = "",
                     duration: str = "", location: Optional[Location] = None) -> Tuple[dict, Optional[FanoutReport]]:
        """
        Post a new open request and fan out notifications to the owner's campus.
        Returns the stored request and the fan-out report (None without a
        fan-out engine). Notification problems never fail the post.
        """
        if not title or not title.strip():
            raise errors.ValidationError("Title cannot be empty.")
        if category not in CATEGORIES:
            raise errors.ValidationError(f"Unknown category: {category}")
        if location is None:
            raise errors.ValidationError("Your location is unavailable.")

        address = location.address
        if address is None and self.geocoder is not None:
            address = await self.geocoder(location.latitude, location.longitude)

        request_id = new_id()
        request = await self.store.put("requests", request_id, {
            "title": title.strip(),
            "description": description or "",
            "category": category,
            "duration": duration or "",
            "owner_id": owner["id"],
            "owner_email": owner.get("email"),
            "created_at": get_utc_now(),
            "status": RequestStatus.OPEN.value,
            "accepted_by": None,
            "latitude": location.latitude,
            "longitude": location.longitude,
            "address": address,
        })
        logger.info("Request %s posted by %s", request_id, owner["id"])

        report = None
        if self.fanout is not None:
            try:
                report = await self.fanout.fan_out(request, owner)
            except (errors.TransientStoreError, SQLAlchemyError) as e:
                logger.warning("Fan-out for request %s could not resolve recipients: %s", request_id, e)
        return request, report

    async def accept(self, request_id: str, acceptor_id: str) -> dict:
        request = await self.get(request_id)
        if request["owner_id"] == acceptor_id:
            raise errors.ValidationError("You cannot accept your own request.")

        won = await self.store.conditional_update(
            "requests",
            request_id,
            [where("status", "==", RequestStatus.OPEN.value), where("owner_id", "!=", acceptor_id)],
            {"status": RequestStatus.ACCEPTED.value, "accepted_by": acceptor_id},
        )
        if not won:
            # Lost the race (or the request vanished); report what is there now.
            await self.get(request_id)
            raise errors.PreconditionFailed("This request has already been accepted.")

        logger.info("Request %s accepted by %s", request_id, acceptor_id)
        return await self.get(request_id)

    async def delete(self, request_id: str, actor_id: str):
        """
        Remove a request. Messages of its thread stay in the messages table as
        unreachable history; the chat engine refuses threads of missing requests.
        """
        request = await self.get(request_id)
        if request["owner_id"] != actor_id:
            raise errors.PermissionDenied("Only the poster can delete this request.")
        if not await self.store.delete("requests", request_id):
            raise errors.NotFound("Request not found.")
        logger.info("Request %s deleted by %s", request_id, actor_id)

    # --- live views ---

    def feed(self) -> LiveQuery:
        return self.store.query("requests", [], NEWEST_FIRST)

    def owned_by(self, user_id: str) -> LiveQuery:
        return self.store.query("requests", [where("owner_id", "==", user_id)], NEWEST_FIRST)

    def chats_of(self, user_id: str) -> Dict[str, LiveQuery]:
        """The two streams behind a user's chat list: requests they own and requests they help with."""
        accepted = where("status", "==", RequestStatus.ACCEPTED.value)
        return {
            "owner": self.store.query("requests", [where("owner_id", "==", user_id), accepted], NEWEST_FIRST),
            "helper": self.store.query("requests", [where("accepted_by", "==", user_id), accepted], NEWEST_FIRST),
        }

    async def stats(self, user_id: str) -> dict:
        return {
            "requests": await self.store.count("requests", [where("owner_id", "==", user_id)]),
            "fulfilled": await self.store.count("requests", [where("accepted_by", "==", user_id)]),
        }
