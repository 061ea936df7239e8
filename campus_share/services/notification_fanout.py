import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from campus_share import config
from campus_share.database.models import new_id
from campus_share.services.directory import Directory
from campus_share.services.document_store import DocumentStore
from campus_share.services.errors import PartialFanoutFailure, TransientStoreError
from campus_share.services.live_query import ChangeEvent, ChangeType, LiveQuery, OrderBy, where
from campus_share.services.push import ExpoPushSink, LoggingSink, PresentationSink
from campus_share.utils.geo import distance
from campus_share.utils.time_utils import age_seconds, get_utc_now

logger = logging.getLogger(__name__)

NEW_REQUEST_TITLE = "New Request Nearby!"


@dataclass
class FanoutReport:
    campus: Optional[str]
    intended: int
    notified: int
    failure: Optional[PartialFanoutFailure] = None
    recipient_ids: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.campus is None:
            return "Request posted!"
        if self.notified > 0:
            return f"Request posted! We've notified {self.notified} neighbors in {self.campus}."
        return f"Request posted! (No other neighbors found in {self.campus})"


def notification_body(poster: dict, request: dict) -> str:
    return f"{poster.get('display_name') or 'A neighbor'} needs: {request['title']}"


class NotificationFanout:
    """
    Turns a newly posted request into one notification per campus neighbor.

    Recipients are the users sharing the poster's campus, minus the poster.
    With a radius configured, neighbors whose last known location is farther
    than the radius from the request are skipped; neighbors without a known
    location are still notified.
    """

    def __init__(self, store: DocumentStore, directory: Directory, radius_meters: Optional[float] = None):
        self.store = store
        self.directory = directory
        self.radius_meters = radius_meters if radius_meters is not None else config.FANOUT_RADIUS_METERS

    def select_recipients(self, request: dict, poster: dict, candidates: List[dict]) -> List[dict]:
        recipients = [user for user in candidates if user["id"] != poster["id"]]
        if not self.radius_meters or request.get("latitude") is None or request.get("longitude") is None:
            return recipients
        nearby = []
        for user in recipients:
            if user.get("latitude") is None or user.get("longitude") is None:
                nearby.append(user)
                continue
            meters = distance(request["latitude"], request["longitude"], user["latitude"], user["longitude"])
            if meters <= self.radius_meters:
                nearby.append(user)
        return nearby

    def build_notifications(self, request: dict, poster: dict, recipients: List[dict]) -> List[Tuple[str, dict]]:
        now = get_utc_now()
        body = notification_body(poster, request)
        return [
            (new_id(), {
                "recipient_id": user["id"],
                "title": NEW_REQUEST_TITLE,
                "body": body,
                "read": False,
                "link": f"/requests/{request['id']}",
                "created_at": now,
            })
            for user in recipients
        ]

    async def fan_out(self, request: dict, poster: dict) -> FanoutReport:
        campus = await self.directory.campus_of(poster["id"])
        if not campus:
            logger.info("Poster %s has no campus, no notifications for request %s", poster["id"], request["id"])
            return FanoutReport(campus=None, intended=0, notified=0)

        candidates = await self.directory.users_by_campus(campus)
        recipients = self.select_recipients(request, poster, candidates)
        if not recipients:
            logger.info("No neighbors in %s to notify for request %s", campus, request["id"])
            return FanoutReport(campus=campus, intended=0, notified=0)

        records = self.build_notifications(request, poster, recipients)
        try:
            await self.store.put_many("notifications", records)
            logger.info("Notified %d neighbors in %s of request %s", len(records), campus, request["id"])
            return FanoutReport(campus=campus, intended=len(records), notified=len(records),
                                recipient_ids=[fields["recipient_id"] for _, fields in records])
        except (TransientStoreError, SQLAlchemyError) as e:
            logger.warning("Batch notification write failed for request %s, writing one by one: %s",
                           request["id"], e)

        delivered = []
        failed = []
        for doc_id, fields in records:
            try:
                await self.store.put("notifications", doc_id, fields)
                delivered.append(fields["recipient_id"])
            except (TransientStoreError, SQLAlchemyError) as e:
                failed.append(fields["recipient_id"])
                logger.warning("Could not notify %s of request %s: %s", fields["recipient_id"], request["id"], e)

        failure = None
        if failed:
            failure = PartialFanoutFailure(len(records), len(delivered), failed)
            logger.warning("Partial fan-out for request %s: %s", request["id"], failure)
        return FanoutReport(campus=campus, intended=len(records), notified=len(delivered), failure=failure,
                            recipient_ids=delivered)


def is_fresh(notification: dict, now: Optional[datetime] = None,
             window_seconds: Optional[float] = None) -> bool:
    """True when the notification was created within the freshness window."""
    window = window_seconds if window_seconds is not None else config.FRESHNESS_WINDOW_SECONDS
    return age_seconds(notification["created_at"], now) < window


class NotificationListener:
    """
    Watches one user's notifications and hands newly created ones to a sink.

    Records delivered on (re)connect are backlog: they are older than the
    freshness window and are absorbed without an alert.
    """

    def __init__(self, store: DocumentStore, recipient_id: str, sink: Optional[PresentationSink] = None,
                 window_seconds: Optional[float] = None, clock: Callable[[], datetime] = get_utc_now):
        self.store = store
        self.recipient_id = recipient_id
        self.sink = sink or LoggingSink(recipient_id)
        self.window_seconds = window_seconds
        self.clock = clock

    def subscription(self) -> LiveQuery:
        return self.store.query(
            "notifications",
            [where("recipient_id", "==", self.recipient_id)],
            [OrderBy("created_at", descending=True)],
        )

    async def handle(self, event: ChangeEvent) -> bool:
        if event.type != ChangeType.ADDED:
            return False
        notification = event.document
        if not is_fresh(notification, self.clock(), self.window_seconds):
            return False
        await self.sink.present(notification["title"], notification["body"], {"link": notification.get("link")})
        return True

    async def run(self, live: LiveQuery, on_event: Optional[Callable[[ChangeEvent], Awaitable[None]]] = None):
        """
        Treat the opened query's snapshot as added records, then follow its
        changes. `on_event` sees every change before the freshness check.
        """
        for index, notification in enumerate(live.snapshot()):
            await self.handle(ChangeEvent(ChangeType.ADDED, notification, -1, index))
        async for event in live:
            if on_event is not None:
                await on_event(event)
            await self.handle(event)


async def push_to_devices(directory: Directory, report: FanoutReport, request: dict, poster: dict) -> int:
    """Forward a fan-out to the Expo push service for recipients with a registered device."""
    pushed = 0
    for recipient_id in report.recipient_ids:
        recipient = await directory.get_user(recipient_id)
        if not recipient or not recipient.get("push_token"):
            continue
        await ExpoPushSink(recipient["push_token"]).present(
            NEW_REQUEST_TITLE, notification_body(poster, request), {"link": f"/requests/{request['id']}"}
        )
        pushed += 1
    return pushed
