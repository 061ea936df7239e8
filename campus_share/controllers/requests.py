from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from typing import List, Optional

from campus_share.config import ENABLE_EXPO_PUSH, ENABLE_REVERSE_GEOCODE
from campus_share.models.message import MessageCreate, MessageResponse
from campus_share.models.request import RequestCreate, RequestPosted, RequestResponse
from campus_share.services.chat import ChatEngine
from campus_share.services.directory import Directory
from campus_share.services.document_store import DocumentStore, get_store
from campus_share.services.firebase_auth import get_current_user
from campus_share.services.geocode import reverse_geocode
from campus_share.services.live_query import where
from campus_share.services.notification_fanout import NotificationFanout, push_to_devices
from campus_share.services.request_lifecycle import Location, RequestLifecycle, RequestStatus, NEWEST_FIRST
from campus_share.services.stream_merge import StreamMerger
from campus_share.utils.geo import distance

router = APIRouter()


def get_lifecycle(store: DocumentStore = Depends(get_store)) -> RequestLifecycle:
    fanout = NotificationFanout(store, Directory(store))
    return RequestLifecycle(store, fanout, reverse_geocode if ENABLE_REVERSE_GEOCODE else None)


def get_chat(store: DocumentStore = Depends(get_store)) -> ChatEngine:
    return ChatEngine(store)


def with_distance(document: dict, lat: Optional[float], lon: Optional[float]) -> RequestResponse:
    meters = None
    if lat is not None and lon is not None and document.get("latitude") is not None:
        meters = distance(lat, lon, document["latitude"], document["longitude"])
    return RequestResponse.from_document(document, distance_meters=meters)


def ensure_participant(request: dict, user: dict):
    """Only the poster and the helper may see a request's chat."""
    if user["id"] not in (request["owner_id"], request.get("accepted_by")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You are not part of this conversation.")


@router.post("/", response_model=RequestPosted, status_code=status.HTTP_201_CREATED)
async def create_request(
        payload: RequestCreate,
        background_tasks: BackgroundTasks,
        current_user: dict = Depends(get_current_user),
        lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """
    Posts a new request and notifies the poster's campus.
    """
    location = None
    if payload.location is not None:
        location = Location(payload.location.latitude, payload.location.longitude, payload.location.address)
    elif current_user.get("latitude") is not None and current_user.get("longitude") is not None:
        location = Location(current_user["latitude"], current_user["longitude"])

    request, report = await lifecycle.create(
        current_user, payload.title, payload.category, payload.description, payload.duration, location
    )
    if report is not None and ENABLE_EXPO_PUSH and report.recipient_ids:
        background_tasks.add_task(push_to_devices, lifecycle.fanout.directory, report, request, current_user)

    return RequestPosted(
        request=RequestResponse.from_document(request),
        notified=report.notified if report else 0,
        message=report.message if report else "Request posted!",
    )


@router.get("/", response_model=List[RequestResponse])
async def list_requests(
        lat: Optional[float] = Query(None),
        lon: Optional[float] = Query(None),
        current_user: dict = Depends(get_current_user),
        store: DocumentStore = Depends(get_store),
):
    """
    All requests, newest first. With `lat`/`lon`, each carries its distance from that point.
    """
    requests = await store.find("requests", ordering=NEWEST_FIRST)
    return [with_distance(r, lat, lon) for r in requests]


@router.get("/mine", response_model=List[RequestResponse])
async def list_my_requests(current_user: dict = Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    requests = await store.find("requests", [where("owner_id", "==", current_user["id"])], NEWEST_FIRST)
    return [RequestResponse.from_document(r) for r in requests]


@router.get("/chats", response_model=List[RequestResponse])
async def list_my_chats(current_user: dict = Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    """
    Accepted requests the user either posted or is helping with.
    """
    accepted = where("status", "==", RequestStatus.ACCEPTED.value)
    merger = StreamMerger()
    merger.load("owner", await store.find("requests", [where("owner_id", "==", current_user["id"]), accepted]))
    merger.load("helper", await store.find("requests", [where("accepted_by", "==", current_user["id"]), accepted]))
    return [RequestResponse.from_document(r) for r in merger.view()]


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(request_id: str, current_user: dict = Depends(get_current_user),
                      lifecycle: RequestLifecycle = Depends(get_lifecycle)):
    return RequestResponse.from_document(await lifecycle.get(request_id))


@router.post("/{request_id}/accept", response_model=RequestResponse)
async def accept_request(request_id: str, current_user: dict = Depends(get_current_user),
                         lifecycle: RequestLifecycle = Depends(get_lifecycle)):
    request = await lifecycle.accept(request_id, current_user["id"])
    return RequestResponse.from_document(request)


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_request(request_id: str, current_user: dict = Depends(get_current_user),
                         lifecycle: RequestLifecycle = Depends(get_lifecycle)):
    await lifecycle.delete(request_id, current_user["id"])
    return


@router.get("/{request_id}/messages", response_model=List[MessageResponse])
async def get_messages(request_id: str, current_user: dict = Depends(get_current_user),
                       lifecycle: RequestLifecycle = Depends(get_lifecycle),
                       chat: ChatEngine = Depends(get_chat)):
    ensure_participant(await lifecycle.get(request_id), current_user)
    return await chat.history(request_id)


@router.post("/{request_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(request_id: str, payload: MessageCreate, current_user: dict = Depends(get_current_user),
                       lifecycle: RequestLifecycle = Depends(get_lifecycle),
                       chat: ChatEngine = Depends(get_chat)):
    ensure_participant(await lifecycle.get(request_id), current_user)
    return await chat.send(request_id, current_user["id"], current_user.get("display_name"), payload.text)
