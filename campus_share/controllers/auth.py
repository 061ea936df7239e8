import logging
from fastapi import APIRouter, Depends, status, HTTPException
from firebase_admin import auth
from sqlalchemy.exc import IntegrityError
from typing import List

from campus_share.database.models import new_id
from campus_share.models.user import (
    UserResponse, UserUpdate, UserSyncRequest, LocationUpdate, PushTokenRequest, UserStats,
)
from campus_share.services.directory import Directory
from campus_share.services.document_store import DocumentStore, get_store
from campus_share.services.firebase_auth import (
    get_current_user, oauth2_scheme, verify_token, find_user_by_uid, InvalidToken,
)
from campus_share.services.live_query import where
from campus_share.services.request_lifecycle import RequestLifecycle
from campus_share.utils.time_utils import get_utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


async def ensure_campus(store: DocumentStore, name: str):
    if await store.find("campuses", [where("name", "==", name)], limit=1):
        return
    try:
        await store.put("campuses", new_id(), {"name": name, "created_at": get_utc_now()})
        logger.info("Campus %s created", name)
    except IntegrityError:
        # Created concurrently by another registration.
        pass


@router.get("/campuses", response_model=List[str])
async def list_campuses(store: DocumentStore = Depends(get_store)):
    return await Directory(store).campuses()


@router.post("/push-token")
async def update_push_token(
    request: PushTokenRequest,
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_store)
):
    # A device token belongs to one account at a time.
    previous_owners = await store.find("users", [where("push_token", "==", request.push_token)])
    for owner in previous_owners:
        if owner["id"] != current_user["id"]:
            await store.put("users", owner["id"], {"push_token": None})
    await store.put("users", current_user["id"], {"push_token": request.push_token})
    return {"message": "Push token updated successfully"}


@router.post("/sync", response_model=UserResponse)
async def sync_user(
    sync_data: UserSyncRequest,
    token: str = Depends(oauth2_scheme),
    store: DocumentStore = Depends(get_store)
):
    try:
        uid = verify_token(token)
    except InvalidToken as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid Firebase token: {e}")

    db_user = await find_user_by_uid(store, uid)
    if db_user:
        # Campus is fixed at registration.
        return UserResponse.model_validate(db_user)

    try:
        firebase_user_record = auth.get_user(uid)
    except Exception as e:
        logger.error("Could not load Firebase user %s: %s", uid, e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Firebase user not found.")

    await ensure_campus(store, sync_data.campus)
    try:
        new_user = await store.put("users", new_id(), {
            "firebase_uid": firebase_user_record.uid,
            "email": firebase_user_record.email,
            "display_name": sync_data.displayName or firebase_user_record.display_name,
            "campus": sync_data.campus,
            "photo_url": sync_data.photoUrl,
            "created_at": get_utc_now(),
        })
    except IntegrityError as e:
        logger.error("Database error on user sync for %s: %s", uid, e)
        raise HTTPException(status_code=500, detail="Failed to create user profile in DB.")
    return UserResponse.model_validate(new_user)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(user_update: UserUpdate, current_user: dict = Depends(get_current_user),
                    store: DocumentStore = Depends(get_store)):
    fields = {}
    if user_update.displayName is not None: fields["display_name"] = user_update.displayName
    if user_update.photoUrl is not None: fields["photo_url"] = user_update.photoUrl
    if not fields:
        return UserResponse.model_validate(current_user)
    updated = await store.put("users", current_user["id"], fields)
    return UserResponse.model_validate(updated)


@router.put("/me/location", response_model=UserResponse)
async def update_location(location: LocationUpdate, current_user: dict = Depends(get_current_user),
                          store: DocumentStore = Depends(get_store)):
    updated = await store.put("users", current_user["id"],
                              {"latitude": location.latitude, "longitude": location.longitude})
    return UserResponse.model_validate(updated)


@router.get("/me/stats", response_model=UserStats)
async def get_my_stats(current_user: dict = Depends(get_current_user), store: DocumentStore = Depends(get_store)):
    """
    Counts of requests the user posted and requests they accepted.
    """
    return await RequestLifecycle(store).stats(current_user["id"])
