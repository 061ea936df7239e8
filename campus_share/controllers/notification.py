from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from campus_share.models.notification import NotificationResponse
from campus_share.services.document_store import DocumentStore, get_store
from campus_share.services.firebase_auth import get_current_user
from campus_share.services.live_query import OrderBy, where

router = APIRouter()


async def _get_own_notification(store: DocumentStore, notification_id: str, user: dict) -> dict:
    notification = await store.get("notifications", notification_id)
    if not notification or notification["recipient_id"] != user["id"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification


@router.get("/", response_model=List[NotificationResponse])
async def get_user_notifications(
        current_user: dict = Depends(get_current_user),
        store: DocumentStore = Depends(get_store),
):
    """
    Retrieves all notifications for the currently authenticated user,
    ordered by most recent first.
    """
    return await store.find(
        "notifications",
        [where("recipient_id", "==", current_user["id"])],
        [OrderBy("created_at", descending=True)],
    )


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_as_read(
        notification_id: str,
        current_user: dict = Depends(get_current_user),
        store: DocumentStore = Depends(get_store),
):
    """
    Marks a specific notification as read.
    """
    await _get_own_notification(store, notification_id, current_user)
    return await store.put("notifications", notification_id, {"read": True})


@router.delete("/", status_code=status.HTTP_204_NO_CONTENT)
async def delete_all_notifications(
        current_user: dict = Depends(get_current_user),
        store: DocumentStore = Depends(get_store),
):
    """
    Deletes all notifications for the currently authenticated user.
    """
    await store.delete_where("notifications", [where("recipient_id", "==", current_user["id"])])
    return


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
        notification_id: str,
        current_user: dict = Depends(get_current_user),
        store: DocumentStore = Depends(get_store),
):
    """
    Deletes a specific notification.
    """
    await _get_own_notification(store, notification_id, current_user)
    await store.delete("notifications", notification_id)
    return
