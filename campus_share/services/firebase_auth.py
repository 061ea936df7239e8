import logging
import firebase_admin
from firebase_admin import credentials, auth
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from typing import Optional

from campus_share.config import FIREBASE_CREDENTIALS, TESTING
from campus_share.services.document_store import DocumentStore, get_store
from campus_share.services.live_query import where

logger = logging.getLogger(__name__)

# Singleton pattern: Check if the app is already initialized
if not firebase_admin._apps and not TESTING:
    try:
        cred = credentials.Certificate(FIREBASE_CREDENTIALS)
        firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin SDK initialized successfully.")
    except Exception as e:
        logger.error("FATAL: Error initializing Firebase Admin SDK: %s", e)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/sync", auto_error=False)


class InvalidToken(Exception):
    pass


def verify_token(token: Optional[str]) -> str:
    """Return the Firebase uid behind an ID token, or raise InvalidToken."""
    if not token:
        raise InvalidToken("Not authenticated")
    try:
        decoded_token = auth.verify_id_token(token)
    except auth.ExpiredIdTokenError:
        raise InvalidToken("Token has expired")
    except Exception:
        raise InvalidToken("Could not validate credentials")
    return decoded_token['uid']


async def find_user_by_uid(store: DocumentStore, firebase_uid: str) -> Optional[dict]:
    users = await store.find("users", [where("firebase_uid", "==", firebase_uid)], limit=1)
    return users[0] if users else None


async def get_current_user(
        token: str = Depends(oauth2_scheme),
        store: DocumentStore = Depends(get_store)
) -> dict:
    """
    Required dependency: Verifies Firebase ID token and returns the user record.
    Raises HTTPException if the token is missing or invalid.
    """
    try:
        firebase_uid = verify_token(token)
    except InvalidToken as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await find_user_by_uid(store, firebase_uid)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User profile not found. Please sync your account."
        )
    return user
