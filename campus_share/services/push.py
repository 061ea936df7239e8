import logging
from typing import Optional

import httpx

from campus_share.config import EXPO_PUSH_URL

logger = logging.getLogger(__name__)


class PresentationSink:
    """Receives alerts that should be shown to a user right now."""

    async def present(self, title: str, body: str, data: Optional[dict] = None):
        raise NotImplementedError


class LoggingSink(PresentationSink):
    def __init__(self, recipient_id: str):
        self.recipient_id = recipient_id

    async def present(self, title: str, body: str, data: Optional[dict] = None):
        logger.info("Alert for %s: %s - %s", self.recipient_id, title, body)


async def send_expo_push_notification(token: str, title: str, body: str, data: dict) -> bool:
    """
    Sends a push notification using Expo's Push API. Returns False when Expo
    rejects the message or cannot be reached.
    """
    headers = {
        'Accept': 'application/json',
        'Accept-Encoding': 'gzip, deflate',
        'Content-Type': 'application/json',
    }
    payload = {
        'to': token,
        'sound': 'default',
        'title': title,
        'body': body,
        'data': data,
        'channelId': 'default',
    }

    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(EXPO_PUSH_URL, json=payload, headers=headers)
            response.raise_for_status()
            logger.info("Push sent via Expo: %s", response.json())
            return True
        except httpx.HTTPStatusError as e:
            logger.warning("Expo rejected push with %s: %s", e.response.status_code, e.response.text)
        except httpx.RequestError as e:
            logger.warning("Could not reach Expo push service: %s", e)
    return False


class ExpoPushSink(PresentationSink):
    def __init__(self, push_token: str):
        self.push_token = push_token

    async def present(self, title: str, body: str, data: Optional[dict] = None):
        await send_expo_push_notification(self.push_token, title, body, data or {})
