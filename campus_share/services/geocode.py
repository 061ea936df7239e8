import logging
from typing import Optional

import httpx

from campus_share.config import GEOCODE_URL

logger = logging.getLogger(__name__)


def shorten_address(display_name: str) -> str:
    """Keep the first two components of a full geocoder address."""
    return ", ".join(display_name.split(", ")[:2])


async def reverse_geocode(latitude: float, longitude: float) -> Optional[str]:
    """
    Resolve coordinates to a short human address. Returns None when the
    geocoder is unreachable or has no answer; callers treat the address as optional.
    """
    params = {"format": "json", "lat": latitude, "lon": longitude}
    headers = {"User-Agent": "campus-share/1.0"}
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(GEOCODE_URL, params=params, headers=headers, timeout=10)
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        logger.warning("Reverse geocoding failed for %s,%s: %s", latitude, longitude, e)
        return None
    display_name = data.get("display_name")
    return shorten_address(display_name) if display_name else None
