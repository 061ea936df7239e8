from typing import List, Optional

from campus_share.services.document_store import DocumentStore
from campus_share.services.live_query import OrderBy, where


class Directory:
    """Lookups of user profiles and campus membership."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_user(self, user_id: str) -> Optional[dict]:
        return await self.store.get("users", user_id)

    async def campus_of(self, user_id: str) -> Optional[str]:
        user = await self.get_user(user_id)
        return user.get("campus") if user else None

    async def users_by_campus(self, campus: str) -> List[dict]:
        return await self.store.find("users", [where("campus", "==", campus)], [OrderBy("created_at")])

    async def campuses(self) -> List[str]:
        records = await self.store.find("campuses", ordering=[OrderBy("name")])
        return [record["name"] for record in records]
