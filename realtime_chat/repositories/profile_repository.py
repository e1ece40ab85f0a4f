from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from realtime_chat.models.profile import ProfileDocument


class ProfileRepository:

    table = "profiles"
    columns = ("id", "username", "full_name", "avatar_url", "last_seen")

    def __init__(self, backend) -> None:
        self._backend = backend

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._backend.select(self.table, {"id": user_id}, projection=self.columns, limit=1)
        return rows[0] if rows else None

    async def get_profiles(self, user_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not user_ids:
            return {}
        rows = await self._backend.select(self.table, {"id": {"$in": list(user_ids)}}, projection=self.columns)
        return {row["id"]: row for row in rows}

    async def touch_last_seen(self, user_id: str, when: datetime) -> None:
        patch: ProfileDocument = {"last_seen": when}
        await self._backend.update(self.table, {"id": user_id}, patch)
