from typing import Callable, Sequence, Set

from realtime_chat.models.message import ReadStatusDocument
from realtime_chat.repositories.message_repository import utcnow


class ReadStatusRepository:

    table = "message_read_status"
    conflict_key = ("message_id", "user_id")

    def __init__(self, backend, clock: Callable = utcnow) -> None:
        self._backend = backend
        self._clock = clock

    async def mark_read(self, message_ids: Sequence[str], user_id: str) -> None:
        now = self._clock()
        rows = []
        for message_id in dict.fromkeys(message_ids):
            doc: ReadStatusDocument = {"message_id": message_id, "user_id": user_id, "created_at": now}
            rows.append(doc)
        if rows:
            await self._backend.upsert(self.table, rows, self.conflict_key)

    async def read_ids(self, user_id: str, message_ids: Sequence[str]) -> Set[str]:
        if not message_ids:
            return set()
        rows = await self._backend.select(
            self.table,
            {"user_id": user_id, "message_id": {"$in": list(message_ids)}},
            projection=["message_id"],
        )
        return {row["message_id"] for row in rows}
