from typing import Any, Callable, Dict, List, Optional

from pymongo import DESCENDING

from realtime_chat.models.call import CallDocument
from realtime_chat.repositories.message_repository import utcnow


def media_channel_for(conversation_id: str) -> str:
    return f"conv_{conversation_id}"


class CallRepository:

    table = "calls"

    def __init__(self, backend, clock: Callable = utcnow) -> None:
        self._backend = backend
        self._clock = clock

    async def create_call(self, conversation_id: str, caller_id: str, callee_id: str, call_type: str) -> Dict[str, Any]:
        doc: CallDocument = {
            "conversation_id": conversation_id,
            "caller_id": caller_id,
            "callee_id": callee_id,
            "call_type": call_type,
            "status": "pending",
            "started_at": self._clock(),
            "ended_at": None,
            "duration_seconds": 0,
            "media_channel": media_channel_for(conversation_id),
        }
        return await self._backend.insert(self.table, doc)

    async def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._backend.select(self.table, {"id": call_id}, limit=1)
        return rows[0] if rows else None

    async def update_call(self, call_id: str, patch: Dict[str, Any]) -> None:
        await self._backend.update(self.table, {"id": call_id}, patch)

    async def history(self, user_id: str, conversation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"$or": [{"caller_id": user_id}, {"callee_id": user_id}]}
        if conversation_id:
            query["conversation_id"] = conversation_id
        return await self._backend.select(self.table, query, sort=[("started_at", DESCENDING)])
