from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from pymongo import DESCENDING

from realtime_chat.models.message import MessageDocument


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_cursor(row: Dict[str, Any]) -> str:
    ts_ms = int(row["created_at"].timestamp() * 1000)
    return f"{ts_ms}:{row['id']}"


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    # cursor format: ts_ms:id
    try:
        ts_str, message_id = cursor.split(":", 1)
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
    except ValueError as exc:
        raise ValueError(f"Malformed cursor {cursor!r}") from exc
    return ts, message_id


class MessageRepository:

    table = "messages"

    def __init__(self, backend, clock: Callable[[], datetime] = utcnow) -> None:
        self._backend = backend
        self._clock = clock

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self._clock()
        # BSON dates keep milliseconds; cursors are built from the stored value
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
            "media_url": media_url,
            "reply_to_id": reply_to_id,
            "created_at": now,
            "updated_at": now,
            "is_read": False,
            "client_message_id": client_message_id,
        }
        return await self._backend.insert(self.table, doc)

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if cursor:
            ts, message_id = decode_cursor(cursor)
            query["$or"] = [
                {"created_at": {"$lt": ts}},
                {"created_at": ts, "id": {"$lt": message_id}},
            ]
        items = await self._backend.select(
            self.table,
            query,
            sort=[("created_at", DESCENDING), ("id", DESCENDING)],
            limit=limit,
        )
        next_cursor = encode_cursor(items[-1]) if len(items) == limit else None
        # newest page first from the backend, ascending for display
        return list(reversed(items)), next_cursor

    async def get_many(self, message_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not message_ids:
            return {}
        rows = await self._backend.select(self.table, {"id": {"$in": list(message_ids)}})
        return {row["id"]: row for row in rows}

    async def ids_from_others(self, conversation_id: str, user_id: str) -> Set[str]:
        rows = await self._backend.select(
            self.table,
            {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}},
            projection=["id"],
        )
        return {row["id"] for row in rows}

    async def mark_flag_read(self, message_ids: Sequence[str]) -> None:
        if not message_ids:
            return
        await self._backend.update(
            self.table,
            {"id": {"$in": list(message_ids)}, "is_read": False},
            {"is_read": True, "updated_at": self._clock()},
        )
