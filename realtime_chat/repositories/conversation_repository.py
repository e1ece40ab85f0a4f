from typing import Any, Callable, Dict, List, Optional, Sequence

from pymongo import DESCENDING

from realtime_chat.models.conversation import ConversationDocument, ParticipantDocument
from realtime_chat.repositories.message_repository import utcnow


class ConversationRepository:

    table = "conversations"
    participants_table = "conversation_participants"

    def __init__(self, backend, clock: Callable = utcnow) -> None:
        self._backend = backend
        self._clock = clock

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._backend.select(self.table, {"id": conversation_id}, limit=1)
        return rows[0] if rows else None

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> Dict[str, Any]:
        mine = await self.conversation_ids_for(user_a)
        if mine:
            shared = await self._backend.select(
                self.participants_table,
                {"user_id": user_b, "conversation_id": {"$in": sorted(mine)}},
                projection=["conversation_id"],
            )
            for row in shared:
                members = await self.participant_ids(row["conversation_id"])
                if set(members) == {user_a, user_b}:
                    existing = await self.get_conversation(row["conversation_id"])
                    if existing:
                        return existing
        now = self._clock()
        doc: ConversationDocument = {
            "created_at": now,
            "updated_at": now,
            "last_message_id": None,
            "last_message_at": now,
        }
        created = await self._backend.insert(self.table, doc)
        for user_id in sorted({user_a, user_b}):
            member: ParticipantDocument = {"conversation_id": created["id"], "user_id": user_id, "joined_at": now}
            await self._backend.insert(self.participants_table, member)
        return created

    async def update_on_new_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        await self._backend.update(
            self.table,
            {"id": conversation_id},
            {
                "last_message_id": message["id"],
                "last_message_at": message["created_at"],
                "updated_at": self._clock(),
            },
        )

    async def conversation_ids_for(self, user_id: str) -> List[str]:
        rows = await self._backend.select(self.participants_table, {"user_id": user_id}, projection=["conversation_id"])
        return [row["conversation_id"] for row in rows]

    async def participant_ids(self, conversation_id: str) -> List[str]:
        rows = await self._backend.select(self.participants_table, {"conversation_id": conversation_id}, projection=["user_id"])
        return [row["user_id"] for row in rows]

    async def participants_for(self, conversation_ids: Sequence[str]) -> Dict[str, List[str]]:
        members: Dict[str, List[str]] = {cid: [] for cid in conversation_ids}
        if not members:
            return members
        rows = await self._backend.select(
            self.participants_table,
            {"conversation_id": {"$in": list(members)}},
            projection=["conversation_id", "user_id"],
        )
        for row in rows:
            members.setdefault(row["conversation_id"], []).append(row["user_id"])
        return members

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        ids = await self.conversation_ids_for(user_id)
        return await self.get_conversations(ids)

    async def get_conversations(self, conversation_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not conversation_ids:
            return []
        return await self._backend.select(
            self.table,
            {"id": {"$in": list(conversation_ids)}},
            sort=[("last_message_at", DESCENDING), ("id", DESCENDING)],
        )
