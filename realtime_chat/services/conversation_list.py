import asyncio
import logging
from typing import Dict, List, Optional

from realtime_chat.errors import FetchError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.schemas.chat import Conversation, ConversationSummary, Message, Profile
from realtime_chat.schemas.events import RowChangeEvent
from realtime_chat.services.read_receipts import ReadReceiptTracker


logger = logging.getLogger(__name__)


def _newest_first(summaries: List[ConversationSummary]) -> List[ConversationSummary]:
    return sorted(
        summaries,
        key=lambda s: (s.conversation.last_message_at, s.conversation.id),
        reverse=True,
    )


class ConversationListAggregator:
    """Inbox view: each conversation with its other participant, last message and unread count.

    All writes to the summary list happen under one lock and replace the list
    wholesale, so a recomputation never observes another one half done.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        profile_repo: ProfileRepository,
        tracker: ReadReceiptTracker,
        user_id: str,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._profile_repo = profile_repo
        self._tracker = tracker
        self.user_id = user_id
        self._summaries: List[ConversationSummary] = []
        self._lock = asyncio.Lock()

    @property
    def summaries(self) -> List[ConversationSummary]:
        return list(self._summaries)

    @property
    def total_unread(self) -> int:
        return sum(summary.unread_count for summary in self._summaries)

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        for summary in self._summaries:
            if summary.conversation.id == conversation_id:
                return summary
        return None

    async def recompute(self) -> List[ConversationSummary]:
        """Rebuild the whole list. Raises FetchError when the conversation list itself is unavailable."""
        async with self._lock:
            rows = await self._conversation_repo.list_for_user(self.user_id)
            conversations = [Conversation.model_validate(row) for row in rows]
            ids = [conversation.id for conversation in conversations]
            for stale in set(self._tracker.conversations) - set(ids):
                self._tracker.forget(stale)
            await self._tracker.refresh_all(ids)
            members = await self._participants(ids)
            others = {cid: [uid for uid in uids if uid != self.user_id] for cid, uids in members.items()}
            profiles = await self._profiles([uid for uids in others.values() for uid in uids])
            last_messages = await self._last_messages([c.last_message_id for c in conversations if c.last_message_id])
            summaries = []
            for conversation in conversations:
                resolved = [profiles.get(uid) or Profile.unknown(uid) for uid in others.get(conversation.id, [])]
                summaries.append(ConversationSummary(
                    conversation=conversation,
                    other_participant=resolved[0] if resolved else Profile.unknown(""),
                    participants=resolved,
                    last_message=last_messages.get(conversation.last_message_id or ""),
                    unread_count=self._tracker.count(conversation.id),
                ))
            self._summaries = _newest_first(summaries)
            return self.summaries

    async def apply(self, event: RowChangeEvent) -> bool:
        """Fold a row change into the list. Returns True when the list changed."""
        if event.table == "conversation_participants":
            if event.record.get("user_id") != self.user_id:
                return False
            await self.recompute()
            return True
        if event.table == "conversations" and event.operation == "update":
            return await self._apply_conversation_update(event.record)
        if event.table in ("messages", "message_read_status"):
            changed = await self._tracker.apply(event)
            if event.table == "messages" and event.operation == "insert":
                changed = await self._apply_new_message(event.record) or changed
            if changed:
                async with self._lock:
                    self._summaries = [
                        summary.model_copy(update={"unread_count": self._tracker.count(summary.conversation.id)})
                        for summary in self._summaries
                    ]
            return changed
        return False

    async def _apply_conversation_update(self, row) -> bool:
        async with self._lock:
            current = next((s for s in self._summaries if s.conversation.id == row.get("id")), None)
            if current is None:
                return False
            merged = Conversation.model_validate({**current.conversation.model_dump(), **row})
            last_message = current.last_message
            if merged.last_message_id and (last_message is None or last_message.id != merged.last_message_id):
                fetched = await self._last_messages([merged.last_message_id])
                last_message = fetched.get(merged.last_message_id, last_message)
            # the resolved participant is kept; update rows never carry it
            replacement = current.model_copy(update={"conversation": merged, "last_message": last_message})
            self._summaries = _newest_first([
                replacement if s.conversation.id == merged.id else s for s in self._summaries
            ])
            return True

    async def _apply_new_message(self, row) -> bool:
        message = Message.model_validate(row)
        async with self._lock:
            current = next((s for s in self._summaries if s.conversation.id == message.conversation_id), None)
            if current is None:
                return False
            if current.last_message is not None and current.last_message.sort_key >= message.sort_key:
                return False
            conversation = current.conversation.model_copy(update={
                "last_message_id": message.id,
                "last_message_at": max(current.conversation.last_message_at, message.created_at),
            })
            replacement = current.model_copy(update={"conversation": conversation, "last_message": message})
            self._summaries = _newest_first([
                replacement if s.conversation.id == message.conversation_id else s for s in self._summaries
            ])
            return True

    async def _participants(self, conversation_ids: List[str]) -> Dict[str, List[str]]:
        try:
            return await self._conversation_repo.participants_for(conversation_ids)
        except FetchError as exc:
            logger.warning("Participants unavailable, using placeholders: %s", exc)
            return {}

    async def _profiles(self, user_ids: List[str]) -> Dict[str, Profile]:
        try:
            rows = await self._profile_repo.get_profiles(sorted(set(user_ids)))
        except FetchError as exc:
            logger.warning("Profiles unavailable, using placeholders: %s", exc)
            return {}
        return {uid: Profile.model_validate(row) for uid, row in rows.items()}

    async def _last_messages(self, message_ids: List[str]) -> Dict[str, Message]:
        try:
            rows = await self._message_repo.get_many(message_ids)
        except FetchError as exc:
            logger.warning("Last messages unavailable: %s", exc)
            return {}
        return {mid: Message.model_validate(row) for mid, row in rows.items()}
