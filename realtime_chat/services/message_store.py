import bisect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, get_args

from realtime_chat.errors import SendError
from realtime_chat.models.message import MessageKind
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.schemas.chat import Message


logger = logging.getLogger(__name__)

MESSAGE_KINDS = get_args(MessageKind)


class MessageStore:
    """Ordered message list for one open conversation.

    Messages are kept sorted by ``(created_at, id)``. Inserts are idempotent
    by id so a subscription that redelivers after reconnecting cannot create
    duplicates. Own messages normally appear only when their insert event
    arrives; ``send(..., optimistic=True)`` shows a provisional entry that the
    authoritative row replaces.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_id: str,
        conversation_id: str,
        page_size: int = 50,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.page_size = page_size
        self._messages: List[Message] = []
        self._keys: List[tuple] = []
        self._ids: Dict[str, Message] = {}
        self._provisional: Dict[str, Message] = {}
        self._cursor: Optional[str] = None
        self.active = True

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def has_more(self) -> bool:
        return self._cursor is not None

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def get(self, message_id: str) -> Optional[Message]:
        return self._ids.get(message_id)

    def close(self) -> None:
        self.active = False

    async def load(self) -> List[Message]:
        rows, cursor = await self._message_repo.get_messages_by_conversation(self.conversation_id, limit=self.page_size)
        if not self.active:
            logger.debug("Discarding history for closed conversation %s", self.conversation_id)
            return []
        self._cursor = cursor
        for row in rows:
            self.apply_insert(Message.model_validate(row))
        return self.messages

    async def load_older(self) -> List[Message]:
        if self._cursor is None:
            return []
        rows, cursor = await self._message_repo.get_messages_by_conversation(
            self.conversation_id, limit=self.page_size, cursor=self._cursor
        )
        if not self.active:
            return []
        self._cursor = cursor
        older = [Message.model_validate(row) for row in rows]
        for message in older:
            self.apply_insert(message)
        return older

    def apply_insert(self, message: Message) -> bool:
        """Place ``message`` by (created_at, id). Returns False when it was already present."""
        if message.conversation_id != self.conversation_id:
            return False
        if message.id in self._ids:
            logger.debug("Ignoring duplicate insert of message %s", message.id)
            return False
        if not message.pending and message.client_message_id in self._provisional:
            self._remove(self._provisional.pop(message.client_message_id).id)
        key = message.sort_key
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._ids[message.id] = message
        return True

    def apply_update(self, row: Dict[str, Any]) -> bool:
        current = self._ids.get(row.get("id", ""))
        if current is None:
            return False
        # messages are immutable apart from the legacy read flag
        is_read = bool(row.get("is_read", current.is_read))
        if is_read == current.is_read:
            return False
        index = self._index_of(current)
        updated = current.model_copy(update={"is_read": is_read})
        self._messages[index] = updated
        self._ids[current.id] = updated
        return True

    def apply_delete(self, message_id: str) -> bool:
        if message_id not in self._ids:
            return False
        self._remove(message_id)
        return True

    async def send(
        self,
        body: str,
        kind: str = "text",
        media_ref: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        optimistic: bool = False,
    ) -> Message:
        if kind not in MESSAGE_KINDS:
            raise ValueError(f"Unsupported message type {kind!r}")
        body = (body or "").strip()
        if not body and not media_ref:
            raise ValueError("Message content cannot be empty")
        client_message_id = str(uuid.uuid4())
        if optimistic:
            self._add_provisional(client_message_id, body, kind, media_ref, reply_to_id)
        try:
            row = await self._message_repo.save_message(
                conversation_id=self.conversation_id,
                sender_id=self.user_id,
                content=body,
                message_type=kind,
                media_url=media_ref,
                reply_to_id=reply_to_id,
                client_message_id=client_message_id,
            )
        except SendError:
            self._drop_provisional(client_message_id)
            raise
        message = Message.model_validate(row)
        try:
            await self._conversation_repo.update_on_new_message(self.conversation_id, row)
        except SendError as exc:
            # the message itself is stored; only the inbox ordering pointer is stale
            logger.warning("Could not advance last message of %s: %s", self.conversation_id, exc)
        return message

    def _add_provisional(self, client_message_id: str, body: str, kind: str, media_ref: Optional[str], reply_to_id: Optional[str]) -> None:
        provisional = Message(
            id=f"local-{client_message_id}",
            conversation_id=self.conversation_id,
            sender_id=self.user_id,
            content=body,
            message_type=kind,
            media_url=media_ref,
            reply_to_id=reply_to_id,
            created_at=datetime.now(timezone.utc),
            client_message_id=client_message_id,
            pending=True,
        )
        self.apply_insert(provisional)
        self._provisional[client_message_id] = provisional

    def _drop_provisional(self, client_message_id: str) -> None:
        provisional = self._provisional.pop(client_message_id, None)
        if provisional is not None:
            self._remove(provisional.id)

    def _index_of(self, message: Message) -> int:
        # (created_at, id) keys are unique
        return bisect.bisect_left(self._keys, message.sort_key)

    def _remove(self, message_id: str) -> None:
        message = self._ids.pop(message_id)
        index = self._index_of(message)
        del self._keys[index]
        del self._messages[index]

