from datetime import datetime
from typing import Callable, List, Optional, Tuple

from realtime_chat.config import Settings, get_settings
from realtime_chat.repositories.call_repository import CallRepository
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.message_repository import MessageRepository, utcnow
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.repositories.read_status_repository import ReadStatusRepository
from realtime_chat.schemas.chat import Call, Conversation, ConversationSummary, Message
from realtime_chat.services.call_signaling import CallSignalingStateMachine
from realtime_chat.services.conversation_list import ConversationListAggregator
from realtime_chat.services.read_receipts import ReadReceiptTracker
from realtime_chat.services.sessions import ConversationSession, InboxSession


class ChatService:
    """Messaging client for one signed-in user.

    Built from a persistence backend and a transport bus and handed to the
    screens that need it; screens open sessions through it.
    """

    def __init__(
        self,
        backend,
        bus,
        user_id: str,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        self.backend = backend
        self.bus = bus
        self.user_id = user_id
        self.settings = settings or get_settings()
        self.clock = clock
        self.message_repo = MessageRepository(backend, clock)
        self.conversation_repo = ConversationRepository(backend, clock)
        self.read_status_repo = ReadStatusRepository(backend, clock)
        self.call_repo = CallRepository(backend, clock)
        self.profile_repo = ProfileRepository(backend)

    def open_conversation(self, conversation_id: str) -> ConversationSession:
        return ConversationSession(self, conversation_id)

    def open_inbox(self) -> InboxSession:
        return InboxSession(self)

    async def get_or_create_conversation(self, other_user_id: str) -> Conversation:
        if other_user_id == self.user_id:
            raise ValueError("Cannot start a conversation with yourself")
        row = await self.conversation_repo.get_or_create_one_to_one(self.user_id, other_user_id)
        return Conversation.model_validate(row)

    async def call_history(self, conversation_id: Optional[str] = None) -> List[Call]:
        machine = CallSignalingStateMachine(self.call_repo, self.user_id, conversation_id, clock=self.clock)
        return await machine.history(conversation_id)

    async def heartbeat(self, ttl_seconds: int = 60) -> None:
        """Keep the user online: refresh the bus presence key and the profile's last_seen."""
        await self.bus.set_presence(self.user_id, ttl_seconds=ttl_seconds)
        await self.profile_repo.touch_last_seen(self.user_id, self.clock())

    async def list_conversations(self) -> Tuple[List[ConversationSummary], int]:
        """One-shot inbox snapshot without live subscriptions. Raises FetchError."""
        tracker = ReadReceiptTracker(self.message_repo, self.read_status_repo, self.user_id)
        aggregator = ConversationListAggregator(
            self.conversation_repo, self.message_repo, self.profile_repo, tracker, self.user_id
        )
        summaries = await aggregator.recompute()
        return summaries, aggregator.total_unread

    async def is_participant(self, conversation_id: str) -> bool:
        return self.user_id in await self.conversation_repo.participant_ids(conversation_id)

    async def history_page(self, conversation_id: str, cursor: Optional[str] = None) -> Tuple[List[Message], Optional[str]]:
        rows, next_cursor = await self.message_repo.get_messages_by_conversation(
            conversation_id, limit=self.settings.history_page_size, cursor=cursor
        )
        return [Message.model_validate(row) for row in rows], next_cursor
