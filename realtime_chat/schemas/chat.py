from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from realtime_chat.models.call import CallKind, CallStatus
from realtime_chat.models.message import MessageKind


class Row(BaseModel):

    model_config = ConfigDict(extra="ignore")


class Profile(Row):

    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_seen: Optional[datetime] = None
    placeholder: bool = False

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or "Unknown User"

    @classmethod
    def unknown(cls, user_id: str) -> "Profile":
        return cls(id=user_id, full_name="Unknown User", placeholder=True)


class Conversation(Row):

    id: str
    created_at: datetime
    updated_at: datetime
    last_message_id: Optional[str] = None
    last_message_at: datetime


class Participant(Row):

    id: Optional[str] = None
    conversation_id: str
    user_id: str


class Message(Row):

    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    message_type: MessageKind = "text"
    media_url: Optional[str] = None
    reply_to_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    is_read: bool = False
    client_message_id: Optional[str] = None
    # provisional entries exist only on the sending device until their insert round-trips
    pending: bool = False

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class ReadStatus(Row):

    message_id: str
    user_id: str
    created_at: Optional[datetime] = None


class Call(Row):

    id: str
    conversation_id: str
    caller_id: str
    callee_id: str
    call_type: CallKind
    status: CallStatus = "pending"
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: int = 0
    offer: Optional[Dict[str, Any]] = None
    answer: Optional[Dict[str, Any]] = None
    media_channel: Optional[str] = None


class ConversationSummary(BaseModel):

    conversation: Conversation
    other_participant: Profile
    participants: List[Profile] = Field(default_factory=list)
    last_message: Optional[Message] = None
    unread_count: int = 0
