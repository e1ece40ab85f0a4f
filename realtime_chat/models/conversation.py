from datetime import datetime
from typing import Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    created_at: datetime
    updated_at: datetime
    last_message_id: Optional[str]
    last_message_at: datetime


class ParticipantDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    joined_at: datetime
