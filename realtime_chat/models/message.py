from datetime import datetime
from typing import Literal, Optional, TypedDict


MessageKind = Literal["text", "image", "video", "audio", "file"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    # empty for media-only messages
    content: str
    message_type: MessageKind
    media_url: Optional[str]
    reply_to_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    # legacy flag, superseded by message_read_status
    is_read: bool
    # client ack for optimistic sends
    client_message_id: Optional[str]


class ReadStatusDocument(TypedDict, total=False):
    _id: str
    message_id: str
    user_id: str
    created_at: datetime
