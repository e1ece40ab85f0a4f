from datetime import datetime
from typing import Any, Dict, Literal, Optional, TypedDict


CallKind = Literal["audio", "video"]
CallStatus = Literal["pending", "accepted", "rejected", "ended", "missed"]


class CallDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    caller_id: str
    callee_id: str
    call_type: CallKind
    status: CallStatus
    started_at: datetime
    ended_at: Optional[datetime]
    duration_seconds: int
    offer: Optional[Dict[str, Any]]
    answer: Optional[Dict[str, Any]]
    media_channel: Optional[str]
