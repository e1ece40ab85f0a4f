from enum import Enum
from typing import Any, Dict, Literal, NamedTuple, Optional

from pydantic import BaseModel, Field


ROW_CHANGE_PREFIX = "changes:"
BROADCAST_PREFIX = "broadcast:"


def changes_channel(table: str) -> str:
    return f"{ROW_CHANGE_PREFIX}{table}"


def broadcast_channel(channel: str) -> str:
    return f"{BROADCAST_PREFIX}{channel}"


class RowFilter(NamedTuple):
    """Column equality filter, applied to the row of each change event."""

    column: str
    value: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        return row.get(self.column) == self.value


class RowChangeEvent(BaseModel):

    table: str
    operation: Literal["insert", "update", "delete"]
    row: Dict[str, Any] = Field(default_factory=dict)
    old: Optional[Dict[str, Any]] = None

    @property
    def record(self) -> Dict[str, Any]:
        # delete events only carry the previous row
        return self.row or self.old or {}


class BroadcastEvent(BaseModel):

    channel: str
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ConnectionStatus(str, Enum):

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"
