import asyncio
import logging
from typing import Dict, Iterable, List, Sequence, Set

from realtime_chat.errors import FetchError, SendError
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.repositories.read_status_repository import ReadStatusRepository
from realtime_chat.schemas.events import RowChangeEvent


logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Live unread counts for the current reader.

    Unread state is the set of message ids authored by others minus the ids
    this reader has a read status for. Read statuses that arrive before their
    message are remembered, so either event order yields the same count.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        read_status_repo: ReadStatusRepository,
        user_id: str,
    ) -> None:
        self._message_repo = message_repo
        self._read_status_repo = read_status_repo
        self.user_id = user_id
        self._unread: Dict[str, Set[str]] = {}
        self._conversation_of: Dict[str, str] = {}
        self._read: Set[str] = set()

    @property
    def conversations(self) -> List[str]:
        return list(self._unread)

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self._unread.values())

    def count(self, conversation_id: str) -> int:
        return len(self._unread.get(conversation_id, ()))

    def unread_ids(self, conversation_id: str) -> Set[str]:
        return set(self._unread.get(conversation_id, ()))

    def track(self, conversation_id: str) -> None:
        self._unread.setdefault(conversation_id, set())

    def forget(self, conversation_id: str) -> None:
        for message_id in self._unread.pop(conversation_id, set()):
            self._conversation_of.pop(message_id, None)

    async def unread_count(self, conversation_id: str) -> int:
        """Recompute one conversation from the backend. Raises FetchError."""
        before = set(self._unread.get(conversation_id, ()))
        others = await self._message_repo.ids_from_others(conversation_id, self.user_id)
        read = await self._read_status_repo.read_ids(self.user_id, sorted(others))
        # inserts applied while the queries were in flight are kept
        arrived = self._unread.get(conversation_id, set()) - before
        for message_id in others:
            self._conversation_of[message_id] = conversation_id
        self._read |= read
        self._unread[conversation_id] = ((others - read) | arrived) - self._read
        return self.count(conversation_id)

    async def refresh_all(self, conversation_ids: Iterable[str]) -> int:
        """Recompute every conversation; one failing fetch counts as zero for that conversation only."""
        ids = list(dict.fromkeys(conversation_ids))
        results = await asyncio.gather(*(self.unread_count(cid) for cid in ids), return_exceptions=True)
        for conversation_id, result in zip(ids, results):
            if isinstance(result, FetchError):
                logger.warning("Unread count for %s unavailable: %s", conversation_id, result)
                self._unread[conversation_id] = set()
            elif isinstance(result, BaseException):
                raise result
        return self.total

    async def mark_read(self, message_ids: Sequence[str]) -> None:
        ids = [message_id for message_id in dict.fromkeys(message_ids) if message_id]
        if not ids:
            return
        await self._read_status_repo.mark_read(ids, self.user_id)
        for message_id in ids:
            self._note_read(message_id)
        try:
            await self._message_repo.mark_flag_read(ids)
        except SendError as exc:
            logger.warning("Legacy read flag not updated for %d messages: %s", len(ids), exc)

    async def apply(self, event: RowChangeEvent) -> bool:
        """Fold one row change into the counts. Returns True when a count may have changed."""
        row = event.record
        if event.table == "messages":
            return self._apply_message(event.operation, row)
        if event.table == "message_read_status":
            if row.get("user_id") != self.user_id:
                return False
            if event.operation == "delete":
                return self._note_unread_again(row.get("message_id"))
            return self._note_read(row.get("message_id"))
        if event.table == "conversation_participants":
            if row.get("user_id") != self.user_id:
                return False
            conversation_id = row.get("conversation_id")
            if event.operation == "delete":
                self.forget(conversation_id)
                return True
            try:
                await self.unread_count(conversation_id)
            except FetchError as exc:
                logger.warning("Unread count for new conversation %s unavailable: %s", conversation_id, exc)
                self._unread[conversation_id] = set()
            return True
        return False

    def _apply_message(self, operation: str, row) -> bool:
        message_id = row.get("id")
        conversation_id = row.get("conversation_id")
        if not message_id or conversation_id not in self._unread:
            return False
        if row.get("sender_id") == self.user_id:
            return False
        if operation == "delete":
            self._conversation_of.pop(message_id, None)
            if message_id in self._unread[conversation_id]:
                self._unread[conversation_id].discard(message_id)
                return True
            return False
        if operation != "insert":
            return False
        self._conversation_of[message_id] = conversation_id
        if message_id in self._read or message_id in self._unread[conversation_id]:
            return False
        self._unread[conversation_id].add(message_id)
        return True

    def _note_read(self, message_id) -> bool:
        if not message_id:
            return False
        self._read.add(message_id)
        conversation_id = self._conversation_of.get(message_id)
        if conversation_id is None or message_id not in self._unread.get(conversation_id, ()):
            return False
        self._unread[conversation_id].discard(message_id)
        return True

    def _note_unread_again(self, message_id) -> bool:
        if not message_id or message_id not in self._read:
            return False
        self._read.discard(message_id)
        conversation_id = self._conversation_of.get(message_id)
        if conversation_id is None or conversation_id not in self._unread:
            return False
        self._unread[conversation_id].add(message_id)
        return True
