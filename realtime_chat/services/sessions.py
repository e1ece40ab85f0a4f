import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, NamedTuple, Optional, Set

from realtime_chat.errors import ChatError, FetchError, SendError
from realtime_chat.schemas.chat import Call, ConversationSummary, Message, Profile
from realtime_chat.schemas.events import ConnectionStatus, RowChangeEvent, RowFilter
from realtime_chat.services.call_signaling import CallSignalingStateMachine
from realtime_chat.services.conversation_list import ConversationListAggregator
from realtime_chat.services.message_store import MessageStore
from realtime_chat.services.read_receipts import ReadReceiptTracker
from realtime_chat.services.subscription_manager import SubscriptionManager
from realtime_chat.services.typing_relay import TypingIndicatorRelay


logger = logging.getLogger(__name__)


class SessionEvent(NamedTuple):
    kind: str
    data: Any = None


class _Session(ABC):
    """Shared lifecycle: subscriptions acquired on open, all released on close."""

    def __init__(self, service) -> None:
        settings = service.settings
        self.service = service
        self.user_id: str = service.user_id
        self.subscriptions = SubscriptionManager(
            service.bus,
            backoff_initial=settings.reconnect_initial_seconds,
            backoff_max=settings.reconnect_max_seconds,
        )
        self.events: asyncio.Queue = asyncio.Queue()
        self.error: Optional[ChatError] = None
        self.stale = False
        self.active = False
        self._tasks: Set[asyncio.Task] = set()

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def status(self) -> ConnectionStatus:
        return self.subscriptions.status

    async def open(self) -> None:
        self.active = True
        self.subscriptions.add_status_listener(self._on_status)
        try:
            await self._subscribe()
            await self.reload()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        if not self.active:
            return
        self.active = False
        self._teardown()
        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.subscriptions.unsubscribe_all()
        self._emit("closed")

    @abstractmethod
    async def _subscribe(self) -> None:
        pass

    @abstractmethod
    async def reload(self) -> None:
        pass

    def _teardown(self) -> None:
        pass

    def _emit(self, kind: str, data: Any = None) -> None:
        self.events.put_nowait(SessionEvent(kind, data))

    async def _on_status(self, status: ConnectionStatus) -> None:
        if not self.active:
            return
        if status == ConnectionStatus.DISCONNECTED:
            self.stale = True
            self._emit("status", status)
        elif status == ConnectionStatus.CONNECTED and self.stale:
            self._emit("status", status)
            task = asyncio.create_task(self._catch_up())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _catch_up(self) -> None:
        # events published while disconnected were missed; reapplying is idempotent
        await self.reload()
        if self.active and self.subscriptions.status == ConnectionStatus.CONNECTED:
            self.stale = False
            self._emit("fresh")


class ConversationSession(_Session):
    """Everything one open conversation screen needs."""

    def __init__(self, service, conversation_id: str) -> None:
        super().__init__(service)
        settings = service.settings
        self.conversation_id = conversation_id
        self.store = MessageStore(
            service.message_repo,
            service.conversation_repo,
            self.user_id,
            conversation_id,
            page_size=settings.history_page_size,
        )
        self.receipts = ReadReceiptTracker(service.message_repo, service.read_status_repo, self.user_id)
        self.typing = TypingIndicatorRelay(
            self.subscriptions, self.user_id, conversation_id, timeout=settings.typing_timeout_seconds
        )
        self.calls = CallSignalingStateMachine(service.call_repo, self.user_id, conversation_id, clock=service.clock)
        self.calls.on_incoming = lambda call: self._emit("incoming_call", call)
        self.calls.on_update = lambda call: self._emit("call", call)
        self.peer: Optional[Profile] = None

    @property
    def messages(self) -> List[Message]:
        return self.store.messages

    @property
    def unread_count(self) -> int:
        return self.receipts.count(self.conversation_id)

    async def _subscribe(self) -> None:
        await self.subscriptions.subscribe("messages", RowFilter("conversation_id", self.conversation_id), self._on_message_event)
        await self.subscriptions.subscribe("message_read_status", RowFilter("user_id", self.user_id), self._on_read_event)
        # call inserts arrive system-wide and are filtered by the state machine
        await self.subscriptions.subscribe("calls", None, self._on_call_event)
        await self.typing.on_typing_received(lambda typing: self._emit("typing", typing))

    async def reload(self) -> None:
        if self.peer is None or self.peer.placeholder:
            await self._resolve_peer()
        try:
            await self.store.load()
            self.error = None
        except FetchError as exc:
            logger.warning("Could not load conversation %s: %s", self.conversation_id, exc)
            self.error = exc
        if not self.active:
            return
        self._emit("messages", self.store.messages)
        try:
            await self.receipts.unread_count(self.conversation_id)
        except FetchError as exc:
            logger.warning("Unread count for %s unavailable: %s", self.conversation_id, exc)
            self.receipts.track(self.conversation_id)
        await self._mark_read(sorted(self.receipts.unread_ids(self.conversation_id)))

    def _teardown(self) -> None:
        self.store.close()
        self.typing.close()

    async def send(self, body: str, kind: str = "text", media_ref: Optional[str] = None,
                   reply_to_id: Optional[str] = None, optimistic: bool = False) -> Message:
        if optimistic:
            return await self._send_optimistic(body, kind, media_ref, reply_to_id)
        return await self.store.send(body, kind, media_ref, reply_to_id)

    async def _send_optimistic(self, body, kind, media_ref, reply_to_id) -> Message:
        task = asyncio.ensure_future(self.store.send(body, kind, media_ref, reply_to_id, optimistic=True))
        # the provisional entry is in the store before the write yields
        await asyncio.sleep(0)
        self._emit("messages", self.store.messages)
        try:
            return await task
        except SendError:
            self._emit("messages", self.store.messages)
            raise

    async def load_older(self) -> List[Message]:
        older = await self.store.load_older()
        if older:
            self._emit("messages", self.store.messages)
        return older

    async def notify_typing(self) -> bool:
        return await self.typing.notify_typing()

    def presence_label(self, now: Optional[datetime] = None) -> str:
        return self.typing.presence_label(self.peer, now)

    async def start_call(self, kind: str) -> Call:
        if self.peer is None or not self.peer.id:
            raise ValueError("Cannot call: the other participant is unknown")
        return await self.calls.start_call(self.conversation_id, self.peer.id, kind)

    async def accept_call(self, call_id: str) -> Call:
        return await self.calls.accept(call_id)

    async def reject_call(self, call_id: str) -> Call:
        return await self.calls.reject(call_id)

    async def end_call(self, call_id: str, duration_seconds: Optional[int] = None) -> Call:
        return await self.calls.end(call_id, duration_seconds)

    async def _resolve_peer(self) -> None:
        conversations = self.service.conversation_repo
        try:
            others = [uid for uid in await conversations.participant_ids(self.conversation_id) if uid != self.user_id]
            profile = await self.service.profile_repo.get_profile(others[0]) if others else None
        except FetchError as exc:
            logger.warning("Participant lookup for %s failed: %s", self.conversation_id, exc)
            others, profile = [], None
        if profile is not None:
            self.peer = Profile.model_validate(profile)
        elif others:
            self.peer = Profile.unknown(others[0])
        else:
            sender = next((m.sender_id for m in self.store.messages if m.sender_id != self.user_id), None)
            self.peer = Profile.unknown(sender or "")
        self._emit("peer", self.peer)

    async def _mark_read(self, message_ids: List[str]) -> None:
        if not message_ids:
            return
        try:
            await self.receipts.mark_read(message_ids)
        except SendError as exc:
            logger.warning("Could not mark %d messages read in %s: %s", len(message_ids), self.conversation_id, exc)
            return
        self._emit("unread", self.unread_count)

    async def _on_message_event(self, event: RowChangeEvent) -> None:
        if not self.active:
            return
        if event.operation == "insert":
            message = Message.model_validate(event.row)
            if self.store.apply_insert(message):
                self._emit("message", message)
            if await self.receipts.apply(event):
                self._emit("unread", self.unread_count)
            if message.sender_id != self.user_id:
                await self._mark_read([message.id])
        elif event.operation == "update":
            if self.store.apply_update(event.row):
                self._emit("message_updated", self.store.get(event.row["id"]))
        elif event.operation == "delete":
            if self.store.apply_delete(event.record.get("id", "")):
                self._emit("message_deleted", event.record.get("id"))
            await self.receipts.apply(event)

    async def _on_read_event(self, event: RowChangeEvent) -> None:
        if self.active and await self.receipts.apply(event):
            self._emit("unread", self.unread_count)

    async def _on_call_event(self, event: RowChangeEvent) -> None:
        if self.active:
            await self.calls.apply(event)


class InboxSession(_Session):
    """The conversation list screen."""

    def __init__(self, service) -> None:
        super().__init__(service)
        self.receipts = ReadReceiptTracker(service.message_repo, service.read_status_repo, self.user_id)
        self.aggregator = ConversationListAggregator(
            service.conversation_repo,
            service.message_repo,
            service.profile_repo,
            self.receipts,
            self.user_id,
        )

    @property
    def conversations(self) -> List[ConversationSummary]:
        return self.aggregator.summaries

    @property
    def total_unread(self) -> int:
        return self.aggregator.total_unread

    async def _subscribe(self) -> None:
        await self.subscriptions.subscribe("conversations", None, self._on_event)
        await self.subscriptions.subscribe("conversation_participants", RowFilter("user_id", self.user_id), self._on_event)
        await self.subscriptions.subscribe("messages", None, self._on_event)
        await self.subscriptions.subscribe("message_read_status", RowFilter("user_id", self.user_id), self._on_event)

    async def reload(self) -> None:
        try:
            await self.aggregator.recompute()
            self.error = None
        except FetchError as exc:
            logger.warning("Could not load conversations for %s: %s", self.user_id, exc)
            self.error = exc
        if self.active:
            self._emit("conversations", self.aggregator.summaries)

    async def _on_event(self, event: RowChangeEvent) -> None:
        if not self.active:
            return
        try:
            changed = await self.aggregator.apply(event)
        except FetchError as exc:
            logger.warning("Inbox refresh after %s %s failed: %s", event.table, event.operation, exc)
            self.error = exc
            return
        if changed and self.active:
            self._emit("conversations", self.aggregator.summaries)
