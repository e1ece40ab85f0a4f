import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from realtime_chat.errors import TransportDisconnected
from realtime_chat.schemas.chat import Profile
from realtime_chat.schemas.events import BroadcastEvent
from realtime_chat.services.subscription_manager import SubscriptionHandle, SubscriptionManager


logger = logging.getLogger(__name__)

TYPING_EVENT = "typing"
TYPING_TIMEOUT_SECONDS = 3.0
ONLINE_WINDOW = timedelta(minutes=2)

TypingCallback = Callable[[bool], None]


def typing_channel(conversation_id: str) -> str:
    return f"chat:{conversation_id}"


def is_online(profile: Optional[Profile], now: Optional[datetime] = None, window: timedelta = ONLINE_WINDOW) -> bool:
    if profile is None or profile.last_seen is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - profile.last_seen < window


class TypingIndicatorRelay:
    """Ephemeral typing signals for one conversation.

    Sending is fire-and-forget. A peer counts as typing until ``timeout``
    seconds pass without another signal from them; our own echoes are
    dropped by sender id.
    """

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        user_id: str,
        conversation_id: str,
        timeout: float = TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self._subscriptions = subscriptions
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.timeout = timeout
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._callback: Optional[TypingCallback] = None
        self._handle: Optional[SubscriptionHandle] = None

    @property
    def channel(self) -> str:
        return typing_channel(self.conversation_id)

    @property
    def peer_typing(self) -> bool:
        return bool(self._timers)

    def typing_peers(self):
        return sorted(self._timers)

    async def notify_typing(self) -> bool:
        try:
            await self._subscriptions.broadcast(self.channel, TYPING_EVENT, {"sender_id": self.user_id})
        except TransportDisconnected as exc:
            logger.debug("Typing signal for %s dropped: %s", self.conversation_id, exc)
            return False
        return True

    async def on_typing_received(self, callback: TypingCallback) -> SubscriptionHandle:
        self._callback = callback
        self._handle = await self._subscriptions.subscribe_broadcast(self.channel, self._receive)
        return self._handle

    async def _receive(self, event: BroadcastEvent) -> None:
        if event.event != TYPING_EVENT:
            return
        sender_id = event.payload.get("sender_id")
        if not sender_id or sender_id == self.user_id:
            return
        timer = self._timers.pop(sender_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[sender_id] = loop.call_later(self.timeout, self._expire, sender_id)
        if self._callback is not None:
            self._callback(True)

    def _expire(self, sender_id: str) -> None:
        self._timers.pop(sender_id, None)
        if not self._timers and self._callback is not None:
            self._callback(False)

    def presence_label(self, peer: Optional[Profile], now: Optional[datetime] = None) -> str:
        if self.peer_typing:
            return "typing..."
        return "Online" if is_online(peer, now) else "Offline"

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._callback = None
