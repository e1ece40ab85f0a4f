import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from pydantic import ValidationError

from realtime_chat.errors import TransportDisconnected
from realtime_chat.schemas.events import (
    BroadcastEvent,
    ConnectionStatus,
    RowChangeEvent,
    RowFilter,
    broadcast_channel,
    changes_channel,
)


logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]
StatusListener = Callable[[ConnectionStatus], Awaitable[None]]


class SubscriptionHandle:
    """One live subscription. Events are queued and handed to ``on_event`` one at a time."""

    def __init__(self, manager: "SubscriptionManager", key: Tuple[Hashable, ...], channel: str,
                 decode: Callable[[str], Any], on_event: EventHandler) -> None:
        self.key = key
        self.channel = channel
        self.live = True
        self.connected = False
        self._manager = manager
        self._decode = decode
        self._on_event = on_event
        self._queue: asyncio.Queue = asyncio.Queue()
        self._bus_sub = None
        self._tasks: List[asyncio.Task] = []

    async def _enqueue(self, raw: str) -> None:
        if self.live:
            self._queue.put_nowait(raw)

    async def _dispatch(self) -> None:
        while self.live:
            raw = await self._queue.get()
            try:
                event = self._decode(raw)
            except (ValidationError, ValueError) as exc:
                logger.warning("Dropping malformed event on %s: %s", self.channel, exc)
                continue
            if event is None or not self.live:
                continue
            try:
                await self._on_event(event)
            except Exception:
                logger.exception("Event handler for %s failed", self.channel)

    async def release(self) -> None:
        if not self.live:
            return
        self.live = False
        self._manager._forget(self)
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        others = [task for task in tasks if task is not current]
        for task in others:
            task.cancel()
        sub, self._bus_sub = self._bus_sub, None
        if sub is not None:
            await sub.cancel()
        await asyncio.gather(*others, return_exceptions=True)
        await self._manager._refresh_status()


class SubscriptionManager:
    """Owns the transport subscriptions of one screen.

    At most one live subscription exists per (entity, filter): asking again
    returns the live handle. Use as an async context manager so every handle
    is released on every exit path.
    """

    def __init__(self, bus, backoff_initial: float = 0.5, backoff_max: float = 30.0, backoff_factor: float = 2.0) -> None:
        self._bus = bus
        self._handles: Dict[Tuple[Hashable, ...], SubscriptionHandle] = {}
        self._listeners: List[StatusListener] = []
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._backoff_factor = backoff_factor
        self._closed = False
        self.status = ConnectionStatus.CONNECTING

    async def __aenter__(self) -> "SubscriptionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unsubscribe_all()

    @property
    def handles(self) -> List[SubscriptionHandle]:
        return list(self._handles.values())

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def subscribe(self, table: str, row_filter: Optional[RowFilter], on_event: EventHandler) -> SubscriptionHandle:
        def decode(raw: str) -> Optional[RowChangeEvent]:
            event = RowChangeEvent.model_validate_json(raw)
            if event.table != table:
                return None
            if row_filter is not None and not row_filter.matches(event.record):
                return None
            return event

        return await self._open(("table", table, row_filter), changes_channel(table), decode, on_event)

    async def subscribe_broadcast(self, channel: str, on_event: EventHandler) -> SubscriptionHandle:
        def decode(raw: str) -> Optional[BroadcastEvent]:
            event = BroadcastEvent.model_validate_json(raw)
            return event if event.channel == channel else None

        return await self._open(("broadcast", channel, None), broadcast_channel(channel), decode, on_event)

    async def broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        message = BroadcastEvent(channel=channel, event=event, payload=payload)
        await self._bus.publish(broadcast_channel(channel), message.model_dump_json())

    async def unsubscribe_all(self) -> None:
        self._closed = True
        for handle in list(self._handles.values()):
            await handle.release()
        await self._set_status(ConnectionStatus.CLOSED)

    async def _open(self, key, channel: str, decode, on_event: EventHandler) -> SubscriptionHandle:
        if self._closed:
            raise RuntimeError("SubscriptionManager is closed")
        existing = self._handles.get(key)
        if existing is not None and existing.live:
            logger.debug("Reusing live subscription %s", key)
            return existing
        handle = SubscriptionHandle(self, key, channel, decode, on_event)
        self._handles[key] = handle
        first_sub = None
        try:
            first_sub = await self._bus.subscribe(channel, handle._enqueue)
        except TransportDisconnected as exc:
            logger.warning("Initial subscribe to %s failed: %s", channel, exc)
        if not handle.live:
            # released while the subscribe was in flight
            if first_sub is not None:
                await first_sub.cancel()
            return handle
        handle._bus_sub = first_sub
        handle._tasks.append(asyncio.create_task(handle._dispatch()))
        handle._tasks.append(asyncio.create_task(self._pump(handle, first_sub)))
        await self._mark(handle, first_sub is not None)
        return handle

    async def _pump(self, handle: SubscriptionHandle, sub) -> None:
        delay = self._backoff_initial
        while handle.live:
            if sub is None:
                await asyncio.sleep(delay)
                delay = min(delay * self._backoff_factor, self._backoff_max)
                if not handle.live:
                    return
                try:
                    sub = await self._bus.subscribe(handle.channel, handle._enqueue)
                except TransportDisconnected as exc:
                    logger.warning("Resubscribe to %s failed, retrying in %.1fs: %s", handle.channel, delay, exc)
                    continue
                if not handle.live:
                    await sub.cancel()
                    return
                handle._bus_sub = sub
                logger.info("Resubscribed to %s", handle.channel)
                await self._mark(handle, True)
                delay = self._backoff_initial
                if not handle.live:
                    return
            try:
                await sub.run()
            except TransportDisconnected as exc:
                logger.warning("Subscription to %s lost: %s", handle.channel, exc)
            if not handle.live:
                return
            handle._bus_sub = None
            await sub.cancel()
            sub = None
            await self._mark(handle, False)

    async def _mark(self, handle: SubscriptionHandle, connected: bool) -> None:
        handle.connected = connected
        await self._refresh_status()

    def _forget(self, handle: SubscriptionHandle) -> None:
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]

    async def _refresh_status(self) -> None:
        if self._closed:
            return
        live = [handle for handle in self._handles.values() if handle.live]
        if any(not handle.connected for handle in live):
            await self._set_status(ConnectionStatus.DISCONNECTED)
        elif live:
            await self._set_status(ConnectionStatus.CONNECTED)

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        for listener in list(self._listeners):
            try:
                await listener(status)
            except Exception:
                logger.exception("Status listener failed for %s", status.value)
