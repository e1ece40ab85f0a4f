import logging
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from realtime_chat.errors import CallAlreadyActive, InvalidTransition
from realtime_chat.repositories.call_repository import CallRepository
from realtime_chat.repositories.message_repository import utcnow
from realtime_chat.schemas.chat import Call
from realtime_chat.schemas.events import RowChangeEvent


logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"accepted", "rejected", "missed", "ended"}),
    "accepted": frozenset({"ended"}),
    "rejected": frozenset(),
    "missed": frozenset(),
    "ended": frozenset(),
}
ACTIVE_STATUSES = frozenset({"pending", "accepted"})
CALL_KINDS = ("audio", "video")

CallCallback = Callable[[Call], None]


def check_transition(current: Optional[str], requested: str) -> None:
    if requested not in TRANSITIONS.get(current or "", frozenset()):
        raise InvalidTransition(current, requested)


class CallSignalingStateMachine:
    """Call handshake for the conversation open on this device.

    Only one call per conversation can be pending or accepted at a time.
    The caller reports the duration when ending; the machine only validates
    and stamps ``ended_at``.
    """

    def __init__(
        self,
        call_repo: CallRepository,
        user_id: str,
        conversation_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._call_repo = call_repo
        self.user_id = user_id
        self.open_conversation_id = conversation_id
        self._clock = clock
        self._monotonic = monotonic
        self._calls: Dict[str, Call] = {}
        self._active: Dict[str, str] = {}
        self._connected_at: Dict[str, float] = {}
        self.on_incoming: Optional[CallCallback] = None
        self.on_update: Optional[CallCallback] = None

    def get(self, call_id: str) -> Optional[Call]:
        return self._calls.get(call_id)

    def active_call(self, conversation_id: Optional[str] = None) -> Optional[Call]:
        call_id = self._active.get(conversation_id or self.open_conversation_id or "")
        return self._calls.get(call_id) if call_id else None

    def is_incoming(self, row) -> bool:
        return row.get("callee_id") == self.user_id and row.get("conversation_id") == self.open_conversation_id

    async def start_call(self, conversation_id: str, callee_id: str, kind: str) -> Call:
        if kind not in CALL_KINDS:
            raise ValueError(f"Unsupported call type {kind!r}")
        active = self.active_call(conversation_id)
        if active is not None:
            raise CallAlreadyActive(conversation_id, active.id, active.status)
        row = await self._call_repo.create_call(conversation_id, self.user_id, callee_id, kind)
        call = Call.model_validate(row)
        self._track(call)
        return call

    async def update_status(self, call_id: str, status: str, duration_seconds: Optional[int] = None) -> Call:
        call = self._calls.get(call_id)
        if call is None:
            row = await self._call_repo.get_call(call_id)
            if row is None:
                raise LookupError(f"Call {call_id} not found")
            call = Call.model_validate(row)
        if self.user_id not in (call.caller_id, call.callee_id):
            # same answer as a missing call so ids of other calls are not confirmed
            raise LookupError(f"Call {call_id} not found")
        check_transition(call.status, status)
        patch = {"status": status}
        if status == "ended":
            if duration_seconds is None:
                raise ValueError("duration_seconds is required when ending a call")
            if duration_seconds < 0:
                raise ValueError("duration_seconds cannot be negative")
            patch["ended_at"] = self._clock()
            patch["duration_seconds"] = int(duration_seconds)
        await self._call_repo.update_call(call_id, patch)
        updated = call.model_copy(update=patch)
        self._track(updated)
        return updated

    async def accept(self, call_id: str) -> Call:
        return await self.update_status(call_id, "accepted")

    async def reject(self, call_id: str) -> Call:
        return await self.update_status(call_id, "rejected")

    async def miss(self, call_id: str) -> Call:
        return await self.update_status(call_id, "missed")

    async def end(self, call_id: str, duration_seconds: Optional[int] = None) -> Call:
        if duration_seconds is None:
            duration_seconds = self.elapsed_seconds(call_id)
        return await self.update_status(call_id, "ended", duration_seconds)

    def elapsed_seconds(self, call_id: str) -> int:
        started = self._connected_at.get(call_id)
        if started is None:
            return 0
        return max(0, int(self._monotonic() - started))

    async def apply(self, event: RowChangeEvent) -> Optional[Call]:
        if event.table != "calls":
            return None
        row = event.record
        if event.operation == "insert":
            if not self.is_incoming(row):
                logger.debug("Ignoring call %s not addressed to this screen", row.get("id"))
                return None
            if row.get("id") in self._calls:
                return None
            call = Call.model_validate(row)
            self._track(call)
            if self.on_incoming is not None:
                self.on_incoming(call)
            return call
        if event.operation == "update":
            current = self._calls.get(row.get("id", ""))
            if current is None:
                return None
            incoming = Call.model_validate(row)
            if incoming.status != current.status:
                try:
                    check_transition(current.status, incoming.status)
                except InvalidTransition as exc:
                    logger.warning("Ignoring remote update of call %s: %s", current.id, exc)
                    return None
            elif incoming == current:
                return None
            self._track(incoming)
            if self.on_update is not None:
                self.on_update(incoming)
            return incoming
        return None

    async def history(self, conversation_id: Optional[str] = None) -> List[Call]:
        rows = await self._call_repo.history(self.user_id, conversation_id)
        return [Call.model_validate(row) for row in rows]

    def _track(self, call: Call) -> None:
        self._calls[call.id] = call
        if call.status in ACTIVE_STATUSES:
            self._active[call.conversation_id] = call.id
            if call.status == "accepted":
                self._connected_at.setdefault(call.id, self._monotonic())
        elif self._active.get(call.conversation_id) == call.id:
            del self._active[call.conversation_id]
