import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from realtime_chat.errors import ChatError
from realtime_chat.services.chat_service import ChatService
from realtime_chat.services.sessions import ConversationSession, SessionEvent


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])

HEARTBEAT_SECONDS = 30


def encode_event(event: SessionEvent) -> Dict[str, Any]:
    return {"type": event.kind, "data": jsonable_encoder(event.data)}


async def _forward_events(websocket: WebSocket, session: ConversationSession) -> None:
    while True:
        event = await session.events.get()
        await websocket.send_json(encode_event(event))
        if event.kind == "closed":
            return


async def _presence_heartbeat(service: ChatService) -> None:
    while True:
        try:
            await service.heartbeat(ttl_seconds=HEARTBEAT_SECONDS * 2)
        except ChatError as exc:
            logger.debug("Presence heartbeat for %s skipped: %s", service.user_id, exc)
        await asyncio.sleep(HEARTBEAT_SECONDS)


async def handle_command(session: ConversationSession, msg: Dict[str, Any]) -> Dict[str, Any]:
    """Run one client command and return the reply frame."""
    kind = msg.get("type")
    if kind == "send":
        message = await session.send(
            msg.get("content", ""),
            kind=msg.get("message_type", "text"),
            media_ref=msg.get("media_url"),
            reply_to_id=msg.get("reply_to_id"),
            optimistic=bool(msg.get("optimistic", False)),
        )
        return {"type": "sent", "data": jsonable_encoder(message)}
    if kind == "typing":
        return {"type": "typing_sent", "data": await session.notify_typing()}
    if kind == "load_older":
        older = await session.load_older()
        return {"type": "older", "data": jsonable_encoder(older)}
    if kind == "call_start":
        call = await session.start_call(msg.get("call_type", "audio"))
        return {"type": "call", "data": jsonable_encoder(call)}
    if kind == "call_accept":
        return {"type": "call", "data": jsonable_encoder(await session.accept_call(msg["call_id"]))}
    if kind == "call_reject":
        return {"type": "call", "data": jsonable_encoder(await session.reject_call(msg["call_id"]))}
    if kind == "call_end":
        call = await session.end_call(msg["call_id"], msg.get("duration_seconds"))
        return {"type": "call", "data": jsonable_encoder(call)}
    raise ValueError(f"Unknown command {kind!r}")


@router.websocket("/ws/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str):
    user_id = websocket.query_params.get("user_id") or websocket.headers.get("x-user-id")
    if not user_id:
        await websocket.close(code=4401)
        return
    state = websocket.app.state
    service = ChatService(state.backend, state.bus, user_id, settings=state.settings)
    try:
        allowed = await service.is_participant(conversation_id)
    except ChatError as exc:
        logger.warning("Participant check for %s failed: %s", conversation_id, exc)
        await websocket.close(code=1011)
        return
    if not allowed:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    session = service.open_conversation(conversation_id)
    await session.open()
    forward_task = asyncio.create_task(_forward_events(websocket, session))
    heartbeat_task = asyncio.create_task(_presence_heartbeat(service))
    try:
        while True:
            msg = await websocket.receive_json()
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "data": {"command": None, "detail": "Expected a JSON object"}})
                continue
            try:
                reply = await handle_command(session, msg)
            except (ChatError, ValueError, LookupError) as exc:
                reply = {"type": "error", "data": {"command": msg.get("type"), "detail": str(exc)}}
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.debug("Socket for %s in %s closed", user_id, conversation_id)
    finally:
        heartbeat_task.cancel()
        forward_task.cancel()
        await asyncio.gather(heartbeat_task, forward_task, return_exceptions=True)
        await session.close()
