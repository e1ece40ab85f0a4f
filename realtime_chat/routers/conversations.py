from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from realtime_chat.errors import ChatError
from realtime_chat.services.chat_service import ChatService
from realtime_chat.utils.dependencies import get_chat_service, http_error


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(service: ChatService = Depends(get_chat_service)):
    try:
        items, total_unread = await service.list_conversations()
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"items": items, "total_unread": total_unread}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, cursor: Optional[str] = Query(None), service: ChatService = Depends(get_chat_service)):
    try:
        if not await service.is_participant(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        messages, next_cursor = await service.history_page(conversation_id, cursor=cursor)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/with/{user_id}")
async def open_conversation_with(user_id: str, service: ChatService = Depends(get_chat_service)):
    try:
        conversation = await service.get_or_create_conversation(user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ChatError as exc:
        raise http_error(exc) from exc
    return conversation


@router.get("/{conversation_id}/calls")
async def call_history(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    try:
        if not await service.is_participant(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        calls = await service.call_history(conversation_id)
    except ChatError as exc:
        raise http_error(exc) from exc
    return {"items": calls}
