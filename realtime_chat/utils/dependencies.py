from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from realtime_chat.errors import ChatError, FetchError, InvalidTransition, SendError
from realtime_chat.services.chat_service import ChatService


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    # authentication happens upstream; the gateway forwards the verified id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def get_backend(request: Request):
    return request.app.state.backend


def get_bus(request: Request):
    return request.app.state.bus


def get_chat_service(request: Request, user_id: str = Depends(get_current_user_id)) -> ChatService:
    state = request.app.state
    return ChatService(state.backend, state.bus, user_id, settings=state.settings)


def http_error(exc: ChatError) -> HTTPException:
    if isinstance(exc, FetchError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, SendError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
