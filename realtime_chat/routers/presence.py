import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Request

from realtime_chat.errors import ChatError, TransportDisconnected
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.schemas.chat import Profile
from realtime_chat.services.typing_relay import is_online
from realtime_chat.utils.dependencies import get_backend, get_bus, http_error


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/presence", tags=["chat"])


async def _heartbeat_present(bus, user_id: str) -> bool:
    try:
        return await bus.is_present(user_id)
    except TransportDisconnected as exc:
        logger.warning("Presence lookup for %s failed, using last_seen only: %s", user_id, exc)
        return False


@router.get("/{user_id}")
async def presence(user_id: str, request: Request, backend=Depends(get_backend), bus=Depends(get_bus)):
    """Online when the profile was seen within the window, or a live socket keeps a heartbeat."""
    window = timedelta(seconds=request.app.state.settings.online_window_seconds)
    try:
        row = await ProfileRepository(backend).get_profile(user_id)
    except ChatError as exc:
        raise http_error(exc) from exc
    profile = Profile.model_validate(row) if row else None
    online = is_online(profile, window=window) or await _heartbeat_present(bus, user_id)
    return {"user_id": user_id, "online": bool(online), "last_seen": profile.last_seen if profile else None}
