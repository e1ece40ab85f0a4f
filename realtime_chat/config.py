import os
from typing import Optional

from pydantic import BaseModel


class Settings(BaseModel):

    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db: str = "realtime_chat"
    redis_url: Optional[str] = None
    typing_timeout_seconds: float = 3.0
    reconnect_initial_seconds: float = 0.5
    reconnect_max_seconds: float = 30.0
    history_page_size: int = 50
    online_window_seconds: int = 120

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            mongodb_url=os.getenv("MONGODB_URL", defaults.mongodb_url),
            mongodb_db=os.getenv("MONGODB_DB", defaults.mongodb_db),
            redis_url=os.getenv("REDIS_URL") or None,
            typing_timeout_seconds=float(os.getenv("TYPING_TIMEOUT_SECONDS", defaults.typing_timeout_seconds)),
            reconnect_initial_seconds=float(os.getenv("RECONNECT_INITIAL_SECONDS", defaults.reconnect_initial_seconds)),
            reconnect_max_seconds=float(os.getenv("RECONNECT_MAX_SECONDS", defaults.reconnect_max_seconds)),
            history_page_size=int(os.getenv("HISTORY_PAGE_SIZE", defaults.history_page_size)),
            online_window_seconds=int(os.getenv("ONLINE_WINDOW_SECONDS", defaults.online_window_seconds)),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
