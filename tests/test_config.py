from realtime_chat.config import Settings


def test_defaults_match_documented_constants():
    settings = Settings()
    assert settings.typing_timeout_seconds == 3.0
    assert settings.reconnect_initial_seconds == 0.5
    assert settings.reconnect_max_seconds == 30.0
    assert settings.history_page_size == 50
    assert settings.online_window_seconds == 120
    assert settings.redis_url is None


def test_from_env(monkeypatch):
    monkeypatch.setenv("MONGODB_URL", "mongodb://db:27017")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
    monkeypatch.setenv("TYPING_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("HISTORY_PAGE_SIZE", "20")

    settings = Settings.from_env()

    assert settings.mongodb_url == "mongodb://db:27017"
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.typing_timeout_seconds == 1.5
    assert settings.history_page_size == 20
    assert settings.reconnect_max_seconds == 30.0


def test_empty_redis_url_means_in_process_bus(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "")
    assert Settings.from_env().redis_url is None
