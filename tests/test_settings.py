import pytest

from music.settings import Settings

_VARS = (
    "DISCORD_TOKEN",
    "MAX_QUEUE_SIZE",
    "DEFAULT_VOLUME",
    "INACTIVITY_TIMEOUT",
    "EMPTY_CHANNEL_TIMEOUT",
    "METRICS_PORT",
    "WEB_PORT",
    "LOG_LEVEL",
    "YTDL_COOKIEFILE",
)


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setattr("music.settings.load_dotenv", lambda: None)
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(env):
    settings = Settings.from_env()
    assert settings.token == ""
    assert settings.max_queue_size == 100
    assert settings.default_volume == 50
    assert settings.inactivity_timeout == 300.0
    assert settings.empty_channel_timeout == 120.0
    assert settings.metrics_port == 9090
    assert settings.web_port is None
    assert settings.cookiefile is None


def test_overrides(env):
    env.setenv("DISCORD_TOKEN", "abc")
    env.setenv("MAX_QUEUE_SIZE", "20")
    env.setenv("INACTIVITY_TIMEOUT", "60")
    env.setenv("WEB_PORT", "8080")
    env.setenv("LOG_LEVEL", "debug")
    env.setenv("YTDL_COOKIEFILE", "/data/cookies.txt")

    settings = Settings.from_env()

    assert settings.token == "abc"
    assert settings.max_queue_size == 20
    assert settings.inactivity_timeout == 60.0
    assert settings.web_port == 8080
    assert settings.log_level == "DEBUG"
    assert settings.cookiefile == "/data/cookies.txt"


def test_bad_numbers_fall_back(env):
    env.setenv("MAX_QUEUE_SIZE", "lots")
    env.setenv("EMPTY_CHANNEL_TIMEOUT", "soon")
    env.setenv("WEB_PORT", "http")
    settings = Settings.from_env()
    assert settings.max_queue_size == 100
    assert settings.empty_channel_timeout == 120.0
    assert settings.web_port is None


def test_default_volume_is_clamped(env):
    env.setenv("DEFAULT_VOLUME", "500")
    assert Settings.from_env().default_volume == 200
