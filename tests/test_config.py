import pytest

from trackchat import config
from trackchat.config import Settings

ENV_VARS = (
    "DISCORD_TOKEN",
    "TEST_GUILD_ID",
    "DB_PATH",
    "PO_TOKEN_URL",
    "PO_TOKEN_TTL_HOURS",
    "PO_TOKEN_RETRIES",
    "PO_TOKEN_RETRY_DELAY_MS",
    "YTDLP_PATH",
    "YTDLP_JS_RUNTIME",
    "YTDLP_COOKIES_BROWSER",
    "MAX_COMMENT_LENGTH",
    "COMMENT_IGNORE_PREFIX",
    "IDLE_TIMEOUT_SECONDS",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "secret")

    settings = Settings.from_env()

    assert settings.discord_token == "secret"
    assert settings.test_guild_id is None
    assert settings.db_path == "musicstats.db"
    assert settings.po_token_url == "http://127.0.0.1:4416"
    assert settings.po_token_ttl_hours == 6
    assert settings.po_token_retries == 3
    assert settings.po_token_retry_delay_ms == 2000
    assert settings.ytdlp_path is None
    assert settings.max_comment_length == 200
    assert settings.comment_ignore_prefix == "#"
    assert settings.log_level == "INFO"


def test_overrides(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "secret")
    monkeypatch.setenv("TEST_GUILD_ID", "1234")
    monkeypatch.setenv("PO_TOKEN_URL", "http://bgutil:4416")
    monkeypatch.setenv("PO_TOKEN_TTL_HOURS", "2")
    monkeypatch.setenv("YTDLP_JS_RUNTIME", "node:/usr/bin/node")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.test_guild_id == 1234
    assert settings.po_token_url == "http://bgutil:4416"
    assert settings.po_token_ttl_hours == 2
    assert settings.ytdlp_js_runtime == "node:/usr/bin/node"
    assert settings.log_level == "DEBUG"


def test_missing_token_is_an_error():
    with pytest.raises(ValueError, match="DISCORD_TOKEN"):
        Settings.from_env()


@pytest.mark.parametrize("name, value", [("PO_TOKEN_RETRIES", "three"), ("LOG_LEVEL", "LOUD")])
def test_invalid_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv("DISCORD_TOKEN", "secret")
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env()
