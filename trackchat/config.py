import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_PO_TOKEN_URL = "http://127.0.0.1:4416"


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from the environment (and .env)."""

    discord_token: str
    test_guild_id: int | None = None
    db_path: str = "musicstats.db"
    po_token_url: str = DEFAULT_PO_TOKEN_URL
    po_token_ttl_hours: int = 6
    po_token_retries: int = 3
    po_token_retry_delay_ms: int = 2000
    ytdlp_path: str | None = None  # Skip executable discovery when set
    ytdlp_js_runtime: str | None = None  # e.g. "node:/opt/node/bin/node"
    ytdlp_cookies_browser: str | None = None
    max_comment_length: int = 200
    comment_ignore_prefix: str = "#"
    idle_timeout_seconds: int = 120
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        token = os.getenv("DISCORD_TOKEN")
        if not token:
            raise ValueError("DISCORD_TOKEN environment variable is not set")

        log_level = (os.getenv("LOG_LEVEL") or cls.log_level).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

        return cls(
            discord_token=token,
            test_guild_id=_env_int("TEST_GUILD_ID", None),
            db_path=os.getenv("DB_PATH") or cls.db_path,
            po_token_url=os.getenv("PO_TOKEN_URL") or cls.po_token_url,
            po_token_ttl_hours=_env_int("PO_TOKEN_TTL_HOURS", cls.po_token_ttl_hours),
            po_token_retries=_env_int("PO_TOKEN_RETRIES", cls.po_token_retries),
            po_token_retry_delay_ms=_env_int(
                "PO_TOKEN_RETRY_DELAY_MS", cls.po_token_retry_delay_ms
            ),
            ytdlp_path=os.getenv("YTDLP_PATH") or None,
            ytdlp_js_runtime=os.getenv("YTDLP_JS_RUNTIME") or None,
            ytdlp_cookies_browser=os.getenv("YTDLP_COOKIES_BROWSER") or None,
            max_comment_length=_env_int("MAX_COMMENT_LENGTH", cls.max_comment_length),
            comment_ignore_prefix=os.getenv("COMMENT_IGNORE_PREFIX", cls.comment_ignore_prefix),
            idle_timeout_seconds=_env_int("IDLE_TIMEOUT_SECONDS", cls.idle_timeout_seconds),
            log_level=log_level,
        )
