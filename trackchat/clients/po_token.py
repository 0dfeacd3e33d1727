import asyncio
import json
import logging
import threading
import time
from typing import Callable

import aiohttp

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:4416"
TOKEN_PATH = "/get_pot"


def _now_ms() -> float:
    return time.time() * 1000


class PoTokenCache:
    """Proof-of-origin tokens keyed by scope, each kept for a fixed TTL."""

    def __init__(self, ttl_hours: float = 6, clock: Callable[[], float] = _now_ms):
        self.ttl_ms = ttl_hours * 60 * 60 * 1000
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl_ms)

    def get(self, key: str) -> str | None:
        """Return the cached token, evicting it if it has expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            value, expiry = entry
            if self._clock() > expiry:
                del self._entries[key]
                return None
            return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _looks_like_html(content_type: str, body: str) -> bool:
    if "application/json" in content_type:
        return False
    head = body.lstrip()[:15].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


async def fetch_po_token(
    base_url: str = DEFAULT_BASE_URL,
    content_binding: str | None = None,
    retries: int = 3,
    retry_delay_ms: int = 2000,
    session: aiohttp.ClientSession | None = None,
) -> str | None:
    """
    Ask the local token provider for a PO token.

    The provider answers with an HTML page while it is still starting up, so
    HTML bodies, unparsable bodies and connection errors are retried up to
    `retries` more times. A JSON error is final. Returns None on any failure.
    """
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await fetch_po_token(
                base_url, content_binding, retries, retry_delay_ms, session=own_session
            )

    url = base_url.rstrip("/") + TOKEN_PATH
    payload = {}
    if content_binding:
        payload["content_binding"] = content_binding

    attempts_left = retries
    while True:
        retry_reason = None
        try:
            async with session.post(url, json=payload) as resp:
                content_type = resp.headers.get("Content-Type", "")
                body = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("PO token request to %s failed: %s", url, e or type(e).__name__)
            retry_reason = "request failed"
        else:
            if _looks_like_html(content_type, body):
                log.error("PO token server returned HTML instead of JSON (status %s)", status)
                log.debug("Full response:\n%s", body)
                retry_reason = "server not ready"
            else:
                try:
                    data = json.loads(body)
                except ValueError as e:
                    log.error("Failed to parse PO token response: %s", e)
                    log.debug("Response was: %s", body[:200])
                    retry_reason = "unparsable response"
                else:
                    return _token_from_response(data)

        if attempts_left <= 0:
            log.error("Giving up on PO token (%s). Is the provider running at %s?", retry_reason, base_url)
            return None

        log.info(
            "Retrying PO token fetch in %sms... (%s attempts left)", retry_delay_ms, attempts_left
        )
        attempts_left -= 1
        await asyncio.sleep(retry_delay_ms / 1000)


def _token_from_response(data) -> str | None:
    if not isinstance(data, dict):
        log.error("No token in PO token response: %r", data)
        return None

    token = data.get("poToken") or data.get("po_token")
    if token:
        log.info("Fetched PO token")
        if data.get("expiresAt"):
            log.info("PO token expires at %s", data["expiresAt"])
        return token

    if data.get("error"):
        log.error("PO token server returned error: %s", data["error"])
        return None

    log.error("No token in PO token response: %r", data)
    return None
