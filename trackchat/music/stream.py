import asyncio
import logging

from trackchat.clients.po_token import PoTokenCache, fetch_po_token
from trackchat.clients.ytdlp import YtDlpClient
from trackchat.models.track import Track

log = logging.getLogger(__name__)

PO_TOKEN_SCOPE = "gvs"
CHUNK_SIZE = 64 * 1024


class AudioStream:
    """Live audio bytes from a yt-dlp child process.

    Iterate with `async for chunk in stream`. The stream ends when yt-dlp
    closes its stdout. No stall timeout is applied here; callers decide how
    long silence is acceptable.
    """

    def __init__(self, process: asyncio.subprocess.Process, label: str):
        self.process = process
        self.label = label
        self.first_chunk_received = False
        self._stderr_task = asyncio.create_task(self._log_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    def __aiter__(self):
        return self._chunks()

    async def _chunks(self):
        while True:
            chunk = await self.process.stdout.read(CHUNK_SIZE)
            if not chunk:
                return
            if not self.first_chunk_received:
                self.first_chunk_received = True
                log.info("First audio chunk (%d bytes) for %s", len(chunk), self.label)
            yield chunk

    async def _log_stderr(self) -> None:
        if self.process.stderr is None:
            return
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            log.debug("yt-dlp [%s]: %s", self.label, line.decode(errors="replace").rstrip())

    async def _watch_exit(self) -> None:
        code = await self.process.wait()
        if code == 0:
            log.info("yt-dlp stream finished for %s", self.label)
        else:
            log.warning("yt-dlp stream for %s exited with code %s", self.label, code)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def close(self) -> None:
        """Kill the child process if it is still running."""
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class StreamLauncher:
    """Opens audio streams for resolved tracks, attaching a PO token when one is available."""

    def __init__(
        self,
        ytdlp: YtDlpClient,
        token_cache: PoTokenCache,
        po_token_url: str,
        po_token_retries: int = 3,
        po_token_retry_delay_ms: int = 2000,
    ):
        self.ytdlp = ytdlp
        self.token_cache = token_cache
        self.po_token_url = po_token_url
        self.po_token_retries = po_token_retries
        self.po_token_retry_delay_ms = po_token_retry_delay_ms

    async def get_po_token(self) -> str | None:
        """Cached token for the stream scope, fetching a fresh one on a miss."""
        token = self.token_cache.get(PO_TOKEN_SCOPE)
        if token:
            return token

        log.info("Fetching new PO token...")
        token = await fetch_po_token(
            self.po_token_url,
            retries=self.po_token_retries,
            retry_delay_ms=self.po_token_retry_delay_ms,
        )
        if token:
            self.token_cache.set(PO_TOKEN_SCOPE, token)
        return token

    async def open_stream(self, track: Track) -> AudioStream:
        """Spawn yt-dlp for the track and hand back its stdout as a live stream."""
        log.info("Streaming: %s (%s)", track.title, track.url)

        po_token = await self.get_po_token()
        if po_token:
            log.info("Using PO token for stream")
        else:
            log.warning("No PO token available, streaming without one")

        process = await self.ytdlp.spawn_stream(track.url, po_token)
        return AudioStream(process, label=track.title)
