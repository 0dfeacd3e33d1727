import asyncio
import json
import logging
from typing import Any

from trackchat.clients.ytdlp_path import js_runtime_args, resolve_executable

log = logging.getLogger(__name__)

SEARCH_PREFIX = "ytsearch"
PO_TOKEN_PROVIDER = "youtube"
PO_TOKEN_CLIENT = "web"


class YtDlpClient:
    """Runs the yt-dlp executable for metadata dumps and raw audio streams."""

    METADATA_ARGS = [
        "--dump-json",
        "--flat-playlist",  # Don't expand large playlists (speed)
        "--no-playlist",  # Prefer single video if mixed
        "--default-search", SEARCH_PREFIX,
    ]

    STREAM_ARGS = [
        "-o", "-",
        "-f", "bestaudio",
        "--no-playlist",
    ]

    def __init__(
        self,
        executable: str | None = None,
        js_runtime: str | None = None,
        cookies_browser: str | None = None,
    ):
        self.executable = executable or resolve_executable()
        self.js_runtime = js_runtime
        self.cookies_browser = cookies_browser

    def _common_args(self) -> list[str]:
        args = js_runtime_args(self.js_runtime)
        if self.cookies_browser:
            args += ["--cookies-from-browser", self.cookies_browser]
        return args

    def metadata_command(self, target: str) -> list[str]:
        return [self.executable, *self.METADATA_ARGS, *self._common_args(), target]

    def stream_command(self, url: str, po_token: str | None = None) -> list[str]:
        args = [self.executable, *self.STREAM_ARGS, *self._common_args()]
        if po_token:
            args += [
                "--extractor-args",
                f"{PO_TOKEN_PROVIDER}:po_token={PO_TOKEN_CLIENT}.gvs+{po_token}",
            ]
        args.append(url)
        return args

    async def dump_json(self, target: str) -> dict[str, Any] | None:
        """
        Run yt-dlp in metadata mode and return the parsed JSON object.

        Returns None on spawn failure, non-zero exit, empty output or bad JSON.
        """
        cmd = self.metadata_command(target)
        log.debug("Running %s", cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("Could not start yt-dlp (%s): %s", self.executable, e)
            return None

        stdout, stderr = await process.communicate()
        if stderr:
            for line in stderr.decode(errors="replace").splitlines():
                log.debug("yt-dlp: %s", line)

        if process.returncode != 0 or not stdout.strip():
            log.info("yt-dlp exited with code %s for %r", process.returncode, target)
            return None

        try:
            info = json.loads(stdout)
        except ValueError as e:
            log.error("Failed to parse yt-dlp JSON for %r: %s", target, e)
            return None

        if not isinstance(info, dict):
            log.error("Unexpected yt-dlp output for %r: %s", target, type(info).__name__)
            return None
        return info

    async def spawn_stream(self, url: str, po_token: str | None = None) -> asyncio.subprocess.Process:
        """Start yt-dlp writing the best audio-only format to stdout."""
        return await asyncio.create_subprocess_exec(
            *self.stream_command(url, po_token),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
