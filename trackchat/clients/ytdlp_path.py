import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

log = logging.getLogger(__name__)

YTDLP_NAME = "yt-dlp"

# Where a downloaded standalone binary is expected when yt-dlp is not on PATH
PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOCAL_BINARY = PROJECT_ROOT / ("yt-dlp.exe" if sys.platform == "win32" else "yt-dlp")


def _system_binary_works() -> bool:
    """Check that a yt-dlp on PATH actually runs."""
    if not shutil.which(YTDLP_NAME):
        return False
    try:
        result = subprocess.run(
            [YTDLP_NAME, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=15,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def resolve_executable(local_binary: Path = LOCAL_BINARY) -> str:
    """
    Pick the yt-dlp executable: system PATH first, then the project-root binary.

    Never raises. Falls back to the bare name so the first spawn fails loudly.
    """
    if _system_binary_works():
        log.debug("Using yt-dlp from PATH")
        return YTDLP_NAME

    if local_binary.is_file() and os.access(local_binary, os.X_OK):
        log.debug("Using local yt-dlp binary at %s", local_binary)
        return str(local_binary)

    log.warning("yt-dlp not found on PATH or at %s", local_binary)
    return YTDLP_NAME


def js_runtime_args(runtime: str | None) -> list[str]:
    """Arguments pointing yt-dlp at a self-hosted JS runtime (e.g. "node:/path/to/node")."""
    if not runtime:
        return []
    return ["--js-runtimes", runtime]
