import asyncio
import logging
import queue
import shutil
import subprocess
import threading
from typing import Awaitable, Callable

import discord

from trackchat.models.track import Track
from trackchat.music.queue import RoomQueue
from trackchat.music.stream import AudioStream, StreamLauncher

log = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 120  # 2 minutes

# Audio constants
FRAME_SIZE = 3840  # 20ms of 48kHz stereo 16-bit audio (48000 * 2 * 2 * 0.02)
FRAMES_PER_SECOND = 50

# Buffer configuration
AUDIO_BUFFER_SECONDS = 5.0  # Max buffer size
AUDIO_PREBUFFER_SECONDS = 2.0  # Wait for this much audio before starting playback


class StreamAudioSource(discord.AudioSource):
    """Audio source that decodes a yt-dlp AudioStream with ffmpeg, with buffering.

    An event-loop task pumps the yt-dlp bytes into ffmpeg's stdin; a background
    thread reads PCM frames from ffmpeg into a thread-safe buffer, isolating
    Discord's read() calls from network jitter.

    Must be created on the event loop thread.
    """

    def __init__(
        self,
        stream: AudioStream,
        buffer_seconds: float = AUDIO_BUFFER_SECONDS,
        prebuffer_seconds: float = AUDIO_PREBUFFER_SECONDS,
    ):
        self.stream = stream
        self._loop = asyncio.get_running_loop()
        self._ffmpeg: subprocess.Popen | None = None

        # Buffer configuration
        self._buffer_frames = int(buffer_seconds * FRAMES_PER_SECOND)
        self._prebuffer_frames = int(prebuffer_seconds * FRAMES_PER_SECOND)

        # Thread-safe buffer
        self._buffer: queue.Queue[bytes] = queue.Queue(maxsize=self._buffer_frames)
        self._buffer_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._prebuffer_ready = threading.Event()
        self._eof = False

        self._spawn_ffmpeg()
        self._pump_task = self._loop.create_task(self._pump())
        self._buffer_thread = threading.Thread(target=self._buffer_loop, daemon=True)
        self._buffer_thread.start()

    def _spawn_ffmpeg(self):
        """FFmpeg reads the container bytes on stdin and outputs PCM."""
        ffmpeg_path = shutil.which("ffmpeg") or "ffmpeg"
        self._ffmpeg = subprocess.Popen(
            [
                ffmpeg_path,
                "-thread_queue_size", "4096",
                "-analyzeduration", "2000000",
                "-probesize", "2000000",
                "-fflags", "+genpts+discardcorrupt",
                "-i", "pipe:0",
                "-f", "s16le",
                "-ar", "48000",
                "-ac", "2",
                "-loglevel", "quiet",
                "pipe:1",
            ],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            bufsize=0,
        )

    async def _pump(self):
        """Copy yt-dlp output into ffmpeg until either side ends."""
        stdin = self._ffmpeg.stdin
        try:
            async for chunk in self.stream:
                await asyncio.to_thread(stdin.write, chunk)
        except (BrokenPipeError, ValueError):
            log.debug("ffmpeg closed its input for %s", self.stream.label)
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    def _buffer_loop(self):
        """Background thread: continuously read from ffmpeg into buffer."""
        frames_buffered = 0

        while not self._stop_event.is_set():
            data = self._ffmpeg.stdout.read(FRAME_SIZE)

            if len(data) < FRAME_SIZE:
                # End of stream or error
                self._eof = True
                self._prebuffer_ready.set()  # Unblock read() if waiting
                break

            try:
                self._buffer.put(data, timeout=1.0)
                frames_buffered += 1

                if frames_buffered == self._prebuffer_frames:
                    self._prebuffer_ready.set()

            except queue.Full:
                # Consumer is slower than producer; drop the frame
                pass

    def read(self) -> bytes:
        """Read 20ms of audio from buffer."""
        # Wait for prebuffer on first read
        if not self._prebuffer_ready.is_set():
            self._prebuffer_ready.wait(timeout=10.0)

        try:
            return self._buffer.get(timeout=0.5)
        except queue.Empty:
            if self._eof:
                return b""  # Signal end of stream
            # Buffer underrun - return silence rather than speed up
            return b"\x00" * FRAME_SIZE

    def _close_stream(self):
        self._pump_task.cancel()
        self.stream.close()

    def cleanup(self):
        """Clean up processes and threads. Called by discord.py from its player thread."""
        self._stop_event.set()

        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._close_stream)

        if self._ffmpeg:
            self._ffmpeg.kill()
            self._ffmpeg = None

        if self._buffer_thread and self._buffer_thread.is_alive():
            self._buffer_thread.join(timeout=2.0)


class Player:
    """Handles voice playback for a single guild."""

    def __init__(
        self,
        room_id: int,
        voice_client: discord.VoiceClient,
        queue: RoomQueue,
        launcher: StreamLauncher,
        text_channel: discord.abc.Messageable,
        on_track_start: Callable[["Player", Track], Awaitable[None]] | None = None,
        on_queue_empty: Callable[["Player"], Awaitable[None]] | None = None,
        on_disconnect: Callable[[], None] | None = None,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
    ):
        self.room_id = room_id
        self.voice_client = voice_client
        self.queue = queue
        self.launcher = launcher
        self.text_channel = text_channel
        self.on_track_start = on_track_start
        self.on_queue_empty = on_queue_empty
        self.on_disconnect = on_disconnect
        self.idle_timeout = idle_timeout
        self._idle_task: asyncio.Task | None = None
        self._starting = False  # Between popping a track and voice_client.play()

    async def play_next(self) -> Track | None:
        """
        Play the next playable track in the queue. Returns it, or None if the
        queue ran out or another call is already starting a track.
        """
        if self._starting or self.voice_client.is_playing() or self.voice_client.is_paused():
            log.debug("Guild %s is already starting or playing a track", self.room_id)
            return None

        self._starting = True
        try:
            return await self._start_next()
        finally:
            self._starting = False

    async def _start_next(self) -> Track | None:
        self._cancel_idle_timer()

        while True:
            track = self.queue.next()
            if not track:
                if self.on_queue_empty:
                    await self.on_queue_empty(self)
                await self._start_idle_timer()
                return None

            try:
                stream = await self.launcher.open_stream(track)
            except OSError as e:
                log.error("Could not start stream for %s: %s", track.title, e)
                continue

            try:
                source = StreamAudioSource(stream)
            except OSError as e:
                log.error("Could not start ffmpeg for %s: %s", track.title, e)
                stream.close()
                continue
            break

        def after_callback(error: Exception | None):
            if error:
                log.error("Player error: %s", error)
            # Schedule play_next on the event loop
            asyncio.run_coroutine_threadsafe(self.play_next(), self.voice_client.loop)

        try:
            self.voice_client.play(source, after=after_callback)
        except discord.ClientException as e:
            log.error("Could not play %s: %s", track.title, e)
            source.cleanup()
            return None

        if self.on_track_start:
            await self.on_track_start(self, track)

        return track

    def pause(self) -> bool:
        """Pause playback. Returns True if successful."""
        if self.voice_client.is_playing():
            self.voice_client.pause()
            return True
        return False

    def resume(self) -> bool:
        """Resume playback. Returns True if successful."""
        if self.voice_client.is_paused():
            self.voice_client.resume()
            return True
        return False

    def skip(self) -> None:
        """Skip the current track."""
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()  # This triggers the after callback

    async def stop(self) -> None:
        """Stop playback and disconnect."""
        self._cancel_idle_timer()
        self.queue.clear()
        self.queue.current = None
        if self.voice_client.is_connected():
            await self.voice_client.disconnect()
        if self.on_disconnect:
            self.on_disconnect()

    def is_playing(self) -> bool:
        """Check if currently starting, playing or paused."""
        return self._starting or self.voice_client.is_playing() or self.voice_client.is_paused()

    async def _start_idle_timer(self) -> None:
        self._idle_task = asyncio.create_task(self._idle_disconnect())

    def _cancel_idle_timer(self) -> None:
        if self._idle_task and not self._idle_task.done():
            self._idle_task.cancel()
        self._idle_task = None

    async def _idle_disconnect(self) -> None:
        """Disconnect after idle timeout."""
        await asyncio.sleep(self.idle_timeout)
        if self.voice_client.is_connected() and not self.is_playing():
            await self.voice_client.disconnect()
            if self.on_disconnect:
                self.on_disconnect()


class PlayerManager:
    """Manages players for all guilds."""

    def __init__(self, launcher: StreamLauncher, idle_timeout: float = IDLE_TIMEOUT_SECONDS):
        self._players: dict[int, Player] = {}
        self._launcher = launcher
        self._idle_timeout = idle_timeout

    def create(
        self,
        room_id: int,
        voice_client: discord.VoiceClient,
        queue: RoomQueue,
        text_channel: discord.abc.Messageable,
        **hooks,
    ) -> Player:
        """Create a new player for a guild. `hooks` are Player's on_* callbacks."""
        player = Player(
            room_id=room_id,
            voice_client=voice_client,
            queue=queue,
            launcher=self._launcher,
            text_channel=text_channel,
            idle_timeout=self._idle_timeout,
            **hooks,
        )
        self._players[room_id] = player
        return player

    def get(self, room_id: int) -> Player | None:
        return self._players.get(room_id)

    def remove(self, room_id: int) -> None:
        self._players.pop(room_id, None)

