import logging
import os
import sqlite3

import discord
from discord import app_commands
from discord.http import Route

from trackchat.annotations.sessions import SessionRegistry
from trackchat.annotations.timeline import TimelineScheduler
from trackchat.clients.po_token import PoTokenCache
from trackchat.clients.ytdlp import YtDlpClient
from trackchat.config import Settings
from trackchat.models.track import Track
from trackchat.music.player import Player, PlayerManager
from trackchat.music.queue import QueueManager
from trackchat.music.stream import StreamLauncher
from trackchat.resolver import Resolver
from trackchat.storage.database import MusicDatabase
from trackchat.ui.activity import now_playing_status, track_activity
from trackchat.ui.embeds import (
    added_to_queue_embed,
    error_embed,
    music_stats_embed,
    now_playing_embed,
    queue_embed,
)
from trackchat.ui.views import MusicStatsView

log = logging.getLogger(__name__)

OPUS_PATHS = [
    "/opt/homebrew/lib/libopus.dylib",  # Apple Silicon
    "/usr/local/lib/libopus.dylib",  # Intel Mac
]


def load_opus() -> None:
    """Load opus for voice support where discord.py can't find it on its own."""
    if discord.opus.is_loaded():
        return

    for path in OPUS_PATHS:
        if os.path.exists(path):
            try:
                discord.opus.load_opus(path)
                log.info("Loaded opus from %s", path)
                break
            except OSError as e:
                log.warning("Failed to load opus from %s: %s", path, e)

    if not discord.opus.is_loaded():
        log.warning("Opus not loaded - voice will not work!")


class MusicBot(discord.Client):
    """Owns every per-guild registry: queues, players and tracking sessions."""

    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.message_content = True  # Replies to "Now Playing" are recorded as comments
        super().__init__(intents=intents)

        self.settings = settings
        self.tree = app_commands.CommandTree(self)

        self.ytdlp = YtDlpClient(
            executable=settings.ytdlp_path,
            js_runtime=settings.ytdlp_js_runtime,
            cookies_browser=settings.ytdlp_cookies_browser,
        )
        self.resolver = Resolver(self.ytdlp)
        self.launcher = StreamLauncher(
            self.ytdlp,
            PoTokenCache(ttl_hours=settings.po_token_ttl_hours),
            po_token_url=settings.po_token_url,
            po_token_retries=settings.po_token_retries,
            po_token_retry_delay_ms=settings.po_token_retry_delay_ms,
        )

        self.db = MusicDatabase(settings.db_path)
        self.sessions = SessionRegistry()
        self.timeline = TimelineScheduler(
            self.db,
            self.sessions,
            get_channel=self.get_channel,
            max_comment_length=settings.max_comment_length,
            ignore_prefix=settings.comment_ignore_prefix,
        )

        self.queues = QueueManager()
        self.players = PlayerManager(self.launcher, idle_timeout=settings.idle_timeout_seconds)

    async def setup_hook(self):
        for command in COMMANDS:
            self.tree.add_command(command)

        # Guild-specific sync is instant; global sync can take up to an hour
        if self.settings.test_guild_id:
            guild = discord.Object(id=self.settings.test_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()

    async def close(self):
        self.sessions.stop_all()
        self.db.close()
        await super().close()

    # ---- Player lifecycle ----

    def get_or_create_player(
        self, interaction: discord.Interaction, voice_client: discord.VoiceClient
    ) -> Player:
        room_id = interaction.guild_id
        player = self.players.get(room_id)
        if player:
            return player

        def on_disconnect():
            self.sessions.stop(room_id)
            self.players.remove(room_id)
            self.queues.remove(room_id)

        return self.players.create(
            room_id=room_id,
            voice_client=voice_client,
            queue=self.queues.get(room_id),
            text_channel=interaction.channel,
            on_track_start=self.on_track_start,
            on_queue_empty=self.on_queue_empty,
            on_disconnect=on_disconnect,
        )

    async def on_track_start(self, player: Player, track: Track) -> None:
        """Post the anchor message, open a tracking session and replay stored annotations."""
        try:
            message = await player.text_channel.send(embed=now_playing_embed(track))
        except discord.HTTPException as e:
            log.warning("Could not post Now Playing for %s: %s", track.title, e)
            self.sessions.stop(player.room_id)
            await self.show_now_playing(player, track)
            return

        self.sessions.start(player.room_id, message.id, message.channel.id, track.url)

        if track.requested_by_id is not None:
            try:
                self.db.record_play(
                    track.url, track.title, track.requested_by_id, track.requested_by, player.room_id
                )
            except sqlite3.Error:
                log.exception("Failed to record play of %s", track.url)

        try:
            self.timeline.schedule_playback(player.room_id, track.url)
        except sqlite3.Error:
            log.exception("Failed to schedule comment playback for %s", track.url)

        await self.show_now_playing(player, track)

    async def on_queue_empty(self, player: Player) -> None:
        self.sessions.stop(player.room_id)
        await self.clear_now_playing(player)

    # ---- Presence ----

    async def set_voice_status(self, channel: discord.VoiceChannel | None, status: str) -> None:
        """Set the status line shown under the voice channel. An empty status clears it."""
        if channel is None:
            return
        route = Route("PUT", "/channels/{channel_id}/voice-status", channel_id=channel.id)
        try:
            await self.http.request(route, json={"status": status})
        except discord.HTTPException as e:
            log.debug("Could not set voice channel status: %s", e)

    async def show_now_playing(self, player: Player, track: Track) -> None:
        channel = player.voice_client.channel
        await self.change_presence(activity=track_activity(track, channel))
        await self.set_voice_status(channel, now_playing_status(track))

    async def clear_now_playing(self, player: Player) -> None:
        await self.change_presence(activity=None)
        await self.set_voice_status(player.voice_client.channel, "")

    # ---- Gateway events ----

    async def on_ready(self):
        log.info("Logged in as %s (ID: %s)", self.user, self.user.id)

    async def on_message(self, message: discord.Message):
        if message.guild is None:
            return
        await self.timeline.handle_reply(message)

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent):
        member = payload.member
        if member is None:
            return
        self.timeline.handle_reaction(
            room_id=payload.guild_id,
            message_id=payload.message_id,
            user_id=payload.user_id,
            user_name=member.display_name,
            emoji=str(payload.emoji),
            is_bot=member.bot,
        )


async def ensure_voice(interaction: discord.Interaction) -> discord.VoiceClient | None:
    """Ensure the bot is in the user's voice channel. Returns VoiceClient or None."""
    if not interaction.user.voice or not interaction.user.voice.channel:
        await interaction.response.send_message(
            embed=error_embed("You must be in a voice channel."),
            ephemeral=True,
        )
        return None

    user_channel = interaction.user.voice.channel
    voice_client = interaction.guild.voice_client

    if voice_client is None:
        voice_client = await user_channel.connect()
    elif voice_client.channel != user_channel:
        await voice_client.move_to(user_channel)

    return voice_client


async def play_query(interaction: discord.Interaction, query: str) -> None:
    """Resolve a query, queue the result and start playback if idle."""
    bot: MusicBot = interaction.client
    voice_client = await ensure_voice(interaction)
    if not voice_client:
        return

    await interaction.response.defer()

    tracks = await bot.resolver.resolve(query)
    if not tracks:
        await interaction.followup.send(embed=error_embed("Could not find that song."))
        return

    track = tracks[0].with_requester(interaction.user.display_name, interaction.user.id)
    queue = bot.queues.get(interaction.guild_id)
    position = queue.add(track)

    player = bot.get_or_create_player(interaction, voice_client)
    if player.is_playing():
        await interaction.followup.send(embed=added_to_queue_embed(track, position))
        return

    played_track = await player.play_next()
    if played_track:
        await interaction.followup.send(f"▶️ Starting **{played_track.title}**")
    else:
        await interaction.followup.send(embed=error_embed("Failed to play track."))


async def _not_playing(interaction: discord.Interaction, message: str = "Nothing is playing.") -> None:
    await interaction.response.send_message(embed=error_embed(message), ephemeral=True)


async def _require_admin(interaction: discord.Interaction) -> bool:
    if interaction.user.guild_permissions.administrator:
        return True
    await interaction.response.send_message(
        embed=error_embed("You need the 'Administrator' permission to use this command."),
        ephemeral=True,
    )
    return False


@app_commands.command(name="play", description="Play a song from a search query or URL")
@app_commands.describe(query="Song name or YouTube URL")
@app_commands.guild_only()
async def play(interaction: discord.Interaction, query: str):
    await play_query(interaction, query)


@app_commands.command(name="skip", description="Skip the current song")
@app_commands.guild_only()
async def skip(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    player = bot.players.get(interaction.guild_id)
    if not player or not player.is_playing():
        await _not_playing(interaction)
        return

    current = bot.queues.get(interaction.guild_id).current
    player.skip()
    await interaction.response.send_message(
        f"Skipped **{current.title}** by {current.author}" if current else "Skipped."
    )


@app_commands.command(name="stop", description="Stop playback and clear the queue")
@app_commands.guild_only()
async def stop(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    player = bot.players.get(interaction.guild_id)
    if not player:
        await _not_playing(interaction)
        return

    bot.sessions.stop(interaction.guild_id)
    await bot.clear_now_playing(player)
    await player.stop()
    bot.players.remove(interaction.guild_id)
    bot.queues.remove(interaction.guild_id)
    await interaction.response.send_message("Stopped playback and cleared the queue.")


@app_commands.command(name="pause", description="Pause playback")
@app_commands.guild_only()
async def pause(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    player = bot.players.get(interaction.guild_id)
    if not player or not player.pause():
        await _not_playing(interaction)
        return
    await interaction.response.send_message("⏸️ Paused.")


@app_commands.command(name="resume", description="Resume playback")
@app_commands.guild_only()
async def resume(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    player = bot.players.get(interaction.guild_id)
    if not player:
        await _not_playing(interaction, "Nothing to resume.")
        return

    if player.resume():
        await interaction.response.send_message("▶️ Resumed.")
    else:
        await _not_playing(interaction, "Nothing is paused.")


@app_commands.command(name="queue", description="Show the current queue")
@app_commands.guild_only()
async def show_queue(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    queue = bot.queues.get(interaction.guild_id)
    await interaction.response.send_message(embed=queue_embed(queue.get_list(), queue.current))


@app_commands.command(name="clear", description="Clear the queue (keeps current song playing)")
@app_commands.guild_only()
async def clear(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    bot.queues.get(interaction.guild_id).clear()
    await interaction.response.send_message("Queue cleared.")


@app_commands.command(name="musicstats", description="Show play statistics for this server")
@app_commands.guild_only()
async def musicstats(interaction: discord.Interaction):
    bot: MusicBot = interaction.client
    room_id = interaction.guild_id
    user_id = interaction.user.id

    try:
        top_tracks = bot.db.top_tracks(room_id, 10)
        top_user_tracks = bot.db.top_tracks_by_user(room_id, user_id, 10)
        embed = music_stats_embed(
            total_plays=bot.db.total_plays(room_id),
            user_total_plays=bot.db.user_total_plays(room_id, user_id),
            top_listeners=bot.db.top_listeners(room_id, 10),
            top_tracks=top_tracks,
            top_user_tracks=top_user_tracks,
        )
    except sqlite3.Error as e:
        log.exception("Failed to get music stats")
        await interaction.response.send_message(
            embed=error_embed(f"Failed to get music stats: {e}"), ephemeral=True
        )
        return

    view = MusicStatsView(top_tracks + top_user_tracks, on_play=play_query)
    await interaction.response.send_message(embed=embed, view=view)


@app_commands.command(name="clearmusicstats", description="Clear all play history for this server")
@app_commands.default_permissions(administrator=True)
@app_commands.guild_only()
async def clearmusicstats(interaction: discord.Interaction):
    if not await _require_admin(interaction):
        return

    bot: MusicBot = interaction.client
    deleted = bot.db.clear_music_stats(interaction.guild_id)
    await interaction.response.send_message(
        f"✅ Cleared {deleted} music stats record{'s' if deleted != 1 else ''} for this server."
    )


@app_commands.command(name="clearcomments", description="Clear all track comments and reactions for this server")
@app_commands.default_permissions(administrator=True)
@app_commands.guild_only()
async def clearcomments(interaction: discord.Interaction):
    if not await _require_admin(interaction):
        return

    bot: MusicBot = interaction.client
    deleted = bot.db.clear_annotations(interaction.guild_id)
    await interaction.response.send_message(
        f"✅ Cleared {deleted} track annotation{'s' if deleted != 1 else ''} for this server."
    )


@app_commands.command(name="clearvideo", description="Clear comments and reactions for the current track")
@app_commands.default_permissions(administrator=True)
@app_commands.guild_only()
async def clearvideo(interaction: discord.Interaction):
    if not await _require_admin(interaction):
        return

    bot: MusicBot = interaction.client
    session = bot.sessions.get_active(interaction.guild_id)
    if session is None:
        await _not_playing(interaction, "No track is being tracked right now.")
        return

    deleted = bot.db.clear_annotations(interaction.guild_id, session.track_url)
    await interaction.response.send_message(
        f"✅ Cleared {deleted} annotation{'s' if deleted != 1 else ''} for this track."
    )


COMMANDS = [
    play,
    skip,
    stop,
    pause,
    resume,
    show_queue,
    clear,
    musicstats,
    clearmusicstats,
    clearcomments,
    clearvideo,
]


def main():
    settings = Settings.from_env()
    discord.utils.setup_logging(level=logging.getLevelName(settings.log_level))
    load_opus()

    bot = MusicBot(settings)
    bot.run(settings.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
