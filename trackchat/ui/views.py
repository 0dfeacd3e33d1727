from typing import Awaitable, Callable

import discord

PLAY_ICON = "▶️"
BUTTON_TITLE_LENGTH = 55
BUTTON_LABEL_MAX = 80  # Discord's limit
MAX_BUTTONS = 25  # 5 rows of 5

PlayCallback = Callable[[discord.Interaction, str], Awaitable[None]]


def button_label(index: int, title: str) -> str:
    if len(title) > BUTTON_TITLE_LENGTH:
        title = title[: BUTTON_TITLE_LENGTH - 3] + "..."
    label = f"{PLAY_ICON} {index + 1}. {title}"
    return label[:BUTTON_LABEL_MAX]


class PlayTrackButton(discord.ui.Button):
    def __init__(self, index: int, title: str, url: str, on_play: PlayCallback):
        super().__init__(
            label=button_label(index, title),
            style=discord.ButtonStyle.secondary,
            custom_id=f"musicstats_play_{index}",
        )
        self.url_to_play = url
        self.on_play = on_play

    async def callback(self, interaction: discord.Interaction):
        await self.on_play(interaction, self.url_to_play)


class MusicStatsView(discord.ui.View):
    """One play button per listed track, numbered like the stats embed."""

    def __init__(self, entries: list[dict], on_play: PlayCallback, timeout: float = 600):
        super().__init__(timeout=timeout)
        for index, entry in enumerate(entries[:MAX_BUTTONS]):
            self.add_item(
                PlayTrackButton(index, entry["video_title"], entry["video_url"], on_play)
            )
