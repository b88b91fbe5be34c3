"""
bot/commands.py
Text commands (prefix `.spotify `) for the Spotify voice bot.
Voice commands go to the VoiceSessionController; playback commands
are fired at the Spotify client.
"""

from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Optional

import aiohttp
from discord.ext import commands

from bot.voice import format_error_block
from spotify import SpotifyError

if TYPE_CHECKING:
    from bot.voice import VoiceSessionController
    from spotify import SpotifyClient

log = logging.getLogger("spotbot.commands")

HELP_TEXT = "\n".join([
    "`.spotify join` - Join your voice channel",
    "`.spotify leave` - Leave the voice channel the bot is connected to",
    "`.spotify play http://...` - Play a playlist or album via URL",
    "`.spotify play search term` - Search for a song and play the first result",
    "`.spotify pause` - Pause music playback",
    "`.spotify play` - Resume music playback",
    "`.spotify previous` - Go to the previous track, or the beginning of the current track",
    "`.spotify next`, `.spotify skip` - Go to the next track",
    "`.spotify radio` - Start playing radio from the currently playing song",
    "`.spotify nowplaying`, `.spotify np`, `.spotify info` - Show information about the current track",
    "`.spotify list`, `.spotify help` - Show this command list",
    "`.spotify restart` - Log out of Spotify and back in",
    "`.spotify bitrate 128000` - Set the voice stream bitrate in bits/second (no value shows the current one)",
    "`.spotify exit` - Disconnect everything and shut the bot down",
])


def _is_link(text: str) -> bool:
    return text.startswith("http") or text.startswith("spotify:")


class SpotifyCommands(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def controller(self) -> "VoiceSessionController":
        return self.bot.voice_controller

    @property
    def spotify(self) -> "SpotifyClient":
        return self.bot.spotify

    async def cog_before_invoke(self, ctx: commands.Context) -> None:
        # Replies and async errors go to whichever channel issued the last command.
        self.controller.set_text_channel(ctx.channel)

    # ──────────────────────────────────────────────
    # VOICE
    # ──────────────────────────────────────────────

    @commands.command(name="join")
    async def join(self, ctx: commands.Context) -> None:
        voice = getattr(ctx.author, "voice", None)
        if not voice or not voice.channel:
            await ctx.send("You need to join a voice channel first!")
            return
        await self.controller.join(voice.channel)

    @commands.command(name="leave")
    async def leave(self, ctx: commands.Context) -> None:
        await self.controller.leave()

    @commands.command(name="bitrate")
    async def bitrate(self, ctx: commands.Context, value: Optional[str] = None) -> None:
        if value is None:
            await ctx.send(f"Current bitrate: {self.controller.session.bitrate} bps")
            return
        # TODO: reply with a usage hint once invalid values stop being ignored silently.
        await self.controller.set_bitrate(value)

    # ──────────────────────────────────────────────
    # PLAYBACK
    # ──────────────────────────────────────────────

    @commands.command(name="play")
    async def play(self, ctx: commands.Context, *, query: str = "") -> None:
        query = query.strip()
        if not query:
            self.spotify.fire(self.spotify.play())
        elif _is_link(query.split()[0]):
            self.spotify.fire(self.spotify.play_url(query.split()[0]))
        else:
            self.spotify.fire(self.spotify.search_and_play(query))

    @commands.command(name="pause")
    async def pause(self, ctx: commands.Context) -> None:
        self.spotify.fire(self.spotify.pause())

    @commands.command(name="previous")
    async def previous(self, ctx: commands.Context) -> None:
        self.spotify.fire(self.spotify.previous())

    @commands.command(name="next", aliases=["skip"])
    async def next_track(self, ctx: commands.Context) -> None:
        self.spotify.fire(self.spotify.next())

    @commands.command(name="radio")
    async def radio(self, ctx: commands.Context) -> None:
        self.spotify.fire(self.spotify.start_radio())

    @commands.command(name="nowplaying", aliases=["np", "info"])
    async def now_playing(self, ctx: commands.Context) -> None:
        try:
            info = await self.spotify.now_playing_info()
        except (SpotifyError, aiohttp.ClientError) as e:
            log.error("Now playing lookup failed: %s", e)
            await ctx.send(format_error_block("Error:", e))
            return
        await ctx.send(f"Now Playing: {info}")

    # ──────────────────────────────────────────────
    # BOT
    # ──────────────────────────────────────────────

    @commands.command(name="help", aliases=["list"])
    async def help_command(self, ctx: commands.Context) -> None:
        await ctx.send(HELP_TEXT)

    @commands.command(name="restart")
    async def restart(self, ctx: commands.Context) -> None:
        self.spotify.fire(self.spotify.restart())

    @commands.command(name="exit")
    async def exit_command(self, ctx: commands.Context) -> None:
        await ctx.send("Shutting down...")
        await self.bot.shutdown.wait("exit command")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(SpotifyCommands(bot))
