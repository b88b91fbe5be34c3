"""
bot/events.py
Discord event handlers: on_ready, message logging, voice state changes
and command errors.
"""

from __future__ import annotations
import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from bot.voice import format_error_block
from spotify import SpotifyError

if TYPE_CHECKING:
    from bot.voice import VoiceSessionController

log = logging.getLogger("spotbot.events")


class SpotifyEvents(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def controller(self) -> "VoiceSessionController":
        return self.bot.voice_controller

    # ────────────────────────────────────────
    # on_ready
    # ────────────────────────────────────────

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        log.info("Logged in as %s (ID: %s)", self.bot.user, self.bot.user.id)

        # Voice clients the controller doesn't know about are leftovers
        # from a previous gateway session.
        for vc in self.bot.voice_clients:
            if vc is self.controller.session.voice_client:
                continue
            try:
                await vc.disconnect(force=True)
                log.info("Cleaned up zombie voice session in %s", vc.channel)
            except Exception as e:
                log.warning("Failed to clean up voice: %s", e)

        if self.bot.spotify.logged_in:
            return
        try:
            await self.bot.spotify.login()
        except SpotifyError as e:
            log.error("Spotify login failed: %s", e)

    # ────────────────────────────────────────
    # Messages
    # ────────────────────────────────────────

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        log.info("%s: %s (%s): %s",
                 getattr(message.channel, "name", "DM"),
                 message.author.name, message.author.id, message.content)

    # ────────────────────────────────────────
    # Voice state
    # ────────────────────────────────────────

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member,
                                    before: discord.VoiceState,
                                    after: discord.VoiceState) -> None:
        if self.bot.user is None or member.id != self.bot.user.id:
            return
        if before.channel is not None and after.channel is None:
            await self.controller.handle_connection_lost()

    # ────────────────────────────────────────
    # Command errors
    # ────────────────────────────────────────

    @commands.Cog.listener()
    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            await ctx.send(f"No such command: `{ctx.invoked_with}`")
            return

        original = getattr(error, "original", error)
        log.error("Command %s failed: %s", ctx.invoked_with, original,
                  exc_info=(type(original), original, original.__traceback__))
        try:
            await ctx.send(format_error_block("Error:", original))
        except discord.HTTPException as e:
            log.error("Failed to report command error: %s", e)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(SpotifyEvents(bot))
