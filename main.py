"""
main.py
Entry point for the Spotify voice bot.
Runs the Discord bot that streams the Spotify device's captured audio
into a voice channel, and tears everything down cleanly on exit.
"""

from __future__ import annotations
import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv

# ──────────────────────────────────────────────
# Environment
# ──────────────────────────────────────────────
load_dotenv()

DISCORD_TOKEN  = os.getenv("DISCORD_BOT_TOKEN", "")
COMMAND_PREFIX = os.getenv("COMMAND_PREFIX", ".spotify ")
LOG_LEVEL      = os.getenv("LOG_LEVEL", "INFO").upper()

# ──────────────────────────────────────────────
# Logging setup
# ──────────────────────────────────────────────
Path("logs").mkdir(exist_ok=True)

log_formatter = logging.Formatter(
    "[%(asctime)s] [%(levelname)-8s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

# Console handler
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(log_formatter)
root_logger.addHandler(console_handler)

# Rotating file handler
file_handler = logging.handlers.RotatingFileHandler(
    "logs/spotify_bot.log",
    maxBytes=5_000_000,   # 5 MB
    backupCount=3,
    encoding="utf-8",
)
file_handler.setFormatter(log_formatter)
root_logger.addHandler(file_handler)

log = logging.getLogger("spotbot.main")

# ──────────────────────────────────────────────
# Bot subclass
# ──────────────────────────────────────────────

class SpotifyBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content  = True
        intents.members           = True
        intents.voice_states      = True
        super().__init__(command_prefix=COMMAND_PREFIX, intents=intents, help_command=None)

        # Imported here so module-level env lookups see the loaded .env
        from bot.voice import VoiceSessionController
        from bot.shutdown import ShutdownCoordinator
        from spotify import SpotifyClient

        self.voice_controller = VoiceSessionController()
        self.spotify = SpotifyClient(on_error=self._on_spotify_error)
        self.shutdown = ShutdownCoordinator(self.voice_controller, self.spotify, self._release_gateway)

    async def setup_hook(self) -> None:
        """Called once after login, before starting the bot's event loop."""
        for ext in ("bot.commands", "bot.events"):
            await self._load_ext(ext)

        self.shutdown.install()
        log.info("Setup complete. Bot ready.")

    async def _load_ext(self, module: str) -> None:
        """Load a cog from its module, with error logging."""
        try:
            await self.load_extension(module)
            log.info("Loaded extension: %s", module)
        except Exception as e:
            log.exception("Failed to load extension %s: %s", module, e)

    async def _on_spotify_error(self, error: Exception) -> None:
        from bot.voice import format_error_block
        await self.voice_controller.report(format_error_block("Error:", error))

    async def close(self) -> None:
        # Every exit path runs the same teardown sequence.
        await self.shutdown.wait("client close")

    async def _release_gateway(self) -> None:
        log.info("Closing Discord connection...")
        await super().close()


# ──────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────

def main() -> None:
    if not DISCORD_TOKEN:
        log.error("DISCORD_BOT_TOKEN is not set in .env, cannot start.")
        sys.exit(1)

    bot = SpotifyBot()

    try:
        asyncio.run(bot.start(DISCORD_TOKEN))
    except KeyboardInterrupt:
        log.info("Bot interrupted by user.")
    except discord.LoginFailure as e:
        log.error("Discord login failed: %s", e)
        sys.exit(1)
    except Exception as e:
        log.exception("Unexpected error: %s", e)
        sys.exit(1)
    log.info("Bot stopped.")


if __name__ == "__main__":
    main()
