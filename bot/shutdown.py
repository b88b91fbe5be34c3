"""
bot/shutdown.py
Orderly teardown on SIGINT/SIGTERM or the `exit` command: stream and
voice connection first, then the Spotify session, then the Discord
gateway. Runs at most once no matter how many signals arrive.
"""

from __future__ import annotations
import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from bot.voice import VoiceSessionController
    from spotify import SpotifyClient

log = logging.getLogger("spotbot.shutdown")

SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    def __init__(self,
                 controller: "VoiceSessionController",
                 spotify: Optional["SpotifyClient"],
                 release_client: Callable[[], Awaitable[None]]):
        self.controller = controller
        self.spotify = spotify
        self._release_client = release_client
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Route termination signals into ``request``. False if the platform can't."""
        loop = loop or asyncio.get_running_loop()
        try:
            for sig in SIGNALS:
                loop.add_signal_handler(sig, self.request, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops; main() falls back to KeyboardInterrupt.
            log.debug("Signal handlers not supported on this platform.")
            return False
        log.debug("Installed shutdown handlers for %s.", ", ".join(s.name for s in SIGNALS))
        return True

    def request(self, reason: str = "requested") -> asyncio.Task[None]:
        """Start the shutdown sequence, or return the one already running."""
        if self._task is None:
            log.info("Shutdown requested (%s).", reason)
            self._task = asyncio.get_running_loop().create_task(self._run())
        else:
            log.debug("Shutdown already in progress; ignoring %s.", reason)
        return self._task

    async def wait(self, reason: str = "requested") -> None:
        await asyncio.shield(self.request(reason))

    async def _run(self) -> None:
        try:
            await self.controller.shutdown()
        except Exception:
            log.exception("Error releasing the voice session.")

        if self.spotify is not None:
            try:
                await self.spotify.logout()
            except Exception:
                log.exception("Error logging out of Spotify.")

        try:
            await self._release_client()
        except Exception:
            log.exception("Error closing the Discord client.")

        log.info("Shutdown complete.")
