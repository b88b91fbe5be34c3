"""
bot/voice.py
Voice session controller: joins/leaves voice channels and keeps exactly
one live capture stream attached to the connection, at the session's
bitrate. The single owner and mutator of the VoiceSession record.
"""

from __future__ import annotations
import asyncio
import logging
import re
import traceback
from typing import Callable, Optional

import discord

from bot.capture import AudioCaptureHandle, CaptureConfig, CaptureError
from bot.state import SessionPhase, VoiceSession

log = logging.getLogger("spotbot.voice")

MIN_KBPS = 16    # Opus encoder range accepted by discord.py
MAX_KBPS = 512
MAX_MESSAGE_LEN = 2000

_BITRATE_RE = re.compile(r"[0-9]+")

CaptureFactory = Callable[[CaptureConfig], AudioCaptureHandle]


def parse_bitrate(raw: Optional[str]) -> Optional[int]:
    """Positive integer bits/second, or None when ``raw`` isn't one."""
    if raw is None:
        return None
    raw = raw.strip()
    if not _BITRATE_RE.fullmatch(raw):
        return None
    value = int(raw)
    return value if value > 0 else None


def to_kbps(bitrate: int) -> int:
    return max(MIN_KBPS, min(MAX_KBPS, bitrate // 1000))


def format_error_block(title: str, error: BaseException) -> str:
    """Title line plus the traceback in a code block, trimmed to fit one message."""
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__)).strip()
    room = MAX_MESSAGE_LEN - len(title) - len("\n```\n\n```")
    if len(trace) > room:
        trace = trace[-room:]
    return "\n".join([title, "```", trace, "```"])


class VoiceSessionController:
    """Manages the bot's single voice connection and its capture stream."""

    def __init__(self,
                 session: Optional[VoiceSession] = None,
                 capture_config: Optional[CaptureConfig] = None,
                 capture_factory: CaptureFactory = AudioCaptureHandle.start):
        self.session = session or VoiceSession()
        self.capture_config = capture_config or CaptureConfig()
        self._capture_factory = capture_factory
        self._connect_task: Optional[asyncio.Task[bool]] = None
        self._background: set[asyncio.Task] = set()

    # ──────────────────────────────────────────
    # Reply channel
    # ──────────────────────────────────────────

    def set_text_channel(self, channel: Optional[discord.abc.Messageable]) -> None:
        self.session.text_channel = channel

    async def report(self, text: str) -> None:
        """Send ``text`` to the current reply channel, if there is one."""
        channel = self.session.text_channel
        if channel is None:
            log.warning("No text channel to report to: %s", text.splitlines()[0] if text else text)
            return
        try:
            await channel.send(text[:MAX_MESSAGE_LEN])
        except discord.HTTPException as e:
            log.error("Failed to send message to %s: %s", channel, e)

    # ──────────────────────────────────────────
    # Connection management
    # ──────────────────────────────────────────

    @property
    def connect_pending(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    async def join(self, channel: discord.abc.Connectable) -> bool:
        """
        Connect to ``channel`` and start streaming.

        Any existing connection is torn down first, and a join still in
        flight is cancelled. Returns True once the stream is running.
        """
        generation = await self._teardown()
        if generation != self.session.generation:
            # Another join or leave ran while the old connection was closing.
            log.info("Join to %s was superseded.", getattr(channel, "name", channel))
            return False

        self.session.voice_channel = channel
        self.session.phase = SessionPhase.CONNECTING

        task = asyncio.create_task(self._connect(channel, generation))
        self._connect_task = task
        await asyncio.wait({task})

        if task.cancelled():
            log.info("Join to %s was superseded.", getattr(channel, "name", channel))
            return False
        return task.result()

    async def _connect(self, channel: discord.abc.Connectable, generation: int) -> bool:
        name = getattr(channel, "name", channel)
        log.info("Connecting to voice channel: %s", name)
        try:
            vc = await channel.connect(reconnect=True)
        except asyncio.CancelledError:
            # discord.py may have registered a half-open client on the guild.
            stray = getattr(getattr(channel, "guild", None), "voice_client", None)
            if stray is not None and stray is not self.session.voice_client:
                await self._safe_disconnect(stray)
            raise
        except Exception as e:
            log.error("Failed to connect to voice channel %s: %s", name, e)
            if generation == self.session.generation:
                self.session.phase = SessionPhase.IDLE
                await self.report(format_error_block("Join error", e))
            return False

        if generation != self.session.generation:
            log.warning("Discarding stale connection to %s.", name)
            await self._safe_disconnect(vc)
            return False

        if self.session.voice_channel is None:
            log.error("Voice channel was cleared while connecting to %s.", name)
            await self._safe_disconnect(vc)
            self.session.phase = SessionPhase.IDLE
            await self.report("Configuration error: no voice channel set, dropped the new connection.")
            return False

        self.session.voice_client = vc
        self.session.phase = SessionPhase.CONNECTED
        log.info("Connected to voice channel: %s", name)
        return await self._attach_capture()

    async def leave(self) -> None:
        """Drop the stream and the connection. Safe to call when idle."""
        generation = await self._teardown()
        if generation == self.session.generation:
            self.session.voice_channel = None
        log.info("Left voice channel.")

    async def shutdown(self) -> None:
        log.info("Releasing voice session for shutdown: %r", self.session)
        await self.leave()

    async def handle_connection_lost(self) -> None:
        """Called when the bot's own voice state drops out of a channel."""
        vc = self.session.voice_client
        if vc is None or vc.is_connected():
            return

        log.warning("Voice connection lost: %r", self.session)
        self.session.next_generation()
        self._destroy_capture()
        self.session.voice_client = None
        self.session.phase = SessionPhase.IDLE
        await self._safe_disconnect(vc)
        await self.report("Lost the voice connection. Use `.spotify join` to reconnect.")

    async def _teardown(self) -> int:
        """Release the stream and connection; returns the generation it started."""
        generation = self.session.next_generation()

        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
            if generation != self.session.generation:
                return generation   # a newer join or leave owns the session now

        # Capture goes first so the player never reads from a dead pipe.
        self._destroy_capture()
        vc, self.session.voice_client = self.session.voice_client, None
        self.session.phase = SessionPhase.IDLE
        if vc is not None:
            await self._safe_disconnect(vc)
        return generation

    async def _safe_disconnect(self, vc: discord.VoiceClient) -> None:
        try:
            await vc.disconnect(force=True)
        except Exception as e:
            log.warning("Error while disconnecting voice client: %s", e)

    # ──────────────────────────────────────────
    # Streaming
    # ──────────────────────────────────────────

    async def start_streaming(self) -> bool:
        """(Re)start the capture stream on the current connection."""
        if self.session.voice_client is None:
            if self.connect_pending:
                task = self._connect_task
                await asyncio.wait({task})
                return not task.cancelled() and task.result()
            if self.session.voice_channel is None:
                await self.report("Not connected to a voice channel. Use `.spotify join` first.")
                return False
            return await self.join(self.session.voice_channel)
        return await self._attach_capture()

    async def _attach_capture(self) -> bool:
        vc = self.session.voice_client
        self._destroy_capture()

        try:
            handle = self._capture_factory(self.capture_config)
        except CaptureError as e:
            log.error("Capture failed to start: %s", e)
            self.session.phase = SessionPhase.CONNECTED
            await self.report(f"Audio capture error: {e}")
            return False

        kbps = to_kbps(self.session.bitrate)
        try:
            vc.play(handle.source,
                    after=self._make_after(handle, asyncio.get_running_loop()),
                    bitrate=kbps)
        except discord.DiscordException as e:
            log.error("Could not start playback: %s", e)
            handle.destroy()
            self.session.phase = SessionPhase.CONNECTED
            await self.report(f"Audio capture error: {e}")
            return False

        self.session.capture = handle
        self.session.phase = SessionPhase.STREAMING
        log.info("Streaming capture at %d bps (%d kbps).", self.session.bitrate, kbps)
        return True

    def _destroy_capture(self) -> None:
        handle, self.session.capture = self.session.capture, None
        vc = self.session.voice_client
        if vc is not None and (vc.is_playing() or vc.is_paused()):
            vc.stop()
        if handle is not None:
            handle.destroy()
        if self.session.phase is SessionPhase.STREAMING:
            self.session.phase = SessionPhase.CONNECTED

    def _make_after(self, handle: AudioCaptureHandle,
                    loop: asyncio.AbstractEventLoop) -> Callable[[Optional[Exception]], None]:
        # Runs on discord.py's player thread.
        def after(error: Optional[Exception]) -> None:
            loop.call_soon_threadsafe(self._on_stream_end, handle, error)
        return after

    def _on_stream_end(self, handle: AudioCaptureHandle, error: Optional[Exception]) -> None:
        if self.session.capture is not handle:
            return   # replaced or torn down on purpose

        if error:
            log.error("Capture stream ended with error: %s", error)
        else:
            log.warning("Capture stream ended unexpectedly.")
        self.session.capture = None
        handle.destroy()
        if self.session.phase is SessionPhase.STREAMING:
            self.session.phase = SessionPhase.CONNECTED

        reason = str(error) if error else "capture process exited"
        self._spawn(self.report(f"Audio stream stopped: {reason}. Use `.spotify bitrate` or `.spotify join` to restart."))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ──────────────────────────────────────────
    # Bitrate
    # ──────────────────────────────────────────

    async def set_bitrate(self, raw: Optional[str]) -> Optional[int]:
        """
        Apply a new bitrate and restart the stream with it.
        Invalid input is ignored; returns the applied value or None.
        """
        value = parse_bitrate(raw)
        if value is None:
            log.warning("Ignoring invalid bitrate value: %r", raw)
            return None

        self.session.bitrate = value
        log.info("Bitrate set to %d bps.", value)
        await self.report(f"Bitrate set to {value} bps")
        await self.start_streaming()
        return value
