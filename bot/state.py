"""
bot/state.py

Voice session record: the one voice channel, connection, capture handle
and bitrate the bot is managing. Owned and mutated only by the
VoiceSessionController in bot/voice.py.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

import discord

if TYPE_CHECKING:
    from bot.capture import AudioCaptureHandle

DEFAULT_BITRATE = int(os.getenv("DEFAULT_BITRATE", "320000"))   # bits/second


class SessionPhase(Enum):
    IDLE       = "idle"
    CONNECTING = "connecting"
    CONNECTED  = "connected"    # connection up, no capture attached
    STREAMING  = "streaming"


@dataclass
class VoiceSession:
    text_channel: Optional[discord.abc.Messageable] = None
    voice_channel: Optional[discord.abc.Connectable] = None
    voice_client: Optional[discord.VoiceClient] = None
    capture: Optional["AudioCaptureHandle"] = None
    bitrate: int = DEFAULT_BITRATE
    phase: SessionPhase = SessionPhase.IDLE
    # Bumped on every teardown / new join so late async completions can
    # tell that the session moved on without them.
    generation: int = 0

    @property
    def is_idle(self) -> bool:
        return self.phase is SessionPhase.IDLE and self.voice_client is None

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation

    def __repr__(self) -> str:
        channel = getattr(self.voice_channel, "name", None)
        return (f"VoiceSession(phase={self.phase.value}, channel={channel!r}, "
                f"bitrate={self.bitrate}, gen={self.generation})")
