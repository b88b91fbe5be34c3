"""
bot/capture.py
Live audio capture: one ffmpeg subprocess reading the configured input
device and producing raw PCM (s16le, 48 kHz, stereo) for the voice client.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Optional

import discord

log = logging.getLogger("spotbot.capture")

ALSA_DEVICE   = os.getenv("ALSA_DEVICE", "")
INPUT_FORMAT  = os.getenv("CAPTURE_INPUT_FORMAT", "alsa")   # alsa, pulse, avfoundation...
FFMPEG_PATH   = os.getenv("FFMPEG_PATH", "ffmpeg")  # Path to ffmpeg, or "ffmpeg" to use PATH

# Fixed by the Discord voice pipeline, not configurable.
SAMPLE_FORMAT = "s16le"
SAMPLE_RATE   = 48000
CHANNELS      = 2


class CaptureError(Exception):
    """The capture subprocess could not be started."""


@dataclass(frozen=True)
class CaptureConfig:
    device: str = ALSA_DEVICE
    input_format: str = INPUT_FORMAT
    executable: str = FFMPEG_PATH
    sample_format: str = SAMPLE_FORMAT
    sample_rate: int = SAMPLE_RATE
    channels: int = CHANNELS

    @property
    def before_options(self) -> str:
        return f"-analyzeduration 0 -loglevel 0 -f {self.input_format}"

    @property
    def options(self) -> str:
        return f"-f {self.sample_format} -ar {self.sample_rate} -ac {self.channels}"


class AudioCaptureHandle:
    """
    Owns exactly one ffmpeg capture process.

    The handle is single-use: once destroyed it cannot be restarted, the
    controller creates a fresh one instead.
    """

    def __init__(self, config: CaptureConfig):
        self.config = config
        self._source: Optional[discord.FFmpegPCMAudio] = None
        self._destroyed = False

    @classmethod
    def start(cls, config: CaptureConfig) -> "AudioCaptureHandle":
        handle = cls(config)
        handle._spawn()
        return handle

    def _spawn(self) -> None:
        if self._destroyed:
            raise CaptureError("Capture handle was already destroyed.")
        if not self.config.device:
            raise CaptureError("No audio input device configured (set ALSA_DEVICE).")

        try:
            self._source = discord.FFmpegPCMAudio(
                self.config.device,
                executable=self.config.executable,
                before_options=self.config.before_options,
                options=self.config.options,
            )
        except (discord.ClientException, OSError) as e:
            raise CaptureError(f"Could not start {self.config.executable}: {e}") from e

        log.info("Capture started: %s (%s) → %s/%d Hz/%dch",
                 self.config.device, self.config.input_format,
                 self.config.sample_format, self.config.sample_rate, self.config.channels)

    @property
    def source(self) -> discord.AudioSource:
        """The PCM byte stream, as a discord.py audio source."""
        if self._source is None or self._destroyed:
            raise CaptureError("Capture handle is not running.")
        return self._source

    @property
    def is_running(self) -> bool:
        return self._source is not None and not self._destroyed

    def destroy(self) -> None:
        """Kill the capture process. Safe to call repeatedly."""
        if self._destroyed:
            return
        self._destroyed = True
        source, self._source = self._source, None
        if source is None:
            return
        try:
            source.cleanup()
        except Exception as e:
            # Process may already be gone (device error); nothing left to release.
            log.warning("Error while stopping capture process: %s", e)
        log.info("Capture stopped: %s", self.config.device)
