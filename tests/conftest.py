"""
Pytest configuration and shared fixtures for the Spotify voice bot tests.

Discord objects are MagicMocks; the capture subprocess is replaced by
FakeCapture so no ffmpeg process is ever spawned.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

import discord

from bot.capture import CaptureConfig, CaptureError
from bot.state import VoiceSession
from bot.voice import VoiceSessionController


class FakeCapture:
    """Stands in for AudioCaptureHandle; records its lifecycle into ``events``."""

    def __init__(self, config, events):
        self.config = config
        self.events = events
        self.source = MagicMock(spec=discord.AudioSource)
        self.destroyed = False
        self.destroy_calls = 0

    @property
    def is_running(self):
        return not self.destroyed

    def destroy(self):
        self.destroy_calls += 1
        if not self.destroyed:
            self.destroyed = True
            self.events.append("capture.destroy")


class CaptureFactory:
    def __init__(self, events):
        self.events = events
        self.handles = []
        self.fail_with = None

    def __call__(self, config):
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeCapture(config, self.events)
        self.handles.append(handle)
        self.events.append("capture.start")
        return handle

    @property
    def live(self):
        return [h for h in self.handles if not h.destroyed]


async def settle(ticks: int = 5) -> None:
    """Let scheduled tasks and call_soon callbacks run."""
    for _ in range(ticks):
        await asyncio.sleep(0)


@pytest.fixture
def events():
    return []


@pytest.fixture
def capture_factory(events):
    return CaptureFactory(events)


@pytest.fixture
def make_voice_client(events):
    def _make(name="vc"):
        vc = MagicMock(spec=discord.VoiceClient)
        vc.name = name
        vc.is_connected.return_value = True
        vc.is_playing.return_value = False
        vc.is_paused.return_value = False

        async def disconnect(force=False):
            events.append(f"{name}.disconnect")
            vc.is_connected.return_value = False

        vc.disconnect = AsyncMock(side_effect=disconnect)
        return vc
    return _make


@pytest.fixture
def make_voice_channel(events):
    def _make(name="General", voice_client=None, error=None):
        channel = MagicMock(spec=discord.VoiceChannel)
        channel.name = name
        channel.guild = MagicMock()
        channel.guild.voice_client = None

        async def connect(**kwargs):
            events.append(f"{name}.connect")
            if error is not None:
                raise error
            return voice_client

        channel.connect = AsyncMock(side_effect=connect)
        return channel
    return _make


@pytest.fixture
def text_channel():
    channel = MagicMock(spec=discord.TextChannel)
    channel.name = "music"
    channel.send = AsyncMock()
    return channel


@pytest.fixture
def controller(capture_factory, text_channel):
    ctrl = VoiceSessionController(
        session=VoiceSession(),
        capture_config=CaptureConfig(device="hw:Loopback,1,0"),
        capture_factory=capture_factory,
    )
    ctrl.set_text_channel(text_channel)
    return ctrl


@pytest.fixture
def capture_error():
    return CaptureError("No audio input device configured (set ALSA_DEVICE).")


def sent_messages(channel):
    return [c.args[0] for c in channel.send.await_args_list]
