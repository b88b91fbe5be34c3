"""
Unit tests for the ffmpeg capture handle.
"""

import pytest
from unittest.mock import MagicMock, patch

import discord

from bot.capture import AudioCaptureHandle, CaptureConfig, CaptureError


@pytest.fixture
def ffmpeg():
    source = MagicMock(spec=discord.FFmpegPCMAudio)
    source.read.return_value = b"\x00" * 3840
    with patch("bot.capture.discord.FFmpegPCMAudio") as cls:
        cls.return_value = source
        yield cls


@pytest.fixture
def config():
    return CaptureConfig(device="hw:Loopback,1,0", input_format="alsa", executable="ffmpeg")


class TestCaptureConfig:

    def test_fixed_pcm_parameters(self, config):
        assert config.sample_format == "s16le"
        assert config.sample_rate == 48000
        assert config.channels == 2
        assert config.options == "-f s16le -ar 48000 -ac 2"

    def test_before_options_use_input_format(self):
        cfg = CaptureConfig(device="default", input_format="pulse")
        assert cfg.before_options == "-analyzeduration 0 -loglevel 0 -f pulse"


class TestAudioCaptureHandle:

    def test_start_spawns_ffmpeg_on_device(self, ffmpeg, config):
        handle = AudioCaptureHandle.start(config)

        ffmpeg.assert_called_once_with(
            "hw:Loopback,1,0",
            executable="ffmpeg",
            before_options="-analyzeduration 0 -loglevel 0 -f alsa",
            options="-f s16le -ar 48000 -ac 2",
        )
        assert handle.is_running
        assert handle.source is ffmpeg.return_value
        assert len(handle.source.read()) == 3840

    def test_start_without_device_fails(self, ffmpeg):
        with pytest.raises(CaptureError, match="ALSA_DEVICE"):
            AudioCaptureHandle.start(CaptureConfig(device=""))
        ffmpeg.assert_not_called()

    def test_spawn_failure_is_surfaced(self, ffmpeg, config):
        ffmpeg.side_effect = discord.ClientException("ffmpeg was not found.")

        with pytest.raises(CaptureError, match="ffmpeg was not found"):
            AudioCaptureHandle.start(config)

    @pytest.mark.parametrize("error", [
        PermissionError(13, "Permission denied"),
        OSError(8, "Exec format error"),
    ])
    def test_spawn_os_error_is_surfaced(self, ffmpeg, config, error):
        ffmpeg.side_effect = error

        with pytest.raises(CaptureError, match="Could not start ffmpeg"):
            AudioCaptureHandle.start(config)

    def test_destroy_kills_process_once(self, ffmpeg, config):
        handle = AudioCaptureHandle.start(config)

        handle.destroy()
        handle.destroy()

        ffmpeg.return_value.cleanup.assert_called_once()
        assert not handle.is_running
        with pytest.raises(CaptureError):
            handle.source

    def test_destroy_after_process_died(self, ffmpeg, config):
        handle = AudioCaptureHandle.start(config)
        ffmpeg.return_value.cleanup.side_effect = ProcessLookupError()

        handle.destroy()

        assert not handle.is_running

    def test_destroy_unstarted_handle(self, config):
        handle = AudioCaptureHandle(config)
        handle.destroy()
        assert not handle.is_running

