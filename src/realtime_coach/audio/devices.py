"""Local audio devices: microphone capture and remote voice playback.

Both wrap aiortc's FFmpeg-backed media helpers so the peer connection can
consume and produce standard MediaStreamTracks.
"""

import logging
from typing import Protocol

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamTrack

from realtime_coach.config import AudioConfig
from realtime_coach.errors import MicrophoneDenied

logger = logging.getLogger(__name__)


class AudioCapture(Protocol):
    """One opened capture stream. Closing it releases only this stream."""

    @property
    def track(self) -> MediaStreamTrack: ...

    def close(self) -> None: ...


class AudioInput(Protocol):
    """Source of the local audio tracks sent to the remote peer."""

    def open(self) -> AudioCapture:
        """Open a new capture stream.

        Each call returns an independent capture owned by the caller.

        Raises:
            MicrophoneDenied: If the input cannot be opened
        """
        ...


class MicrophoneCapture:
    """A single FFmpeg microphone stream."""

    def __init__(self, player: MediaPlayer, device: str) -> None:
        self._player: MediaPlayer | None = player
        self._device = device
        self._track: MediaStreamTrack = player.audio

    @property
    def track(self) -> MediaStreamTrack:
        return self._track

    @property
    def closed(self) -> bool:
        return self._player is None

    def close(self) -> None:
        """Stop this capture's track. Safe to call repeatedly."""
        if self._player is None:
            return
        self._player = None
        self._track.stop()
        logger.debug("Microphone capture closed", extra={"device": self._device})


class Microphone:
    """Microphone input opened through FFmpeg (pulse, alsa, avfoundation, dshow)."""

    def __init__(self, device: str, fmt: str | None = None) -> None:
        """Initialize microphone.

        Args:
            device: FFmpeg input device name (e.g. "default", ":0")
            fmt: FFmpeg input format (e.g. "pulse", "avfoundation")
        """
        self._device = device
        self._format = fmt

    @classmethod
    def from_config(cls, config: AudioConfig) -> "Microphone":
        return cls(config.mic_device, config.mic_format)

    def open(self) -> MicrophoneCapture:
        """Open a new microphone stream.

        Raises:
            MicrophoneDenied: If the device cannot be opened or has no audio
        """
        try:
            player = MediaPlayer(self._device, format=self._format)
        except Exception as e:
            # FFmpeg surfaces permission and missing-device errors alike
            logger.error(
                "Failed to open microphone",
                extra={"device": self._device, "format": self._format, "error": str(e)},
            )
            raise MicrophoneDenied(f"Microphone access denied ({self._device}): {e}") from e

        if player.audio is None:
            raise MicrophoneDenied(f"Input device {self._device} has no audio stream")

        logger.info("Microphone opened", extra={"device": self._device, "format": self._format})
        return MicrophoneCapture(player, self._device)


class RemoteAudioSink:
    """Plays the remote voice on a local output, or discards it.

    Uses MediaRecorder for a configured output device, MediaBlackhole
    otherwise (the track must still be consumed for the connection to flow).
    Each peer session gets its own sink.
    """

    def __init__(self, device: str | None = None, fmt: str | None = None) -> None:
        self._device = device
        self._format = fmt
        self._sink: MediaRecorder | MediaBlackhole | None = None

    @classmethod
    def from_config(cls, config: AudioConfig) -> "RemoteAudioSink":
        return cls(config.playback_device, config.playback_format)

    @property
    def active(self) -> bool:
        return self._sink is not None

    async def start(self, track: MediaStreamTrack) -> None:
        """Start consuming the remote audio track."""
        if self._sink is not None:
            return

        if self._device is not None:
            sink: MediaRecorder | MediaBlackhole = MediaRecorder(self._device, format=self._format)
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        await sink.start()
        self._sink = sink

        logger.info(
            "Remote audio playback started",
            extra={"device": self._device or "blackhole", "format": self._format},
        )

    async def stop(self) -> None:
        """Stop playback. Safe to call when not started."""
        sink, self._sink = self._sink, None
        if sink is not None:
            await sink.stop()
