"""Frequency-domain audio level analysis.

Reproduces the byte-scaled frequency magnitudes a browser AnalyserNode
reports (Blackman window, optional temporal smoothing, decibel range
mapped onto 0-255) so silence thresholds carry over unchanged.

Key features:
- Rolling window of the most recent fft_size mono samples
- average_level() returns the mean of the byte-scaled bins
- AudioLevelPump feeds the analyser from a live aiortc audio track
"""

import asyncio
import logging

import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack
from av import AudioFrame
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# AnalyserNode defaults
DEFAULT_MIN_DECIBELS = -100.0
DEFAULT_MAX_DECIBELS = -30.0
DEFAULT_SMOOTHING = 0.8


class FrequencyLevelAnalyser:
    """Rolling FFT analyser over mono float samples in [-1, 1].

    Thread-safety: This class is NOT thread-safe. Use from a single thread.

    Example:
        ```python
        analyser = FrequencyLevelAnalyser(fft_size=256)
        analyser.push_samples(samples)
        level = analyser.average_level()  # 0.0 (silent) .. 255.0
        ```
    """

    def __init__(
        self,
        fft_size: int = 256,
        smoothing: float = DEFAULT_SMOOTHING,
        min_decibels: float = DEFAULT_MIN_DECIBELS,
        max_decibels: float = DEFAULT_MAX_DECIBELS,
    ) -> None:
        """Initialize analyser.

        Args:
            fft_size: Window size in samples (power of two)
            smoothing: Temporal smoothing between successive readings (0 disables)
            min_decibels: Level mapped to byte value 0
            max_decibels: Level mapped to byte value 255

        Raises:
            ValueError: If parameters are out of range
        """
        if fft_size < 32 or fft_size & (fft_size - 1) != 0:
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")
        if min_decibels >= max_decibels:
            raise ValueError(
                f"min_decibels must be below max_decibels: {min_decibels} >= {max_decibels}"
            )

        self._fft_size = fft_size
        self._smoothing = smoothing
        self._min_db = min_decibels
        self._max_db = max_decibels
        self._window = np.blackman(fft_size).astype(np.float64)
        self._samples: NDArray[np.float64] = np.zeros(fft_size, dtype=np.float64)
        self._previous: NDArray[np.float64] = np.zeros(fft_size // 2, dtype=np.float64)
        self._samples_seen = 0

    @property
    def frequency_bin_count(self) -> int:
        """Number of frequency bins (half the FFT size)."""
        return self._fft_size // 2

    @property
    def samples_seen(self) -> int:
        """Total samples pushed since creation or reset."""
        return self._samples_seen

    def push_samples(self, samples: NDArray[np.floating]) -> None:
        """Append mono samples, keeping only the most recent window.

        Args:
            samples: 1-D float samples in [-1, 1]
        """
        samples = np.asarray(samples, dtype=np.float64).ravel()
        if samples.size == 0:
            return

        self._samples_seen += samples.size
        if samples.size >= self._fft_size:
            self._samples = samples[-self._fft_size :].copy()
        else:
            self._samples = np.concatenate((self._samples[samples.size :], samples))

    def byte_frequency_data(self) -> NDArray[np.uint8]:
        """Compute byte-scaled magnitudes for the current window."""
        spectrum = np.fft.rfft(self._samples * self._window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self._fft_size

        if self._smoothing > 0.0:
            magnitude = self._smoothing * self._previous + (1.0 - self._smoothing) * magnitude
        self._previous = magnitude

        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(magnitude)

        scaled = 255.0 * (decibels - self._min_db) / (self._max_db - self._min_db)
        scaled = np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0)
        return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)

    def average_level(self) -> float:
        """Average of the byte-scaled frequency bins (0-255)."""
        return float(self.byte_frequency_data().mean())

    def reset(self) -> None:
        """Clear the sample window and smoothing history."""
        self._samples[:] = 0.0
        self._previous[:] = 0.0
        self._samples_seen = 0


def frame_to_mono(frame: AudioFrame) -> NDArray[np.float64]:
    """Convert an av.AudioFrame to mono float samples in [-1, 1].

    Takes the first channel of packed or planar frames.
    """
    data = frame.to_ndarray()
    channels = len(frame.layout.channels) or 1

    if frame.format.is_planar:
        mono = data[0]
    else:
        mono = data.reshape(-1, channels)[:, 0]

    if np.issubdtype(mono.dtype, np.integer):
        scale = float(np.iinfo(mono.dtype).max) + 1.0
        return mono.astype(np.float64) / scale
    return mono.astype(np.float64)


class AudioLevelPump:
    """Feeds a FrequencyLevelAnalyser from a live audio track.

    Runs as a task on the event loop, receiving frames until the track
    ends or the pump is stopped.
    """

    def __init__(self, track: MediaStreamTrack, analyser: FrequencyLevelAnalyser) -> None:
        self._track = track
        self._analyser = analyser
        self._task: asyncio.Task[None] | None = None
        self._frames = 0

    @property
    def analyser(self) -> FrequencyLevelAnalyser:
        return self._analyser

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def frames_received(self) -> int:
        return self._frames

    def start(self) -> None:
        """Start consuming frames. Must be called from the event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="audio-level-pump")

    def stop(self) -> None:
        """Stop consuming frames. Safe to call when not running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        try:
            while True:
                frame = await self._track.recv()
                self._analyser.push_samples(frame_to_mono(frame))
                self._frames += 1
        except MediaStreamError:
            logger.info("Remote audio track ended", extra={"frames": self._frames})
        except asyncio.CancelledError:
            pass
