"""Silence-triggered call termination.

Samples the inbound audio level at a fixed tick cadence on the event loop
and fires a callback once the level has stayed below a threshold for a
continuous duration. Level-triggered: any tick above the threshold resets
the measurement, so steady background noise keeps the call alive.

Key features:
- Pure decision logic (SilenceDetector) replayable against synthetic traces
- Cooperative sampling via loop.call_later, no threads
- Fires exactly once per arming, then stops sampling
"""

import asyncio
import logging
import time
from collections.abc import Callable

from realtime_coach.config import SilenceConfig

logger = logging.getLogger(__name__)

LevelSource = Callable[[], float]
Clock = Callable[[], float]


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


class SilenceDetector:
    """Tracks continuous below-threshold time for a stream of level samples.

    Thread-safety: This class is NOT thread-safe. Use from a single thread.

    Example:
        ```python
        detector = SilenceDetector(threshold=10, duration_ms=2000)
        for ts, level in trace:
            if detector.update(level, ts):
                print("silence")
        ```
    """

    def __init__(self, threshold: float, duration_ms: float) -> None:
        self._threshold = threshold
        self._duration_ms = duration_ms
        self._silence_start_ms: float | None = None
        self._fired = False

    @property
    def silence_start_ms(self) -> float | None:
        """Timestamp the current silent stretch began, if any."""
        return self._silence_start_ms

    @property
    def fired(self) -> bool:
        """Whether sustained silence has been detected."""
        return self._fired

    def update(self, level: float, now_ms: float) -> bool:
        """Feed one level sample.

        Args:
            level: Instantaneous average energy
            now_ms: Sample timestamp in milliseconds

        Returns:
            True exactly once, on the sample that completes the silent duration
        """
        if self._fired:
            return False

        if level >= self._threshold:
            if self._silence_start_ms is not None:
                logger.debug(
                    f"Silence interrupted after {now_ms - self._silence_start_ms:.1f}ms "
                    f"(level={level:.1f})"
                )
            self._silence_start_ms = None
            return False

        if self._silence_start_ms is None:
            self._silence_start_ms = now_ms
            return False

        if now_ms - self._silence_start_ms >= self._duration_ms:
            self._fired = True
            return True

        return False

    def reset(self) -> None:
        """Clear silence tracking so the detector can be reused."""
        self._silence_start_ms = None
        self._fired = False


class SilenceTerminator:
    """Arms a SilenceDetector against a live level source.

    Each tick reads ``level_source()``, feeds the detector and reschedules
    itself one tick later, mirroring a per-frame animation loop.
    """

    def __init__(self, config: SilenceConfig, clock: Clock = monotonic_ms) -> None:
        """Initialize terminator.

        Args:
            config: Threshold, duration and tick cadence
            clock: Millisecond clock (injectable for tests)
        """
        self._config = config
        self._clock = clock
        self._detector = SilenceDetector(config.threshold, config.duration_ms)
        self._tick_interval_s = 1.0 / config.tick_hz
        self._handle: asyncio.TimerHandle | None = None
        self._level_source: LevelSource | None = None
        self._on_silence: Callable[[], None] | None = None
        self._ticks = 0

    @property
    def armed(self) -> bool:
        """Whether sampling is currently scheduled."""
        return self._handle is not None

    @property
    def ticks(self) -> int:
        """Number of samples taken since arming."""
        return self._ticks

    def arm(self, level_source: LevelSource, on_silence_detected: Callable[[], None]) -> None:
        """Begin sampling. Must be called from the event loop.

        Re-arming replaces any previous source and callback.
        """
        self.disarm()
        self._detector.reset()
        self._ticks = 0
        self._level_source = level_source
        self._on_silence = on_silence_detected

        logger.info(
            "Silence monitoring started",
            extra={
                "threshold": self._config.threshold,
                "duration_ms": self._config.duration_ms,
                "tick_hz": self._config.tick_hz,
            },
        )
        self._tick()

    def disarm(self) -> None:
        """Stop sampling without firing. Safe to call when not armed."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._level_source = None
        self._on_silence = None

    def _tick(self) -> None:
        self._handle = None
        if self._level_source is None:
            return

        self._ticks += 1
        level = self._level_source()
        if self._detector.update(level, self._clock()):
            callback = self._on_silence
            self.disarm()
            logger.info("Detected end of speech, ending call", extra={"ticks": self._ticks})
            if callback is not None:
                callback()
            return

        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._tick_interval_s, self._tick)
