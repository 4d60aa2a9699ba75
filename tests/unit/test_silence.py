"""Unit tests for silence detection and the silence terminator.

Replays synthetic level traces against the detector and drives the
terminator with a manual clock.
"""

import asyncio

from realtime_coach.config import SilenceConfig
from realtime_coach.silence import SilenceDetector, SilenceTerminator
from tests.helpers.protocol_test_utils import ManualClock

TICK_MS = 1000.0 / 60.0


def replay(detector: SilenceDetector, trace: list[tuple[float, float]]) -> list[float]:
    """Feed (timestamp_ms, level) samples; return timestamps where it fired."""
    return [ts for ts, level in trace if detector.update(level, ts)]


def constant_trace(level: float, start_ms: float, end_ms: float) -> list[tuple[float, float]]:
    samples = []
    ts = start_ms
    while ts <= end_ms:
        samples.append((ts, level))
        ts += TICK_MS
    return samples


class TestSilenceDetector:
    """Test the pure silence decision logic."""

    def test_fires_once_after_duration(self) -> None:
        """Test 2000ms of continuous silence fires exactly once."""
        detector = SilenceDetector(threshold=10, duration_ms=2000)

        fired = replay(detector, constant_trace(0.0, 0.0, 5000.0))

        assert len(fired) == 1
        assert 2000.0 <= fired[0] < 2000.0 + 2 * TICK_MS
        assert detector.fired

    def test_fires_exactly_at_duration(self) -> None:
        """Test the boundary is inclusive."""
        detector = SilenceDetector(threshold=10, duration_ms=2000)

        assert detector.update(0.0, 100.0) is False
        assert detector.update(0.0, 2099.0) is False
        assert detector.update(0.0, 2100.0) is True

    def test_dip_shorter_than_duration_does_not_fire(self) -> None:
        """Test 1900ms of silence followed by speech does not fire."""
        detector = SilenceDetector(threshold=10, duration_ms=2000)

        trace = constant_trace(50.0, 0.0, 500.0)
        trace += constant_trace(3.0, 500.0 + TICK_MS, 2400.0)
        trace += constant_trace(40.0, 2400.0 + TICK_MS, 3000.0)

        assert replay(detector, trace) == []
        assert detector.silence_start_ms is None

    def test_speech_resets_measurement(self) -> None:
        """Test the silent stretch restarts after a loud sample."""
        detector = SilenceDetector(threshold=10, duration_ms=2000)

        detector.update(0.0, 0.0)
        detector.update(0.0, 1500.0)
        detector.update(10.0, 1600.0)  # At threshold counts as sound
        assert detector.silence_start_ms is None

        detector.update(0.0, 1700.0)
        assert detector.update(0.0, 3600.0) is False
        assert detector.update(0.0, 3700.0) is True

    def test_steady_noise_never_fires(self) -> None:
        detector = SilenceDetector(threshold=10, duration_ms=2000)
        assert replay(detector, constant_trace(12.0, 0.0, 10000.0)) == []

    def test_reset_allows_reuse(self) -> None:
        detector = SilenceDetector(threshold=10, duration_ms=100)
        replay(detector, constant_trace(0.0, 0.0, 200.0))
        assert detector.fired

        detector.reset()

        assert not detector.fired
        assert detector.silence_start_ms is None


class TestSilenceTerminator:
    """Test the loop-driven terminator."""

    async def test_fires_callback_once_and_disarms(self) -> None:
        """Test the callback runs once silence is sustained."""
        clock = ManualClock()
        terminator = SilenceTerminator(SilenceConfig(tick_hz=1000.0), clock=clock)
        calls: list[int] = []

        def level() -> float:
            clock.advance(100.0)
            return 0.0

        terminator.arm(level, lambda: calls.append(terminator.ticks))

        for _ in range(500):
            if calls:
                break
            await asyncio.sleep(0.002)

        assert len(calls) == 1
        assert not terminator.armed
        # First sample starts the stretch; 20 more reach 2000ms
        assert terminator.ticks == 21

    async def test_disarm_prevents_callback(self) -> None:
        """Test disarming stops sampling without firing."""
        clock = ManualClock()
        terminator = SilenceTerminator(SilenceConfig(tick_hz=1000.0), clock=clock)
        calls: list[str] = []

        terminator.arm(lambda: 0.0, lambda: calls.append("fired"))
        assert terminator.armed

        terminator.disarm()
        clock.advance(5000.0)
        await asyncio.sleep(0.01)

        assert calls == []
        assert not terminator.armed

    async def test_loud_audio_keeps_sampling(self) -> None:
        """Test sampling continues while audio stays above threshold."""
        clock = ManualClock()
        terminator = SilenceTerminator(SilenceConfig(tick_hz=1000.0), clock=clock)
        calls: list[str] = []

        def level() -> float:
            clock.advance(500.0)
            return 80.0

        terminator.arm(level, lambda: calls.append("fired"))
        await asyncio.sleep(0.02)

        assert calls == []
        assert terminator.armed
        assert terminator.ticks > 1

        terminator.disarm()

    async def test_rearm_resets_detector(self) -> None:
        """Test arming again starts a fresh measurement."""
        clock = ManualClock()
        terminator = SilenceTerminator(SilenceConfig(), clock=clock)

        terminator.arm(lambda: 0.0, lambda: None)
        clock.advance(1900.0)
        terminator.arm(lambda: 0.0, lambda: None)

        assert terminator.ticks == 1
        terminator.disarm()
