"""Unit tests for the tool result cache.

Tests last-write-wins semantics, background persistence and reading
results written by an earlier cache instance.
"""

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from realtime_coach.cache import ToolResultCache
from realtime_coach.engine import utc_timestamp


class TestRecordAndRead:
    """Test in-memory record/read_last behavior."""

    async def test_round_trip_returns_exact_payload(self, cache: ToolResultCache) -> None:
        """Test the recorded payload is returned unchanged."""
        before = datetime.now(timezone.utc)
        payload = {"timestamp": utc_timestamp(), "feedback": {"user_feedback": "too hard"}}

        cache.record("lastReviewPlan", payload)
        result = cache.read_last("lastReviewPlan")

        assert result == payload
        written = datetime.fromisoformat(result["timestamp"].replace("Z", "+00:00"))
        assert written >= before.replace(microsecond=before.microsecond // 1000 * 1000)

    async def test_last_write_wins(self, cache: ToolResultCache) -> None:
        """Test a second record replaces the first."""
        cache.record("lastPlanConfirmation", {"timestamp": "t1", "summary": "old"})
        cache.record("lastPlanConfirmation", {"timestamp": "t2", "summary": "new"})

        assert cache.read_last("lastPlanConfirmation") == {"timestamp": "t2", "summary": "new"}

    def test_read_missing_key(self, cache: ToolResultCache) -> None:
        assert cache.read_last("lastReviewPlan") is None

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", "a\\b", ".hidden"])
    def test_rejects_unsafe_keys(self, cache: ToolResultCache, key: str) -> None:
        """Test keys must be plain file stems."""
        with pytest.raises(ValueError, match="Invalid cache key"):
            cache.record(key, {})


class TestPersistence:
    """Test durable storage on disk."""

    async def test_flush_persists_json_file(self, cache: ToolResultCache, cache_dir: Path) -> None:
        """Test background writes land in <dir>/<key>.json."""
        payload = {"timestamp": "2024-12-17T10:00:00.000Z", "exercises": [{"name": "run"}]}

        cache.record("lastExerciseAdjustment", payload)
        await cache.flush()

        path = cache_dir / "lastExerciseAdjustment.json"
        assert json.loads(path.read_text(encoding="utf-8")) == payload
        assert not list(cache_dir.glob("*.tmp"))

    async def test_slow_earlier_write_does_not_overwrite_newer(
        self, cache: ToolResultCache, cache_dir: Path
    ) -> None:
        """Test rapid writes of one key land on disk in record order."""
        write_file = cache._write_file
        order: list[int] = []

        def delayed_write(key: str, payload: dict) -> None:
            if payload["n"] == 0:
                time.sleep(0.05)
            write_file(key, payload)
            order.append(payload["n"])

        with patch.object(cache, "_write_file", side_effect=delayed_write):
            cache.record("lastReviewPlan", {"n": 0})
            cache.record("lastReviewPlan", {"n": 1})
            await cache.flush()

        assert order == [0, 1]
        assert json.loads((cache_dir / "lastReviewPlan.json").read_text(encoding="utf-8")) == {"n": 1}

    async def test_new_instance_reads_previous_results(self, cache: ToolResultCache, cache_dir: Path) -> None:
        """Test results survive across cache instances."""
        cache.record("lastReviewPlan", {"timestamp": "t", "feedback": {"user_feedback": "ok"}})
        await cache.flush()

        reopened = ToolResultCache(cache_dir)

        assert reopened.read_last("lastReviewPlan") == {
            "timestamp": "t",
            "feedback": {"user_feedback": "ok"},
        }
        assert reopened.keys() == ["lastReviewPlan"]

    def test_record_without_event_loop_writes_inline(self, cache: ToolResultCache, cache_dir: Path) -> None:
        """Test synchronous callers persist immediately."""
        cache.record("lastReviewPlan", {"timestamp": "t"})
        assert (cache_dir / "lastReviewPlan.json").exists()

    def test_corrupt_file_reads_as_missing(self, cache_dir: Path) -> None:
        """Test an unreadable file is logged and ignored."""
        cache_dir.mkdir(parents=True)
        (cache_dir / "lastReviewPlan.json").write_text("{truncated", encoding="utf-8")

        assert ToolResultCache(cache_dir).read_last("lastReviewPlan") is None

    def test_unserializable_payload_keeps_memory_view(self, cache: ToolResultCache, cache_dir: Path) -> None:
        """Test a failed write only loses durability."""
        payload = {"timestamp": "t", "value": object()}

        cache.record("lastReviewPlan", payload)

        assert cache.read_last("lastReviewPlan") is payload
        assert not (cache_dir / "lastReviewPlan.json").exists()

    def test_clear_removes_files(self, cache: ToolResultCache, cache_dir: Path) -> None:
        cache.record("lastReviewPlan", {"timestamp": "t"})
        cache.record("lastPlanConfirmation", {"timestamp": "t"})

        cache.clear()

        assert cache.keys() == []
        assert cache.read_last("lastReviewPlan") is None


def test_utc_timestamp_format() -> None:
    """Test ISO-8601 UTC with milliseconds and Z suffix."""
    ts = utc_timestamp()
    assert ts.endswith("Z")
    assert len(ts) == len("2024-12-17T10:00:00.000Z")
