"""Durable last-write-wins cache of tool step results.

Each key is stored as one JSON file under the cache directory. Writes
update an in-memory view immediately and are persisted in the background
so recording a result never blocks the event protocol engine.
"""

import asyncio
import json
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class ToolResultCache:
    """Overwrite-by-key durable store for the last result of each step.

    Thread-safety: record/read_last must be called from the event loop
    thread; file writes run on one dedicated writer thread, in the order
    they were recorded.

    Example:
        ```python
        cache = ToolResultCache(Path(".cache"))
        cache.record("lastReviewPlan", {"timestamp": "...", "feedback": {...}})
        cache.read_last("lastReviewPlan")
        await cache.flush()
        ```
    """

    def __init__(self, directory: Path) -> None:
        """Initialize cache.

        Args:
            directory: Directory holding one ``<key>.json`` file per key
        """
        self._directory = Path(directory)
        self._entries: dict[str, dict[str, Any]] = {}
        self._pending: set[asyncio.Future[None]] = set()
        # Single writer keeps successive writes of a key in record order
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-writer")

    @property
    def directory(self) -> Path:
        """Cache directory."""
        return self._directory

    def record(self, key: str, payload: dict[str, Any]) -> None:
        """Record the latest payload for a key (fire-and-forget).

        Args:
            key: Step name (e.g. ``lastReviewPlan``)
            payload: JSON-serializable record
        """
        _validate_key(key)
        self._entries[key] = payload

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): persist inline
            self._write_file(key, payload)
            return

        future = loop.run_in_executor(self._executor, self._write_file, key, payload)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def read_last(self, key: str) -> dict[str, Any] | None:
        """Read the last recorded payload for a key.

        Falls back to the file on disk for results written by an earlier
        session or process.

        Returns:
            Payload, or None if nothing was recorded
        """
        _validate_key(key)
        if key in self._entries:
            return self._entries[key]

        path = self._path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Failed to read cached result",
                extra={"key": key, "path": str(path), "error": str(e)},
            )
            return None

        if not isinstance(payload, dict):
            return None
        self._entries[key] = payload
        return payload

    def keys(self) -> list[str]:
        """List keys with a recorded result (memory or disk)."""
        keys = set(self._entries)
        if self._directory.exists():
            keys.update(p.stem for p in self._directory.glob("*.json"))
        return sorted(keys)

    async def flush(self) -> None:
        """Wait for all pending background writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        """Remove all cached results from memory and disk."""
        self._entries.clear()
        if not self._directory.exists():
            return
        for path in self._directory.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to remove cached result", extra={"path": str(path), "error": str(e)})

    def _path_for(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def _write_file(self, key: str, payload: dict[str, Any]) -> None:
        """Atomically write one key's payload to disk.

        Errors are logged, not raised: a failed write only loses durability.
        """
        path = self._path_for(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, ensure_ascii=False, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to persist cached result",
                extra={"key": key, "path": str(path), "error": str(e)},
            )
            return

        logger.debug("Cached result persisted", extra={"key": key, "path": str(path)})


def _validate_key(key: str) -> None:
    if not key or "/" in key or "\\" in key or key.startswith("."):
        raise ValueError(f"Invalid cache key: {key!r}")
