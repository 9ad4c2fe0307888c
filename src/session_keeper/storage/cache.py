"""
File-backed cache storage for Session Keeper.

This module provides a generic key-value cache with:
- Schema validation of every persisted value (pydantic)
- Self-healing load of missing or corrupt backing files
- In-memory reads that always reflect the latest write
- Asynchronous, diff-before-write persistence to disk
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Set, Tuple, TypeVar

from pydantic import TypeAdapter, ValidationError

from ..utils.logging import get_logger
from .atomic import path_lock, read_json, write_json_atomic

logger = get_logger("session-keeper.cache")

T = TypeVar('T')

CacheEntries = List[Tuple[str, Any]]

_ENTRIES_ADAPTER: TypeAdapter = TypeAdapter(List[Tuple[str, Any]])


class CachePersistence:
    """Loads and saves named caches as JSON arrays of [key, value] pairs."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir).expanduser()

    def get_cache_file_path(self, name: str) -> Path:
        return self.cache_dir / f"{name}.json"

    async def load(self, name: str) -> CacheEntries:
        """
        Load the raw entries of a named cache.

        A missing file, invalid JSON or a document that is not a list of
        pairs resets the file to an empty list and yields no entries.
        """
        cache_file = self.get_cache_file_path(name)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        async with path_lock(cache_file):
            if not cache_file.exists():
                await write_json_atomic(cache_file, [])
                return []

            try:
                return _ENTRIES_ADAPTER.validate_python(await read_json(cache_file))
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(
                    "cache_file_reset",
                    cache=name,
                    path=str(cache_file),
                    error=str(e)
                )
                await write_json_atomic(cache_file, [])
                return []

    async def save(self, name: str, entries: CacheEntries) -> None:
        cache_file = self.get_cache_file_path(name)
        async with path_lock(cache_file):
            await write_json_atomic(cache_file, [list(entry) for entry in entries])


class FileCacheStorage(Generic[T]):
    """
    Typed cache mirrored to a single JSON file.

    The in-memory map is the source of truth. set() and invalidate() update
    it immediately and schedule a background flush of the whole map; the
    flush is skipped when the serialized map did not change.
    """

    def __init__(
        self,
        name: str,
        value_type: Any,
        persistence: CachePersistence
    ):
        self.name = name
        self.persistence = persistence
        self._adapter: TypeAdapter = TypeAdapter(value_type)
        self._entries: Dict[str, T] = {}
        self._pending: Set[asyncio.Task] = set()
        self._initialized = False
        self.write_count = 0

    async def initialize(self) -> None:
        """Load persisted entries, dropping any value that fails validation."""
        raw_entries = await self.persistence.load(self.name)

        entries: Dict[str, T] = {}
        dropped = 0
        for key, raw_value in raw_entries:
            try:
                entries[key] = self._adapter.validate_python(raw_value)
            except ValidationError:
                dropped += 1

        self._entries = entries
        self._initialized = True

        logger.info(
            "cache_loaded",
            cache=self.name,
            entries=len(entries),
            dropped=dropped
        )

    async def get(self, key: str) -> Optional[T]:
        return self._entries.get(key)

    async def set(self, key: str, value: T) -> None:
        before = self._serialize()
        self._entries[key] = value
        after = self._serialize()

        if before != after:
            self._schedule_flush(after)

    async def invalidate(self, key: str) -> None:
        if key not in self._entries:
            return

        del self._entries[key]
        self._schedule_flush(self._serialize())

    async def get_all(self) -> Dict[str, T]:
        """Return a copy of every cached entry."""
        return dict(self._entries)

    async def wait_for_pending_writes(self) -> None:
        """Wait for every scheduled flush to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _serialize(self) -> str:
        return json.dumps([
            [key, self._adapter.dump_python(value, mode="json", by_alias=True)]
            for key, value in self._entries.items()
        ])

    def _schedule_flush(self, serialized: str) -> None:
        entries = [tuple(pair) for pair in json.loads(serialized)]
        task = asyncio.create_task(self._flush(entries))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _flush(self, entries: CacheEntries) -> None:
        try:
            await self.persistence.save(self.name, entries)
        except OSError as e:
            logger.error("cache_flush_failed", cache=self.name, error=str(e))
            return

        self.write_count += 1
        logger.debug("cache_flushed", cache=self.name, entries=len(entries))


__all__ = [
    'CachePersistence',
    'FileCacheStorage',
]
