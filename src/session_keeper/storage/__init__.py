"""
Storage components for Session Keeper.

This package provides:
- Atomic, per-path serialized JSON writes
- File-backed typed cache storage
"""

from .atomic import path_lock, write_json_atomic, read_json
from .cache import CachePersistence, FileCacheStorage

__all__ = [
    'path_lock',
    'write_json_atomic',
    'read_json',
    'CachePersistence',
    'FileCacheStorage',
]
