"""
Atomic JSON file primitives.

Every backing file is written through a sibling temporary file that is
renamed over the target, and each resolved path has exactly one
asyncio.Lock that callers hold across read-modify-write cycles.
"""

import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Union

import aiofiles

from ..utils.logging import get_logger


logger = get_logger("session-keeper.storage")

_path_locks: Dict[str, asyncio.Lock] = {}


def path_lock(path: Union[str, Path]) -> asyncio.Lock:
    """Return the single writer lock for a file path."""
    key = str(Path(path).expanduser().resolve())
    lock = _path_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _path_locks[key] = lock
    return lock


async def write_json_atomic(path: Union[str, Path], data: Any, indent: int = 2) -> None:
    """
    Write data as JSON so that readers see either the old or the new file.

    Parent directories are created on demand.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=indent, ensure_ascii=False))
        os.replace(temp_file, path)
    finally:
        if temp_file.exists():
            temp_file.unlink()

    logger.debug("json_written", path=str(path))


async def read_text(path: Union[str, Path]) -> str:
    """Read a whole text file."""
    async with aiofiles.open(path, 'r', encoding='utf-8') as f:
        return await f.read()


async def read_json(path: Union[str, Path]) -> Any:
    """
    Read and decode a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        json.JSONDecodeError: If the content is not valid JSON
    """
    return json.loads(await read_text(path))


__all__ = [
    'path_lock',
    'write_json_atomic',
    'read_json',
    'read_text',
]
