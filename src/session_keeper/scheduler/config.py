"""
Scheduler job file access.

The job file is a JSON document ``{"jobs": [...]}``. A missing or corrupt
file is re-initialized to an empty job list.
"""

from pathlib import Path

from pydantic import ValidationError

from ..storage.atomic import read_json, write_json_atomic
from ..utils.logging import get_logger
from .models import SchedulerConfig

logger = get_logger("session-keeper.scheduler")


async def read_config(config_path: Path) -> SchedulerConfig:
    """
    Read the job file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid JSON or not a job document
    """
    data = await read_json(config_path)
    try:
        return SchedulerConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid scheduler config {config_path}: {e}") from e


async def write_config(config_path: Path, config: SchedulerConfig) -> None:
    await write_json_atomic(config_path, config.to_json())


async def initialize_config(config_path: Path) -> SchedulerConfig:
    """Read the job file, replacing it with an empty one if unusable."""
    try:
        return await read_config(config_path)
    except FileNotFoundError:
        logger.info("scheduler_config_created", path=str(config_path))
    except ValueError as e:
        logger.warning("scheduler_config_reset", path=str(config_path), error=str(e))

    config = SchedulerConfig()
    await write_config(config_path, config)
    return config


__all__ = [
    'read_config',
    'write_config',
    'initialize_config',
]
