"""
Configuration loader for Session Keeper.

This module provides configuration management with:
- Multiple configuration sources (files, env vars, dicts)
- Schema validation through pydantic
- Configuration merging by priority
- Hot reloading of configuration files
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent
import asyncio

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("session-keeper.config")

ENV_PREFIX = "SESSION_KEEPER_"
ENV_NESTING = "__"


def default_base_dir() -> Path:
    return Path.home() / ".session-keeper"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: default_base_dir() / "logs")
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class StorageConfig(BaseModel):
    """Locations of the per-user backing files."""
    base_dir: Path = Field(default_factory=default_base_dir)
    process_pids_file: Optional[Path] = None
    cache_dir: Optional[Path] = None
    scheduler_dir: Optional[Path] = None
    transcripts_dir: Optional[Path] = None

    @field_validator('base_dir', 'process_pids_file', 'cache_dir', 'scheduler_dir', 'transcripts_dir', mode='before')
    @classmethod
    def expand_user(cls, v):
        if v is None:
            return v
        return Path(v).expanduser()

    @property
    def pid_file_path(self) -> Path:
        return self.process_pids_file or self.base_dir / "process-pids.json"

    @property
    def cache_dir_path(self) -> Path:
        return self.cache_dir or self.base_dir / "cache"

    @property
    def scheduler_config_path(self) -> Path:
        return (self.scheduler_dir or self.base_dir / "scheduler") / "schedules.json"


class DetectionConfig(BaseModel):
    """Agent process detection and termination settings."""
    command_pattern: str = "claude"
    detect_delay_seconds: float = 1.0
    kill_grace_seconds: float = 3.0
    kill_poll_interval: float = 0.1

    @field_validator('command_pattern')
    @classmethod
    def validate_pattern(cls, v):
        if not v.strip():
            raise ValueError("command_pattern must not be empty")
        return v


class UserConfig(BaseModel):
    """User-facing preferences."""
    auto_resume_on_rate_limit: bool = Field(default=False, alias="autoResumeOnRateLimit")

    model_config = ConfigDict(populate_by_name=True)


class SessionKeeperConfig(BaseModel):
    """Main Session Keeper configuration."""
    app_name: str = "session-keeper"
    debug: bool = False

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    user: UserConfig = Field(default_factory=UserConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self):
        """Initialize configuration loader."""
        self._sources: List[ConfigSource] = []
        self._config: Optional[SessionKeeperConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[SessionKeeperConfig], Any]] = []
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source).expanduser()
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> SessionKeeperConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                try:
                    data = self._load_source(source)
                except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                    logger.error(
                        "failed_to_load_source",
                        source=str(source.path or "dict"),
                        error=str(e)
                    )
                    if source.priority > 100:
                        raise ConfigurationError(
                            f"Failed to load critical config source {source.path}: {e}",
                            cause=e
                        ) from e
                    continue
                merged_data = self._deep_merge(merged_data, data)

            merged_data = self._deep_merge(merged_data, self._load_env_vars())

            try:
                config = SessionKeeperConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            self._config = config
            logger.info("configuration_loaded", sources=len(self._sources))

        if config.enable_hot_reload and not self._observers:
            self._setup_hot_reload()

        return config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text(encoding="utf-8")

        if source.source_type == "json":
            return json.loads(content) if content.strip() else {}
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_lines(content.splitlines())
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_lines(self, lines: List[str]) -> Dict[str, Any]:
        """Parse KEY=value lines (.env format)."""
        pairs = {}
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            pairs[key.strip()] = value.strip().strip('"').strip("'")
        return self._nest_env(pairs)

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from SESSION_KEEPER_* environment variables."""
        return self._nest_env(dict(os.environ))

    def _nest_env(self, pairs: Dict[str, str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}

        for key, value in pairs.items():
            if not key.startswith(ENV_PREFIX):
                continue

            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})

            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith("/") or value.startswith("~"):
            return Path(value).expanduser()

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_hot_reload(self) -> None:
        """Watch configuration files and reload on modification."""
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)

                logger.info("hot_reload_enabled", path=str(source.path))

    def register_callback(self, callback: Callable[[SessionKeeperConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    def schedule_reload(self) -> None:
        """Thread-safe reload trigger used by file watchers."""
        if self._loop is not None and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.reload(), self._loop)

    async def reload(self) -> None:
        """Reload configuration and notify callbacks when it changed."""
        logger.info("reloading_configuration")

        old_config = self._config
        try:
            new_config = await self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return

        if old_config == new_config:
            return

        for callback in self._callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(new_config)
                else:
                    callback(new_config)
            except Exception as e:
                logger.error(
                    "callback_error",
                    callback=getattr(callback, '__name__', 'unknown'),
                    error=str(e)
                )

    def get_config(self) -> SessionKeeperConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop file watchers."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration files."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification."""
        if not event.is_directory and Path(event.src_path) == self.path:
            logger.info("config_file_modified", path=event.src_path)
            self.loader.schedule_reload()


class StaticUserConfigProvider:
    """Serves a fixed user configuration."""

    def __init__(self, user_config: Optional[UserConfig] = None):
        self._user_config = user_config or UserConfig()

    async def get_user_config(self) -> UserConfig:
        return self._user_config


class ConfigUserConfigProvider:
    """Exposes the effective user configuration of a ConfigLoader."""

    def __init__(self, loader: ConfigLoader):
        self._loader = loader

    async def get_user_config(self) -> UserConfig:
        return self._loader.get_config().user


def default_config_paths() -> List[Path]:
    base = default_base_dir()
    return [
        base / "config.yaml",
        base / "config.json",
        base / "config.toml",
        Path("./session-keeper.yaml"),
    ]


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    loader: Optional[ConfigLoader] = None,
) -> SessionKeeperConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge
        loader: Loader to populate (a new one by default)

    Returns:
        Loaded configuration
    """
    loader = loader or ConfigLoader()

    for path in default_config_paths():
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'SessionKeeperConfig',
    'LoggingConfig',
    'StorageConfig',
    'DetectionConfig',
    'UserConfig',
    'ConfigLoader',
    'ConfigUserConfigProvider',
    'StaticUserConfigProvider',
    'load_config',
]
