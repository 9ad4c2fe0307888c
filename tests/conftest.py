"""
Pytest configuration and shared fixtures for Session Keeper tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import AsyncGenerator, Generator

from session_keeper.registry.storage import ProcessPidRepository
from session_keeper.scheduler.service import SchedulerService
from session_keeper.storage.cache import CachePersistence
from session_keeper.utils.config import (
    DetectionConfig,
    LoggingConfig,
    SessionKeeperConfig,
    StorageConfig,
)
from session_keeper.utils.notifications import EventBus

from tests.utils.mock_helpers import (
    MockLifecycle,
    MockSchedulerClient,
    MockSessionRepository,
    MockUserConfigProvider,
)


@pytest.fixture(autouse=True)
def quiet_console(monkeypatch):
    """Keep rich console output out of test runs."""
    monkeypatch.setenv("SESSION_KEEPER_QUIET", "1")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> SessionKeeperConfig:
    """Configuration whose backing files all live in the temp directory."""
    return SessionKeeperConfig(
        logging=LoggingConfig(level="DEBUG", format="text", directory=temp_dir / "logs"),
        storage=StorageConfig(base_dir=temp_dir),
        detection=DetectionConfig(
            detect_delay_seconds=0,
            kill_grace_seconds=0.5,
            kill_poll_interval=0.01,
        ),
    )


@pytest.fixture
def pid_repository(test_config: SessionKeeperConfig) -> ProcessPidRepository:
    return ProcessPidRepository(test_config.storage.pid_file_path)


@pytest.fixture
def cache_persistence(test_config: SessionKeeperConfig) -> CachePersistence:
    return CachePersistence(test_config.storage.cache_dir_path)


@pytest.fixture
async def event_bus() -> AsyncGenerator[EventBus, None]:
    bus = EventBus()
    yield bus
    await bus.shutdown()


@pytest.fixture
def lifecycle() -> MockLifecycle:
    return MockLifecycle()


@pytest.fixture
async def scheduler_service(test_config: SessionKeeperConfig) -> AsyncGenerator[SchedulerService, None]:
    """File-backed scheduler that records fired jobs instead of running them."""
    fired = []

    async def executor(job):
        fired.append(job)

    scheduler = SchedulerService(test_config.storage.scheduler_config_path, executor)
    scheduler.fired = fired
    yield scheduler
    await scheduler.stop_scheduler()


@pytest.fixture
def scheduler_client() -> MockSchedulerClient:
    return MockSchedulerClient()


@pytest.fixture
def session_repository() -> MockSessionRepository:
    return MockSessionRepository()


@pytest.fixture
def user_config_provider() -> MockUserConfigProvider:
    return MockUserConfigProvider(auto_resume=True)
