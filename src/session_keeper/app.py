"""
Session Keeper composition root.

Builds the PID registry, detection service, scheduler, resume history and
rate-limit monitors from one configuration and runs them together inside
the host application.
"""

import asyncio
from typing import Dict, Optional

from .registry.lifecycle import SessionProcessTracker
from .registry.storage import ProcessPidRepository
from .registry.tracker import ProcessDetectionService
from .scheduler.service import SchedulerService, make_session_job_executor
from .session.contracts import SessionLifecycle, SessionRepository, UserConfigProvider
from .session.rate_limit_monitor import RateLimitMonitor, ResumeRecord
from .session.transcript_monitor import TranscriptRateLimitMonitor
from .storage.cache import CachePersistence, FileCacheStorage
from .utils.config import (
    ConfigLoader,
    ConfigUserConfigProvider,
    SessionKeeperConfig,
    StaticUserConfigProvider,
)
from .utils.logging import get_logger
from .utils.notifications import EventBus, EventCategory, emit_session_changed

logger = get_logger("session-keeper")

RESUME_HISTORY_CACHE = "resume-history"
CONFIG_LOADED = "config_loaded"


def open_resume_history(config: SessionKeeperConfig) -> FileCacheStorage[ResumeRecord]:
    persistence = CachePersistence(config.storage.cache_dir_path)
    return FileCacheStorage(RESUME_HISTORY_CACHE, ResumeRecord, persistence)


class SessionKeeper:
    """Process tracking and rate-limit auto-resume for one host application."""

    def __init__(
        self,
        config: SessionKeeperConfig,
        session_repository: SessionRepository,
        lifecycle: SessionLifecycle,
        user_config: Optional[UserConfigProvider] = None,
        event_bus: Optional[EventBus] = None,
        config_loader: Optional[ConfigLoader] = None,
    ):
        """
        Wire every component.

        Args:
            config: Effective configuration
            session_repository: Host's transcript access
            lifecycle: Host's spawn/continue service, used by scheduled jobs
            user_config: User preference source (defaults to the loader or config)
            event_bus: Bus carrying session_changed events (created if omitted)
            config_loader: Loader whose hot reloads should be followed
        """
        self.config = config
        self._owns_event_bus = event_bus is None
        self.event_bus = event_bus or EventBus()
        self.config_loader = config_loader

        if user_config is None:
            if config_loader is not None:
                user_config = ConfigUserConfigProvider(config_loader)
            else:
                user_config = StaticUserConfigProvider(config.user)

        self.repository = ProcessPidRepository(config.storage.pid_file_path)
        self.detection = ProcessDetectionService()
        self.tracker = SessionProcessTracker(
            self.repository,
            self.detection,
            config.detection,
            event_bus=self.event_bus,
        )
        self.resume_history = open_resume_history(config)
        self.scheduler = SchedulerService(
            config.storage.scheduler_config_path,
            make_session_job_executor(lifecycle),
        )
        upsert_lock = asyncio.Lock()
        self.monitor = RateLimitMonitor(
            event_bus=self.event_bus,
            session_repository=session_repository,
            user_config=user_config,
            scheduler=self.scheduler,
            resume_history=self.resume_history,
            upsert_lock=upsert_lock,
        )
        self.transcript_monitor: Optional[TranscriptRateLimitMonitor] = None
        if config.storage.transcripts_dir is not None:
            self.transcript_monitor = TranscriptRateLimitMonitor(
                event_bus=self.event_bus,
                user_config=user_config,
                scheduler=self.scheduler,
                tracker=self.tracker,
                transcripts_dir=config.storage.transcripts_dir,
                resume_history=self.resume_history,
                upsert_lock=upsert_lock,
            )

        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Reconcile tracked PIDs, then start the scheduler and the monitors."""
        if self._started:
            return

        stale = await self.tracker.reconcile()
        await self.resume_history.initialize()
        await self.scheduler.start_scheduler()
        self.monitor.start_monitoring()
        if self.transcript_monitor is not None:
            self.transcript_monitor.start_monitoring()

        if self.config_loader is not None:
            self.config_loader.register_callback(self._on_config_reloaded)

        self._started = True
        logger.info("session_keeper_started", stale_pids_removed=len(stale))

    async def stop(self, kill_processes: bool = True) -> None:
        """Stop monitoring and scheduling, then run PID shutdown hygiene."""
        if not self._started:
            return

        self.monitor.stop_monitoring()
        await self.monitor.wait_idle()
        if self.transcript_monitor is not None:
            self.transcript_monitor.stop_monitoring()
            await self.transcript_monitor.wait_idle()
        await self.scheduler.stop_scheduler()
        await self.resume_history.wait_for_pending_writes()
        await self.tracker.shutdown(kill=kill_processes)

        if self._owns_event_bus:
            await self.event_bus.join()
            await self.event_bus.shutdown()

        self._started = False
        logger.info("session_keeper_stopped")

    async def notify_session_changed(self, project_id: str, session_id: str) -> None:
        """Publish a session_changed event for the host's file watcher."""
        await emit_session_changed(self.event_bus, project_id, session_id)

    async def get_resume_history(self) -> Dict[str, ResumeRecord]:
        return await self.resume_history.get_all()

    async def forget_resume(self, session_id: str) -> None:
        await self.resume_history.invalidate(session_id)

    async def _on_config_reloaded(self, config: SessionKeeperConfig) -> None:
        self.config = config
        self.tracker.config = config.detection
        await self.event_bus.emit(
            CONFIG_LOADED,
            EventCategory.SYSTEM,
            {"autoResumeOnRateLimit": config.user.auto_resume_on_rate_limit},
            source="config_loader",
        )


__all__ = [
    'SessionKeeper',
    'open_resume_history',
    'RESUME_HISTORY_CACHE',
]
