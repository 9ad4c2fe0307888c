"""
Rate-limit monitor.

Listens for session-changed events, inspects the latest transcript entry
and upserts a resume job when the agent reports a usage limit.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from ..rate_limit.models import SessionLookup
from ..rate_limit.parser import parse_rate_limit_message
from ..scheduler.models import SchedulerJob
from ..storage.cache import FileCacheStorage
from ..utils.logging import get_logger
from ..utils.notifications import (
    SESSION_CHANGED,
    Event,
    EventBus,
    EventCategory,
    Subscription,
)
from .contracts import SchedulerClient, SessionRepository, UserConfigProvider
from .resume_job import create_rate_limit_resume_job

logger = get_logger("session-keeper.monitor")

RESUME_JOB_SCHEDULED = "resume_job_scheduled"

ResumeJobFactory = Callable[..., Awaitable[Optional[SchedulerJob]]]


class MonitorState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class ResumeRecord(BaseModel):
    """History entry for a scheduled resume."""
    session_id: str = Field(alias="sessionId")
    project_id: str = Field(alias="projectId")
    reset_time: str = Field(alias="resetTime")
    resume_at: str = Field(alias="resumeAt")
    job_id: str = Field(alias="jobId")
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="recordedAt"
    )

    model_config = ConfigDict(populate_by_name=True)


class RateLimitMonitor:
    """Schedules resume jobs for sessions that hit a rate limit."""

    def __init__(
        self,
        event_bus: EventBus,
        session_repository: SessionRepository,
        user_config: UserConfigProvider,
        scheduler: SchedulerClient,
        resume_history: Optional[FileCacheStorage[ResumeRecord]] = None,
        resume_job_factory: ResumeJobFactory = create_rate_limit_resume_job,
        upsert_lock: Optional[asyncio.Lock] = None,
    ):
        self.event_bus = event_bus
        self.session_repository = session_repository
        self.user_config = user_config
        self.scheduler = scheduler
        self.resume_history = resume_history
        self._create_resume_job = resume_job_factory
        # Shared by every monitor writing resume jobs into the same scheduler
        self.upsert_lock = upsert_lock or asyncio.Lock()

        self._state = MonitorState.INACTIVE
        self._subscription: Optional[Subscription] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is MonitorState.ACTIVE

    def start_monitoring(self) -> None:
        """Subscribe to session-changed events. No-op if already active."""
        if self._state is MonitorState.ACTIVE:
            return

        self._subscription = self.event_bus.subscribe(
            self._on_session_changed,
            categories=EventCategory.SESSION,
            event_names=SESSION_CHANGED,
            is_async=False,
        )
        self._state = MonitorState.ACTIVE
        logger.info("rate_limit_monitor_started")

    def stop_monitoring(self) -> None:
        """
        Unsubscribe. No-op if already inactive.

        Handlers already running are not cancelled.
        """
        if self._state is MonitorState.INACTIVE:
            return

        if self._subscription is not None:
            self.event_bus.unsubscribe(self._subscription)
            self._subscription = None
        self._state = MonitorState.INACTIVE
        logger.info("rate_limit_monitor_stopped")

    async def wait_idle(self) -> None:
        """Wait for every in-flight event handler to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def _on_session_changed(self, event: Event) -> None:
        if self._state is not MonitorState.ACTIVE:
            return

        project_id = event.data.get("projectId")
        session_id = event.data.get("sessionId")
        if not project_id or not session_id:
            logger.debug("session_changed_payload_incomplete", data=event.data)
            return

        task = asyncio.create_task(self._handle_session_changed(project_id, session_id))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _handle_session_changed(self, project_id: str, session_id: str) -> None:
        try:
            await self._check_session(project_id, session_id)
        except Exception as e:
            logger.warning(
                "rate_limit_check_failed",
                project_id=project_id,
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__
            )

    async def _load_session(self, project_id: str, session_id: str) -> Optional[SessionLookup]:
        try:
            result: Any = await self.session_repository.get_session(project_id, session_id)
        except Exception as e:
            logger.debug("session_unavailable", session_id=session_id, error=str(e))
            return None

        if result is None:
            return None
        if isinstance(result, SessionLookup):
            return result

        # Only the last entry matters; earlier ones may be in any shape
        session = result.get("session") if isinstance(result, Mapping) else None
        if not isinstance(session, Mapping):
            return SessionLookup()
        conversations = session.get("conversations")
        if not isinstance(conversations, list):
            conversations = []
        return SessionLookup.model_validate({"session": {"conversations": conversations[-1:]}})

    async def _check_session(self, project_id: str, session_id: str) -> None:
        lookup = await self._load_session(project_id, session_id)
        if lookup is None or lookup.session is None:
            return

        entry = lookup.session.last_entry
        if entry is None or not entry.is_assistant:
            return

        reset_time = parse_rate_limit_message(entry)
        if not reset_time:
            return

        user_config = await self.user_config.get_user_config()
        auto_resume_enabled = bool(getattr(user_config, "auto_resume_on_rate_limit", False))

        logger.info(
            "rate_limit_detected",
            session_id=session_id,
            reset_time=reset_time,
            auto_resume_enabled=auto_resume_enabled
        )

        async with self.upsert_lock:
            job = await self._create_resume_job(
                scheduler=self.scheduler,
                entry=entry,
                session_id=session_id,
                project_id=project_id,
                auto_resume_enabled=auto_resume_enabled,
            )
        if job is None:
            return

        await self._announce(job, project_id, session_id, reset_time)

    async def _announce(self, job: SchedulerJob, project_id: str, session_id: str, reset_time: str) -> None:
        await self.event_bus.emit(
            RESUME_JOB_SCHEDULED,
            EventCategory.SCHEDULER,
            {"sessionId": session_id, "projectId": project_id, "jobId": job.id},
            source="rate_limit_monitor",
        )

        if self.resume_history is not None:
            await self.resume_history.set(session_id, ResumeRecord(
                session_id=session_id,
                project_id=project_id,
                reset_time=reset_time,
                resume_at=getattr(job.schedule, "reserved_execution_time", ""),
                job_id=job.id,
            ))


__all__ = [
    'MonitorState',
    'ResumeRecord',
    'RateLimitMonitor',
    'RESUME_JOB_SCHEDULED',
]
