"""
Transcript rate-limit monitor.

Watches the JSONL transcripts of sessions whose agent process is still
running. When the last line is a rate-limit entry and the session has no
pending resume job, a resume job is added at the reset time the entry
names.
"""

import asyncio
from pathlib import Path
from typing import Optional

from ..rate_limit.detection import (
    detect_rate_limit_from_last_line,
    parse_rate_limit_reset_time,
    read_last_line,
)
from ..registry.lifecycle import SessionProcessTracker
from ..storage.cache import FileCacheStorage
from ..utils.logging import get_logger
from ..utils.notifications import EventBus
from .contracts import SchedulerClient, UserConfigProvider
from .rate_limit_monitor import RateLimitMonitor, ResumeRecord
from .resume_job import add_resume_job, find_pending_resume_job

logger = get_logger("session-keeper.monitor")


class TranscriptRateLimitMonitor(RateLimitMonitor):
    """Schedules resume jobs from the last line of live sessions' transcripts."""

    def __init__(
        self,
        event_bus: EventBus,
        user_config: UserConfigProvider,
        scheduler: SchedulerClient,
        tracker: SessionProcessTracker,
        transcripts_dir: Path,
        resume_history: Optional[FileCacheStorage[ResumeRecord]] = None,
        upsert_lock: Optional[asyncio.Lock] = None,
    ):
        """
        Initialize the monitor.

        Args:
            event_bus: Bus carrying session_changed events
            user_config: User preference source
            scheduler: Job store resume jobs are added to
            tracker: Process tracker; only sessions with a live process are checked
            transcripts_dir: Directory holding ``<project id>/<session id>.jsonl``
            resume_history: Optional history of scheduled resumes
            upsert_lock: Lock shared with other monitors writing resume jobs
        """
        super().__init__(
            event_bus=event_bus,
            session_repository=None,
            user_config=user_config,
            scheduler=scheduler,
            resume_history=resume_history,
            upsert_lock=upsert_lock,
        )
        self.tracker = tracker
        self.transcripts_dir = Path(transcripts_dir).expanduser()

    def transcript_path(self, project_id: str, session_id: str) -> Path:
        return self.transcripts_dir / project_id / f"{session_id}.jsonl"

    async def _check_session(self, project_id: str, session_id: str) -> None:
        user_config = await self.user_config.get_user_config()
        if not getattr(user_config, "auto_resume_on_rate_limit", False):
            return

        record = await self.tracker.get_live_record(session_id)
        if record is None:
            return

        line = await read_last_line(self.transcript_path(project_id, session_id))
        detection = detect_rate_limit_from_last_line(line)
        if not detection.detected:
            return

        resume_at = parse_rate_limit_reset_time(detection.reset_time_text)
        logger.info(
            "transcript_rate_limit_detected",
            session_id=session_id,
            reset_text=detection.reset_time_text,
            resume_at=resume_at
        )

        async with self.upsert_lock:
            if await find_pending_resume_job(self.scheduler, session_id) is not None:
                logger.debug("resume_job_already_pending", session_id=session_id)
                return
            job = await add_resume_job(self.scheduler, session_id, record.project_id, resume_at)

        if job is None:
            return

        logger.info(
            "resume_job_scheduled",
            job_id=job.id,
            session_id=session_id,
            resume_at=resume_at
        )
        await self._announce(job, record.project_id, session_id, detection.reset_time_text)


__all__ = [
    'TranscriptRateLimitMonitor',
]
