"""
Resume job upsert for rate-limited sessions.

A session's resume job is found by convention: its message targets the
session, its name carries RESUME_JOB_MARKER and it has not run yet. A job
that already fired is left as history and a new one is created. The bridge
is best effort; scheduler failures end in "no job", never in an exception.
"""

from datetime import datetime
from typing import Any, List, Mapping, Optional, Union

from ..rate_limit.models import ConversationEntry
from ..rate_limit.parser import calculate_resume_datetime, parse_rate_limit_message
from ..scheduler.models import (
    MessageConfig,
    NewSchedulerJob,
    ReservedSchedule,
    SchedulerJob,
    UpdateSchedulerJob,
)
from ..utils.errors import ErrorSeverity, handle_errors
from ..utils.logging import get_logger
from .contracts import SchedulerClient

logger = get_logger("session-keeper.monitor")

RESUME_JOB_MARKER = "Auto-resume"
CONTINUE_MESSAGE = "continue"


def resume_job_name(session_id: str) -> str:
    return f"{RESUME_JOB_MARKER}: {session_id}"


def is_resume_job_for(job: SchedulerJob, session_id: str) -> bool:
    """True for a resume job of the session that has not run yet."""
    return (
        job.message.base_session_id == session_id
        and RESUME_JOB_MARKER in job.name
        and job.last_run_status is None
    )


@handle_errors(Exception, fallback=lambda scheduler: [], log_level=ErrorSeverity.WARNING)
async def _list_jobs(scheduler: SchedulerClient) -> List[SchedulerJob]:
    return await scheduler.get_jobs()


async def find_pending_resume_job(scheduler: SchedulerClient, session_id: str) -> Optional[SchedulerJob]:
    jobs = await _list_jobs(scheduler)
    return next((job for job in jobs if is_resume_job_for(job, session_id)), None)


@handle_errors(Exception, reraise=False, log_level=ErrorSeverity.WARNING)
async def _reschedule(
    scheduler: SchedulerClient,
    job_id: str,
    resume_at: str
) -> Optional[SchedulerJob]:
    return await scheduler.update_job(
        job_id,
        UpdateSchedulerJob(schedule=ReservedSchedule(reserved_execution_time=resume_at)),
    )


@handle_errors(Exception, reraise=False, log_level=ErrorSeverity.WARNING)
async def add_resume_job(
    scheduler: SchedulerClient,
    session_id: str,
    project_id: str,
    resume_at: str
) -> Optional[SchedulerJob]:
    return await scheduler.add_job(NewSchedulerJob(
        name=resume_job_name(session_id),
        schedule=ReservedSchedule(reserved_execution_time=resume_at),
        message=MessageConfig(
            content=CONTINUE_MESSAGE,
            project_id=project_id,
            base_session_id=session_id,
        ),
        enabled=True,
    ))


async def create_rate_limit_resume_job(
    scheduler: SchedulerClient,
    entry: Union[ConversationEntry, Mapping[str, Any]],
    session_id: str,
    project_id: str,
    auto_resume_enabled: bool,
    now: Optional[datetime] = None,
) -> Optional[SchedulerJob]:
    """
    Create or reschedule the resume job of a rate-limited session.

    Args:
        scheduler: Job store to upsert into
        entry: Transcript entry carrying the rate-limit notice
        session_id: Session to resume
        project_id: Project the session belongs to
        auto_resume_enabled: User preference; nothing is scheduled when off
        now: Reference time for the resume computation (defaults to now)

    Returns:
        The created or updated job, or None when nothing was scheduled
    """
    if not auto_resume_enabled:
        return None

    reset_time = parse_rate_limit_message(entry)
    if not reset_time:
        return None

    resume_at = calculate_resume_datetime(reset_time, now)
    if not resume_at:
        return None

    existing = await find_pending_resume_job(scheduler, session_id)

    if existing is not None:
        updated = await _reschedule(scheduler, existing.id, resume_at)
        if updated is not None:
            logger.info(
                "resume_job_rescheduled",
                job_id=updated.id,
                session_id=session_id,
                resume_at=resume_at
            )
            return updated

    job = await add_resume_job(scheduler, session_id, project_id, resume_at)
    if job is not None:
        logger.info(
            "resume_job_scheduled",
            job_id=job.id,
            session_id=session_id,
            resume_at=resume_at
        )
    return job


__all__ = [
    'RESUME_JOB_MARKER',
    'CONTINUE_MESSAGE',
    'resume_job_name',
    'is_resume_job_for',
    'find_pending_resume_job',
    'add_resume_job',
    'create_rate_limit_resume_job',
]
