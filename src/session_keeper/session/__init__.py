"""
Session-facing services.

This package provides:
- Contracts for the host's session, configuration and lifecycle services
- The resume job upsert used after a rate limit
- The event-driven rate-limit monitors
"""

from .contracts import (
    SessionRepository,
    UserConfigProvider,
    SchedulerClient,
    SessionLifecycle,
)
from .resume_job import create_rate_limit_resume_job, RESUME_JOB_MARKER
from .rate_limit_monitor import RateLimitMonitor, MonitorState, ResumeRecord
from .transcript_monitor import TranscriptRateLimitMonitor

__all__ = [
    'SessionRepository',
    'UserConfigProvider',
    'SchedulerClient',
    'SessionLifecycle',
    'create_rate_limit_resume_job',
    'RESUME_JOB_MARKER',
    'RateLimitMonitor',
    'MonitorState',
    'ResumeRecord',
    'TranscriptRateLimitMonitor',
]
