"""
Job scheduler for Session Keeper.

Stores named jobs in a JSON file and runs them on cron, fixed-delay or
one-shot reserved schedules.
"""

from .models import (
    CronSchedule,
    FixedSchedule,
    ReservedSchedule,
    MessageConfig,
    SchedulerJob,
    NewSchedulerJob,
    UpdateSchedulerJob,
    SchedulerConfig,
)
from .service import SchedulerService, JobExecutor, make_session_job_executor

__all__ = [
    'CronSchedule',
    'FixedSchedule',
    'ReservedSchedule',
    'MessageConfig',
    'SchedulerJob',
    'NewSchedulerJob',
    'UpdateSchedulerJob',
    'SchedulerConfig',
    'SchedulerService',
    'JobExecutor',
    'make_session_job_executor',
]
