"""
Contracts for the host application's collaborators.

Session Keeper does not own sessions, user settings or agent spawning;
the host provides objects satisfying these protocols.
"""

from typing import Any, List, Mapping, Protocol, Union

from ..rate_limit.models import SessionLookup
from ..scheduler.models import NewSchedulerJob, SchedulerJob, UpdateSchedulerJob


class SessionRepository(Protocol):
    """Read access to session transcripts."""

    async def get_session(
        self,
        project_id: str,
        session_id: str
    ) -> Union[SessionLookup, Mapping[str, Any]]:
        """Return ``{"session": {"conversations": [...]}}``; may raise if absent."""
        ...


class UserConfigLike(Protocol):
    auto_resume_on_rate_limit: bool


class UserConfigProvider(Protocol):
    """Effective user preferences."""

    async def get_user_config(self) -> UserConfigLike:
        ...


class SchedulerClient(Protocol):
    """Subset of the scheduler used to upsert resume jobs."""

    async def get_jobs(self) -> List[SchedulerJob]:
        ...

    async def add_job(self, new_job: NewSchedulerJob) -> SchedulerJob:
        ...

    async def update_job(self, job_id: str, updates: UpdateSchedulerJob) -> SchedulerJob:
        ...


class SessionLifecycle(Protocol):
    """Starts and continues agent sessions on behalf of scheduled jobs."""

    async def start_task(self, project_id: str, message: str) -> Any:
        ...

    async def continue_task(
        self,
        session_process_id: str,
        message: str,
        base_session_id: str
    ) -> Any:
        ...


__all__ = [
    'SessionRepository',
    'UserConfigLike',
    'UserConfigProvider',
    'SchedulerClient',
    'SessionLifecycle',
]
