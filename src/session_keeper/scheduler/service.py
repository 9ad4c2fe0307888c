"""
File-backed job scheduler.

Each enabled job runs as an asyncio task while the scheduler is started:
- cron jobs fire at every croniter match
- fixed jobs fire after a delay, once or repeatedly
- reserved jobs fire once at their instant, immediately if overdue
"""

import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Set, Union

from croniter import croniter

from ..storage.atomic import path_lock
from ..utils.errors import (
    ExternalServiceError,
    InvalidCronExpressionError,
    SchedulerJobNotFoundError,
)
from ..utils.logging import get_logger
from .config import initialize_config, write_config
from .models import (
    CronSchedule,
    FixedSchedule,
    NewSchedulerJob,
    ReservedSchedule,
    SchedulerJob,
    UpdateSchedulerJob,
    parse_iso,
    utc_now_iso,
)

if TYPE_CHECKING:
    from ..session.contracts import SessionLifecycle

logger = get_logger("session-keeper.scheduler")

JobExecutor = Callable[[SchedulerJob], Awaitable[Any]]


def _seconds_until(moment: datetime) -> float:
    return max(0.0, (moment - datetime.now(timezone.utc)).total_seconds())


class SchedulerService:
    """Stores jobs in a JSON file and runs them with an executor."""

    def __init__(self, config_path: Path, executor: JobExecutor):
        """
        Initialize the scheduler.

        Args:
            config_path: Job file location
            executor: Coroutine function invoked with a job when it fires
        """
        self.config_path = Path(config_path).expanduser()
        self.executor = executor
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running_jobs: Set[str] = set()
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start_scheduler(self) -> None:
        """Load the job file and start every enabled job."""
        if self._started:
            return

        config = await initialize_config(self.config_path)
        self._started = True

        for job in config.jobs:
            if job.enabled:
                self._start_job(job)

        logger.info("scheduler_started", jobs=len(config.jobs), active=len(self._tasks))

    async def stop_scheduler(self) -> None:
        """Cancel every scheduled job task."""
        self._started = False
        for job_id in list(self._tasks):
            await self._stop_job(job_id)

        logger.info("scheduler_stopped")

    async def get_jobs(self) -> List[SchedulerJob]:
        config = await initialize_config(self.config_path)
        return config.jobs

    async def get_job(self, job_id: str) -> SchedulerJob:
        for job in await self.get_jobs():
            if job.id == job_id:
                return job
        raise SchedulerJobNotFoundError(job_id)

    async def add_job(self, new_job: Union[NewSchedulerJob, Dict[str, Any]]) -> SchedulerJob:
        """
        Create and persist a job.

        Raises:
            InvalidCronExpressionError: If a cron schedule does not parse
        """
        if not isinstance(new_job, NewSchedulerJob):
            new_job = NewSchedulerJob.model_validate(new_job)

        self._validate_schedule(new_job.schedule)

        job = SchedulerJob(
            id=str(uuid.uuid4()),
            created_at=utc_now_iso(),
            last_run_at=None,
            last_run_status=None,
            **dict(new_job),
        )

        async with path_lock(self.config_path):
            config = await initialize_config(self.config_path)
            config.jobs.append(job)
            await write_config(self.config_path, config)

        logger.info("job_added", job_id=job.id, name=job.name, schedule=job.schedule.type)

        if job.enabled and self._started:
            self._start_job(job)

        return job

    async def update_job(
        self,
        job_id: str,
        updates: Union[UpdateSchedulerJob, Dict[str, Any]]
    ) -> SchedulerJob:
        """
        Apply a partial update and restart the job.

        Raises:
            SchedulerJobNotFoundError: If no job has this id
            InvalidCronExpressionError: If the new cron schedule does not parse
        """
        if not isinstance(updates, UpdateSchedulerJob):
            updates = UpdateSchedulerJob.model_validate(updates)

        changes = {
            name: getattr(updates, name)
            for name in updates.model_fields_set
            if getattr(updates, name) is not None
        }
        if "schedule" in changes:
            self._validate_schedule(changes["schedule"])

        async with path_lock(self.config_path):
            config = await initialize_config(self.config_path)
            index = self._find_index(config.jobs, job_id)

            updated = config.jobs[index].model_copy(update=changes)
            updated = SchedulerJob.model_validate(updated.model_dump())
            config.jobs[index] = updated
            await write_config(self.config_path, config)

        await self._stop_job(job_id)
        if updated.enabled and self._started:
            self._start_job(updated)

        logger.info("job_updated", job_id=job_id, fields=sorted(changes))
        return updated

    async def delete_job(self, job_id: str) -> None:
        """
        Remove a job.

        Raises:
            SchedulerJobNotFoundError: If no job has this id
        """
        async with path_lock(self.config_path):
            config = await initialize_config(self.config_path)
            index = self._find_index(config.jobs, job_id)
            del config.jobs[index]
            await write_config(self.config_path, config)

        await self._stop_job(job_id)
        logger.info("job_deleted", job_id=job_id)

    def _find_index(self, jobs: List[SchedulerJob], job_id: str) -> int:
        for index, job in enumerate(jobs):
            if job.id == job_id:
                return index
        raise SchedulerJobNotFoundError(job_id)

    def _validate_schedule(self, schedule: Any) -> None:
        if isinstance(schedule, CronSchedule) and not croniter.is_valid(schedule.expression):
            raise InvalidCronExpressionError(schedule.expression)

    def _start_job(self, job: SchedulerJob) -> None:
        if job.is_one_shot and job.last_run_status is not None:
            return

        schedule = job.schedule
        if isinstance(schedule, CronSchedule):
            runner = self._run_cron(job, schedule)
        elif isinstance(schedule, FixedSchedule):
            runner = self._run_fixed(job, schedule)
        else:
            runner = self._run_reserved(job, schedule)

        self._tasks[job.id] = asyncio.create_task(runner, name=f"scheduler-job-{job.id}")

    async def _stop_job(self, job_id: str) -> None:
        task = self._tasks.pop(job_id, None)
        if task is None or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_cron(self, job: SchedulerJob, schedule: CronSchedule) -> None:
        while True:
            next_run = croniter(schedule.expression, datetime.now(timezone.utc)).get_next(datetime)
            await asyncio.sleep(_seconds_until(next_run))
            await self._run_with_concurrency_control(job)

    async def _run_fixed(self, job: SchedulerJob, schedule: FixedSchedule) -> None:
        delay = schedule.delay_ms / 1000

        if schedule.one_time:
            fire_at = parse_iso(job.created_at).timestamp() + delay
            await asyncio.sleep(max(0.0, fire_at - datetime.now(timezone.utc).timestamp()))
            await self._run_with_concurrency_control(job)
            return

        while True:
            await self._run_with_concurrency_control(job)
            await asyncio.sleep(delay)

    async def _run_reserved(self, job: SchedulerJob, schedule: ReservedSchedule) -> None:
        await asyncio.sleep(_seconds_until(schedule.execution_time))
        await self._run_with_concurrency_control(job)

    async def _run_with_concurrency_control(self, job: SchedulerJob) -> None:
        if job.concurrency_policy == "skip" and job.id in self._running_jobs:
            logger.debug("job_run_skipped", job_id=job.id)
            return

        self._running_jobs.add(job.id)
        run_at = utc_now_iso()
        try:
            await self.executor(job)
            status = "success"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("job_failed", job_id=job.id, name=job.name, error=str(e))
            status = "failed"
        finally:
            self._running_jobs.discard(job.id)

        await self._record_run(job.id, status, run_at)
        logger.info("job_executed", job_id=job.id, status=status)

    async def _record_run(self, job_id: str, status: str, run_at: str) -> None:
        async with path_lock(self.config_path):
            config = await initialize_config(self.config_path)
            for index, job in enumerate(config.jobs):
                if job.id == job_id:
                    config.jobs[index] = job.model_copy(
                        update={"last_run_at": run_at, "last_run_status": status}
                    )
                    await write_config(self.config_path, config)
                    return


def make_session_job_executor(lifecycle: "SessionLifecycle") -> JobExecutor:
    """Executor that sends a job's message through the session lifecycle."""

    async def execute(job: SchedulerJob) -> None:
        message = job.message
        try:
            if message.base_session_id is None:
                await lifecycle.start_task(
                    project_id=message.project_id,
                    message=message.content,
                )
            else:
                await lifecycle.continue_task(
                    session_process_id=message.base_session_id,
                    message=message.content,
                    base_session_id=message.base_session_id,
                )
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(
                "session_lifecycle",
                message=f"Session lifecycle failed for job {job.id}: {e}",
                cause=e,
            ) from e

    return execute


__all__ = [
    'JobExecutor',
    'SchedulerService',
    'make_session_job_executor',
]
