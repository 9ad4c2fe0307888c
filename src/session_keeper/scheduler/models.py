"""
Scheduler job models.

Jobs are stored with camelCase keys; Python code uses the snake_case
field names.
"""

from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 instant, treating a trailing Z and naive values as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CronSchedule(_CamelModel):
    type: Literal["cron"] = "cron"
    expression: str


class FixedSchedule(_CamelModel):
    type: Literal["fixed"] = "fixed"
    delay_ms: int = Field(alias="delayMs", gt=0)
    one_time: bool = Field(alias="oneTime")


class ReservedSchedule(_CamelModel):
    """Run once at a fixed instant."""
    type: Literal["reserved"] = "reserved"
    reserved_execution_time: str = Field(alias="reservedExecutionTime")

    @field_validator("reserved_execution_time")
    @classmethod
    def validate_instant(cls, v):
        parse_iso(v)
        return v

    @property
    def execution_time(self) -> datetime:
        return parse_iso(self.reserved_execution_time)


Schedule = Annotated[
    Union[CronSchedule, FixedSchedule, ReservedSchedule],
    Field(discriminator="type")
]

ConcurrencyPolicy = Literal["skip", "run"]
JobStatus = Literal["success", "failed"]


class MessageConfig(_CamelModel):
    """What a job sends to the agent when it fires."""
    content: str
    project_id: str = Field(alias="projectId")
    base_session_id: Optional[str] = Field(default=None, alias="baseSessionId")


class SchedulerJob(_CamelModel):
    id: str
    name: str
    schedule: Schedule
    message: MessageConfig
    enabled: bool
    concurrency_policy: ConcurrencyPolicy = Field(alias="concurrencyPolicy")
    created_at: str = Field(alias="createdAt")
    last_run_at: Optional[str] = Field(default=None, alias="lastRunAt")
    last_run_status: Optional[JobStatus] = Field(default=None, alias="lastRunStatus")

    @property
    def is_one_shot(self) -> bool:
        return isinstance(self.schedule, ReservedSchedule) or (
            isinstance(self.schedule, FixedSchedule) and self.schedule.one_time
        )


class NewSchedulerJob(_CamelModel):
    """Job creation request; runtime fields are filled in by the scheduler."""
    name: str
    schedule: Schedule
    message: MessageConfig
    enabled: bool = True
    concurrency_policy: ConcurrencyPolicy = Field(default="skip", alias="concurrencyPolicy")


class UpdateSchedulerJob(_CamelModel):
    """Partial job update; only fields explicitly set are applied."""
    name: Optional[str] = None
    schedule: Optional[Schedule] = None
    message: Optional[MessageConfig] = None
    enabled: Optional[bool] = None
    concurrency_policy: Optional[ConcurrencyPolicy] = Field(default=None, alias="concurrencyPolicy")


class SchedulerConfig(_CamelModel):
    """Contents of the scheduler job file."""
    jobs: List[SchedulerJob] = Field(default_factory=list)


__all__ = [
    'CronSchedule',
    'FixedSchedule',
    'ReservedSchedule',
    'Schedule',
    'MessageConfig',
    'SchedulerJob',
    'NewSchedulerJob',
    'UpdateSchedulerJob',
    'SchedulerConfig',
    'parse_iso',
    'utc_now_iso',
]
