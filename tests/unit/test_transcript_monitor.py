"""
Unit tests for the transcript rate-limit monitor.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from session_keeper.registry.lifecycle import SessionProcessTracker
from session_keeper.registry.storage import ProcessPidRepository
from session_keeper.scheduler.models import MessageConfig, NewSchedulerJob, ReservedSchedule
from session_keeper.session.rate_limit_monitor import RESUME_JOB_SCHEDULED
from session_keeper.session.resume_job import RESUME_JOB_MARKER, resume_job_name
from session_keeper.session.transcript_monitor import TranscriptRateLimitMonitor
from session_keeper.utils.config import SessionKeeperConfig
from session_keeper.utils.notifications import EventBus, emit_session_changed

from tests.utils.mock_helpers import (
    MockDetectionService,
    MockSchedulerClient,
    MockUserConfigProvider,
    rate_limit_line,
)


@pytest.fixture
def detection() -> MockDetectionService:
    return MockDetectionService([(700, "claude --resume s1")])


@pytest.fixture
def transcripts_dir(temp_dir: Path) -> Path:
    return temp_dir / "projects"


@pytest.fixture
def monitor(
    event_bus: EventBus,
    user_config_provider: MockUserConfigProvider,
    scheduler_client: MockSchedulerClient,
    pid_repository: ProcessPidRepository,
    detection: MockDetectionService,
    test_config: SessionKeeperConfig,
    transcripts_dir: Path
) -> TranscriptRateLimitMonitor:
    tracker = SessionProcessTracker(pid_repository, detection, test_config.detection)
    return TranscriptRateLimitMonitor(
        event_bus=event_bus,
        user_config=user_config_provider,
        scheduler=scheduler_client,
        tracker=tracker,
        transcripts_dir=transcripts_dir,
    )


def write_transcript(monitor: TranscriptRateLimitMonitor, *lines: str, project_id: str = "p1", session_id: str = "s1"):
    path = monitor.transcript_path(project_id, session_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")


async def notify(bus: EventBus, monitor: TranscriptRateLimitMonitor, session_id: str = "s1"):
    await emit_session_changed(bus, "p1", session_id)
    await bus.join()
    await monitor.wait_idle()


class TestTranscriptRateLimitMonitor:
    """Test scheduling from the last transcript line of live sessions."""

    @pytest.mark.asyncio
    async def test_live_rate_limited_session_gets_job(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient
    ):
        """Test the job added for a live session whose last line is a rate limit."""
        await pid_repository.save_pid("s1", 700, project_id="p-process", cwd="/w")
        write_transcript(monitor, '{"type": "user"}', rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()
        before = datetime.now(timezone.utc)

        await notify(event_bus, monitor)

        assert len(scheduler_client.added) == 1
        job = scheduler_client.jobs[0]
        assert job.name == resume_job_name("s1")
        assert job.message == MessageConfig(content="continue", project_id="p-process", base_session_id="s1")
        assert before < job.schedule.execution_time
        assert job.schedule.execution_time.minute == 1

        events = event_bus.get_history(event_name=RESUME_JOB_SCHEDULED)
        assert [event.data["jobId"] for event in events] == [job.id]

    @pytest.mark.asyncio
    async def test_pending_job_is_kept(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient
    ):
        """Test that a session with a pending resume job gets no second one."""
        await scheduler_client.add_job(NewSchedulerJob(
            name=f"{RESUME_JOB_MARKER}: s1",
            schedule=ReservedSchedule(reserved_execution_time="2099-01-01T00:00:00.000Z"),
            message=MessageConfig(content="continue", project_id="p1", base_session_id="s1"),
        ))
        await pid_repository.save_pid("s1", 700, project_id="p1", cwd="/w")
        write_transcript(monitor, rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()

        await notify(event_bus, monitor)

        assert len(scheduler_client.added) == 1
        assert scheduler_client.updated == []

    @pytest.mark.asyncio
    async def test_fired_job_does_not_block_new_one(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient
    ):
        """Test that a resume job that already ran does not count as pending."""
        fired = await scheduler_client.add_job(NewSchedulerJob(
            name=f"{RESUME_JOB_MARKER}: s1",
            schedule=ReservedSchedule(reserved_execution_time="2020-01-01T00:00:00.000Z"),
            message=MessageConfig(content="continue", project_id="p1", base_session_id="s1"),
        ))
        scheduler_client.jobs[0] = fired.model_copy(
            update={"last_run_at": "2020-01-01T00:00:01.000Z", "last_run_status": "success"}
        )
        await pid_repository.save_pid("s1", 700, project_id="p1", cwd="/w")
        write_transcript(monitor, rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()

        await notify(event_bus, monitor)

        assert len(scheduler_client.added) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pid", [None, 4040])
    async def test_session_without_live_process(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient,
        pid
    ):
        """Test that untracked or exited sessions are skipped."""
        if pid is not None:
            await pid_repository.save_pid("s1", pid, project_id="p1", cwd="/w")
        write_transcript(monitor, rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()

        await notify(event_bus, monitor)

        assert scheduler_client.added == []

    @pytest.mark.asyncio
    async def test_auto_resume_disabled(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient,
        user_config_provider: MockUserConfigProvider
    ):
        """Test that the user preference turns scheduling off."""
        user_config_provider.auto_resume = False
        await pid_repository.save_pid("s1", 700, project_id="p1", cwd="/w")
        write_transcript(monitor, rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()

        await notify(event_bus, monitor)

        assert scheduler_client.added == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lines", [
        [],
        [rate_limit_line(sessionId="s1"), '{"type": "user", "message": {"content": "continue"}}'],
        [rate_limit_line(sessionId="s1", error="overloaded")],
        ["not json"],
    ])
    async def test_last_line_without_rate_limit(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient,
        lines
    ):
        """Test that only a final rate-limit line schedules anything."""
        await pid_repository.save_pid("s1", 700, project_id="p1", cwd="/w")
        if lines:
            write_transcript(monitor, *lines)
        monitor.start_monitoring()

        await notify(event_bus, monitor)

        assert scheduler_client.added == []

    @pytest.mark.asyncio
    async def test_stopped_monitor_ignores_queued_event(
        self,
        monitor: TranscriptRateLimitMonitor,
        event_bus: EventBus,
        pid_repository: ProcessPidRepository,
        scheduler_client: MockSchedulerClient
    ):
        """Test that an event emitted before stop is not handled after it."""
        await pid_repository.save_pid("s1", 700, project_id="p1", cwd="/w")
        write_transcript(monitor, rate_limit_line(sessionId="s1"))
        monitor.start_monitoring()

        await emit_session_changed(event_bus, "p1", "s1")
        monitor.stop_monitoring()
        await event_bus.join()
        await monitor.wait_idle()

        assert scheduler_client.added == []
