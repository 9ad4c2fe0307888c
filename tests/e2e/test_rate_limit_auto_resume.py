"""
End-to-end tests for rate-limit auto-resume.

Drives a full SessionKeeper: session-changed notification, transcript
inspection, resume job upsert, persisted history and the scheduled
continue call.
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from session_keeper.app import SessionKeeper
from session_keeper.scheduler.models import (
    MessageConfig,
    NewSchedulerJob,
    ReservedSchedule,
    UpdateSchedulerJob,
)
from session_keeper.scheduler.service import SchedulerService
from session_keeper.session.rate_limit_monitor import RESUME_JOB_SCHEDULED
from session_keeper.session.resume_job import RESUME_JOB_MARKER
from session_keeper.utils.config import SessionKeeperConfig

from tests.utils.async_helpers import wait_for_condition
from tests.utils.mock_helpers import (
    MockLifecycle,
    MockSessionRepository,
    MockUserConfigProvider,
    rate_limit_entry,
    rate_limit_line,
    user_entry,
)

pytestmark = pytest.mark.e2e


async def settle(keeper: SessionKeeper) -> None:
    await keeper.event_bus.join()
    await keeper.monitor.wait_idle()
    await keeper.event_bus.join()
    if keeper.transcript_monitor is not None:
        await keeper.transcript_monitor.wait_idle()
        await keeper.event_bus.join()
    await keeper.resume_history.wait_for_pending_writes()


async def run_now(keeper: SessionKeeper, job_id: str) -> None:
    """Move a resume job into the past so the scheduler fires it."""
    overdue = datetime.now(timezone.utc) - timedelta(minutes=1)
    await keeper.scheduler.update_job(job_id, UpdateSchedulerJob(
        schedule=ReservedSchedule(reserved_execution_time=overdue.strftime("%Y-%m-%dT%H:%M:%S.000Z")),
    ))

    async def recorded():
        return (await keeper.scheduler.get_job(job_id)).last_run_status is not None

    assert await wait_for_condition(recorded, timeout=2.0)


@pytest.fixture
async def keeper(test_config: SessionKeeperConfig, session_repository: MockSessionRepository, lifecycle: MockLifecycle):
    instance = SessionKeeper(
        test_config,
        session_repository,
        lifecycle,
        user_config=MockUserConfigProvider(auto_resume=True),
    )
    await instance.start()
    yield instance
    await instance.stop()


class TestAutoResume:
    """Test the full rate-limit to resume-job flow."""

    @pytest.mark.asyncio
    async def test_rate_limit_schedules_resume(self, keeper: SessionKeeper, session_repository: MockSessionRepository):
        """Test that a rate-limited session gets one reserved resume job."""
        session_repository.set_conversations("p1", "s1", [
            user_entry("refactor the parser"),
            rate_limit_entry("Session limit reached ∙ resets 7pm"),
        ])

        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)

        jobs = await keeper.scheduler.get_jobs()
        assert len(jobs) == 1
        job = jobs[0]
        assert RESUME_JOB_MARKER in job.name
        assert job.message.base_session_id == "s1"
        assert job.message.project_id == "p1"
        assert job.message.content == "continue"

        resume_at = job.schedule.execution_time
        now = datetime.now(timezone.utc)
        assert now < resume_at <= now + timedelta(days=1, minutes=1)
        assert (resume_at.hour, resume_at.minute) == (19, 1)

        history = await keeper.get_resume_history()
        assert history["s1"].job_id == job.id
        assert history["s1"].reset_time == "7pm"

        events = keeper.event_bus.get_history(event_name=RESUME_JOB_SCHEDULED)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_second_rate_limit_reschedules_same_job(
        self,
        keeper: SessionKeeper,
        session_repository: MockSessionRepository
    ):
        """Test the upsert across repeated notices."""
        session_repository.set_conversations("p1", "s1", [rate_limit_entry("Session limit reached ∙ resets 7pm")])
        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)
        first = (await keeper.scheduler.get_jobs())[0]

        session_repository.set_conversations("p1", "s1", [rate_limit_entry("Session limit reached ∙ resets 3am")])
        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)

        jobs = await keeper.scheduler.get_jobs()
        assert [job.id for job in jobs] == [first.id]
        assert jobs[0].schedule.execution_time.hour == 3

    @pytest.mark.asyncio
    async def test_history_survives_restart(
        self,
        keeper: SessionKeeper,
        test_config: SessionKeeperConfig,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test that resume history is reloaded from disk."""
        session_repository.set_conversations("p1", "s1", [rate_limit_entry()])
        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)
        await keeper.stop()

        restarted = SessionKeeper(test_config, session_repository, lifecycle)
        await restarted.start()
        try:
            assert "s1" in await restarted.get_resume_history()

            await restarted.forget_resume("s1")
            assert await restarted.get_resume_history() == {}
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_auto_resume_disabled(
        self,
        test_config: SessionKeeperConfig,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test that the user preference turns scheduling off."""
        keeper = SessionKeeper(
            test_config,
            session_repository,
            lifecycle,
            user_config=MockUserConfigProvider(auto_resume=False),
        )
        await keeper.start()
        try:
            session_repository.set_conversations("p1", "s1", [rate_limit_entry()])
            await keeper.notify_session_changed("p1", "s1")
            await settle(keeper)

            assert await keeper.scheduler.get_jobs() == []
            assert await keeper.get_resume_history() == {}
        finally:
            await keeper.stop()

    @pytest.mark.asyncio
    async def test_overdue_resume_job_continues_session(
        self,
        test_config: SessionKeeperConfig,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test that a resume job whose time passed while stopped fires on start."""

        async def no_op(job):
            return None

        store = SchedulerService(test_config.storage.scheduler_config_path, no_op)
        overdue = datetime.now(timezone.utc) - timedelta(minutes=10)
        await store.add_job(NewSchedulerJob(
            name=f"{RESUME_JOB_MARKER}: s1",
            schedule=ReservedSchedule(reserved_execution_time=overdue.strftime("%Y-%m-%dT%H:%M:%S.000Z")),
            message=MessageConfig(content="continue", project_id="p1", base_session_id="s1"),
        ))

        keeper = SessionKeeper(test_config, session_repository, lifecycle)
        await keeper.start()
        try:
            async def continued():
                return bool(lifecycle.continued)

            assert await wait_for_condition(continued, timeout=2.0)
            assert lifecycle.continued[0] == {
                "session_process_id": "s1",
                "message": "continue",
                "base_session_id": "s1",
            }
        finally:
            await keeper.stop()

    @pytest.mark.asyncio
    async def test_stale_pids_are_reconciled_on_start(
        self,
        test_config: SessionKeeperConfig,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test restart hygiene through the composition root."""
        keeper = SessionKeeper(test_config, session_repository, lifecycle)
        await keeper.repository.save_pid("gone", 999_999_999, project_id="p1", cwd="/w")

        await keeper.start()
        try:
            assert await keeper.repository.get_all_pids() == []
        finally:
            await keeper.stop(kill_processes=False)

    @pytest.mark.asyncio
    async def test_rate_limit_after_resume_ran_resumes_again(
        self,
        keeper: SessionKeeper,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test that a session hitting a second limit after its resume is resumed twice."""
        session_repository.set_conversations("p1", "s1", [rate_limit_entry("Session limit reached ∙ resets 7pm")])
        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)
        first = (await keeper.scheduler.get_jobs())[0]

        await run_now(keeper, first.id)
        assert len(lifecycle.continued) == 1

        session_repository.set_conversations("p1", "s1", [rate_limit_entry("Session limit reached ∙ resets 3am")])
        await keeper.notify_session_changed("p1", "s1")
        await settle(keeper)

        history = await keeper.get_resume_history()
        second_id = history["s1"].job_id
        assert second_id != first.id
        second = await keeper.scheduler.get_job(second_id)
        assert second.last_run_status is None
        assert second.schedule.execution_time.hour == 3

        await run_now(keeper, second_id)

        assert len(lifecycle.continued) == 2
        assert [call["base_session_id"] for call in lifecycle.continued] == ["s1", "s1"]


class TestTranscriptAutoResume:
    """Test scheduling from JSONL transcripts of live sessions."""

    @pytest.mark.asyncio
    async def test_live_session_transcript_schedules_resume(
        self,
        test_config: SessionKeeperConfig,
        temp_dir: Path,
        session_repository: MockSessionRepository,
        lifecycle: MockLifecycle
    ):
        """Test the transcript path through the composition root."""
        test_config.storage.transcripts_dir = temp_dir / "projects"
        transcript = test_config.storage.transcripts_dir / "p1" / "s2.jsonl"
        transcript.parent.mkdir(parents=True)
        transcript.write_text(rate_limit_line(sessionId="s2") + "\n")

        keeper = SessionKeeper(
            test_config,
            session_repository,
            lifecycle,
            user_config=MockUserConfigProvider(auto_resume=True),
        )
        await keeper.start()
        try:
            # The test process stands in for the session's live agent process
            await keeper.repository.save_pid("s2", os.getpid(), project_id="p1", cwd=str(temp_dir))

            await keeper.notify_session_changed("p1", "s2")
            await settle(keeper)

            jobs = await keeper.scheduler.get_jobs()
            assert len(jobs) == 1
            assert jobs[0].message.base_session_id == "s2"
            assert jobs[0].schedule.execution_time > datetime.now(timezone.utc)

            history = await keeper.get_resume_history()
            assert history["s2"].reset_time == "You've hit your limit · resets 8pm (Asia/Tokyo)"

            await keeper.notify_session_changed("p1", "s2")
            await settle(keeper)
            assert [job.id for job in await keeper.scheduler.get_jobs()] == [jobs[0].id]
        finally:
            await keeper.stop(kill_processes=False)

    @pytest.mark.asyncio
    async def test_transcripts_unused_without_directory(self, keeper: SessionKeeper):
        """Test that the transcript monitor is only built when configured."""
        assert keeper.transcript_monitor is None
