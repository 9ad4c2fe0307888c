"""
Session process lifecycle glue.

Connects the PID repository and the detection service for the host's
spawn and abort paths, and reconciles persisted records with the OS
process table across restarts.
"""

import asyncio
from enum import Enum
from typing import Dict, List, Optional

from ..utils.config import DetectionConfig
from ..utils.errors import ProcessStateError
from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory
from .storage import ProcessPidRepository, ProcessRecord
from .tracker import ProcessDetectionService, ProcessSnapshotEntry

logger = get_logger("session-keeper.registry")


class TrackedProcessStatus(str, Enum):
    """What the tracker last did with a session process."""
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


class SessionProcessTracker:
    """Tracks the OS processes backing session processes."""

    def __init__(
        self,
        repository: ProcessPidRepository,
        detection: ProcessDetectionService,
        config: Optional[DetectionConfig] = None,
        event_bus: Optional[EventBus] = None
    ):
        self.repository = repository
        self.detection = detection
        self.config = config or DetectionConfig()
        self.event_bus = event_bus
        self._statuses: Dict[str, TrackedProcessStatus] = {}

    def get_status(self, session_process_id: str) -> Optional[TrackedProcessStatus]:
        return self._statuses.get(session_process_id)

    def update_status(self, session_process_id: str, status: TrackedProcessStatus) -> None:
        """
        Move a registered session process to a new status.

        Raises:
            ProcessStateError: If the id was never registered with this tracker
        """
        if session_process_id not in self._statuses:
            raise ProcessStateError(
                f"Session process {session_process_id} is not tracked"
            )
        self._statuses[session_process_id] = status

    async def snapshot(self) -> List[ProcessSnapshotEntry]:
        """Capture the process table, typically right before a spawn."""
        return await self.detection.get_current_process_list()

    async def register_spawned_process(
        self,
        session_process_id: str,
        before_processes: List[ProcessSnapshotEntry],
        project_id: str,
        cwd: str,
        command_pattern: Optional[str] = None
    ) -> Optional[ProcessRecord]:
        """
        Detect the process a spawn produced and persist its PID.

        Returns:
            The saved record, or None when no new matching process was found
        """
        if self.config.detect_delay_seconds > 0:
            await asyncio.sleep(self.config.detect_delay_seconds)

        after_processes = await self.detection.get_current_process_list()
        pid = await self.detection.detect_claude_code_pid(
            before_processes=before_processes,
            after_processes=after_processes,
            cwd=cwd,
            command_pattern=command_pattern or self.config.command_pattern,
        )

        if pid is None:
            logger.warning(
                "spawned_process_not_detected",
                session_process_id=session_process_id,
                cwd=cwd
            )
            return None

        record = await self.repository.save_pid(
            session_process_id,
            pid,
            project_id=project_id,
            cwd=cwd
        )
        self._statuses[session_process_id] = TrackedProcessStatus.RUNNING
        await self._emit("pid_saved", record)
        return record

    async def abort(self, session_process_id: str) -> bool:
        """
        Terminate the process backing a session process and forget it.

        Returns:
            True if a live process was signalled
        """
        record = await self.repository.get_pid(session_process_id)
        if record is None:
            logger.debug("abort_without_pid", session_process_id=session_process_id)
            return False

        self._statuses.setdefault(session_process_id, TrackedProcessStatus.RUNNING)

        signalled = False
        if await self.detection.is_process_alive(record.pid):
            self.update_status(session_process_id, TrackedProcessStatus.TERMINATING)
            signalled = await self.detection.kill_process(record.pid)
            if signalled and not await self._wait_for_exit(record.pid):
                logger.warning(
                    "process_still_alive_after_signal",
                    session_process_id=session_process_id,
                    pid=record.pid
                )

        await self.repository.remove_pid(session_process_id)
        self.update_status(session_process_id, TrackedProcessStatus.EXITED)
        await self._emit("pid_removed", record)
        return signalled

    async def _emit(self, name: str, record: ProcessRecord) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.emit(
            name,
            EventCategory.PROCESS,
            record.model_dump(mode="json", by_alias=True),
            source="session_process_tracker",
        )

    async def _wait_for_exit(self, pid: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.kill_grace_seconds

        while await self.detection.is_process_alive(pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.config.kill_poll_interval)
        return True

    async def get_live_record(self, session_process_id: str) -> Optional[ProcessRecord]:
        """The persisted record of a session process, if its process is still running."""
        record = await self.repository.get_pid(session_process_id)
        if record is None or not await self.detection.is_process_alive(record.pid):
            return None
        return record

    async def reconcile(self) -> List[ProcessRecord]:
        """
        Drop persisted records whose process no longer exists.

        Returns:
            The removed records
        """
        removed = []
        for record in await self.repository.get_all_pids():
            if await self.detection.is_process_alive(record.pid):
                self._statuses.setdefault(record.session_process_id, TrackedProcessStatus.RUNNING)
                continue

            await self.repository.remove_pid(record.session_process_id)
            if record.session_process_id in self._statuses:
                self.update_status(record.session_process_id, TrackedProcessStatus.EXITED)
            removed.append(record)

        logger.info("pids_reconciled", removed=len(removed))
        return removed

    async def shutdown(self, kill: bool = True) -> None:
        """Optionally signal every tracked live process, then clear the PID file."""
        if kill:
            for record in await self.repository.get_all_pids():
                if await self.detection.is_process_alive(record.pid):
                    await self.detection.kill_process(record.pid)
                self._statuses[record.session_process_id] = TrackedProcessStatus.EXITED

        await self.repository.clear_all_pids()


__all__ = [
    'TrackedProcessStatus',
    'SessionProcessTracker',
]
