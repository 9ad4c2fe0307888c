"""
PID storage for the process registry.

Persists which OS process backs which logical session as a single JSON
document. Reads never fail: a missing, unreadable or structurally invalid
file is treated as an empty registry so that process cleanup is never
blocked by a corrupted state file.
"""

from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..storage.atomic import path_lock, read_json, write_json_atomic
from ..utils.logging import get_logger

logger = get_logger("session-keeper.registry")


class ProcessRecord(BaseModel):
    """A tracked session process."""
    pid: int = Field(gt=0)
    session_process_id: str = Field(alias="sessionProcessId")
    project_id: str = Field(alias="projectId")
    cwd: str
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class ProcessPidsFile(BaseModel):
    """On-disk document: session process id -> ProcessRecord."""
    processes: Dict[str, ProcessRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_keys(self) -> "ProcessPidsFile":
        for key, record in self.processes.items():
            if record.session_process_id != key:
                raise ValueError(
                    f"record keyed {key!r} belongs to {record.session_process_id!r}"
                )
        return self

    def to_json(self) -> Dict:
        return self.model_dump(mode="json", by_alias=True)


class ProcessPidRepository:
    """Read-modify-write access to the PID file."""

    def __init__(self, pid_file: Path):
        """
        Initialize the repository.

        Args:
            pid_file: Path of the JSON document holding tracked processes
        """
        self.pid_file = Path(pid_file).expanduser()

    def _ensure_directory(self) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)

    async def _read(self) -> ProcessPidsFile:
        if not self.pid_file.exists():
            return ProcessPidsFile()

        try:
            return ProcessPidsFile.model_validate(await read_json(self.pid_file))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "pid_file_unreadable",
                path=str(self.pid_file),
                error=str(e)
            )
            return ProcessPidsFile()

    async def _write(self, data: ProcessPidsFile) -> None:
        self._ensure_directory()
        await write_json_atomic(self.pid_file, data.to_json())

    async def save_pid(
        self,
        session_process_id: str,
        pid: int,
        project_id: str,
        cwd: str
    ) -> ProcessRecord:
        """
        Record the PID backing a session process, replacing any previous one.

        Returns:
            The stored record
        """
        async with path_lock(self.pid_file):
            data = await self._read()

            record = ProcessRecord(
                pid=pid,
                session_process_id=session_process_id,
                project_id=project_id,
                cwd=cwd,
                created_at=datetime.now(timezone.utc),
            )
            data.processes[session_process_id] = record
            await self._write(data)

        logger.info(
            "pid_saved",
            session_process_id=session_process_id,
            pid=pid,
            project_id=project_id
        )
        return record

    async def remove_pid(self, session_process_id: str) -> Optional[ProcessRecord]:
        """
        Forget a session process.

        Returns:
            The removed record, or None if nothing was tracked
        """
        async with path_lock(self.pid_file):
            data = await self._read()
            record = data.processes.pop(session_process_id, None)
            await self._write(data)

        if record is not None:
            logger.info(
                "pid_removed",
                session_process_id=session_process_id,
                pid=record.pid
            )
        return record

    async def get_pid(self, session_process_id: str) -> Optional[ProcessRecord]:
        data = await self._read()
        return data.processes.get(session_process_id)

    async def get_all_pids(self) -> List[ProcessRecord]:
        data = await self._read()
        return list(data.processes.values())

    async def clear_all_pids(self) -> None:
        """Drop every tracked process."""
        async with path_lock(self.pid_file):
            await self._write(ProcessPidsFile())

        logger.info("pids_cleared", path=str(self.pid_file))


__all__ = [
    'ProcessRecord',
    'ProcessPidsFile',
    'ProcessPidRepository',
]
