"""
Process detection for the process registry.

Stateless helpers over the OS process table: snapshot running processes,
find the process a spawn produced by diffing snapshots, probe liveness
and send the graceful termination signal.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

import psutil

from ..utils.logging import get_logger

logger = get_logger("session-keeper.registry")


@dataclass(frozen=True)
class ProcessSnapshotEntry:
    """One observed OS process. Never persisted."""
    pid: int
    command: str


class DetectionStrategy(ABC):
    """Picks the process a spawn produced from two process snapshots."""

    @abstractmethod
    def detect_new_process(
        self,
        before: Iterable[ProcessSnapshotEntry],
        after: Iterable[ProcessSnapshotEntry],
        cwd: str,
        command_pattern: str
    ) -> Optional[int]:
        """Return the pid of the spawned process, or None."""


class NewestMatchingProcessStrategy(DetectionStrategy):
    """
    New pids whose command contains the pattern; commands mentioning the
    working directory win, then the highest pid.

    Assumes pids increase monotonically on the platform.
    """

    def detect_new_process(
        self,
        before: Iterable[ProcessSnapshotEntry],
        after: Iterable[ProcessSnapshotEntry],
        cwd: str,
        command_pattern: str
    ) -> Optional[int]:
        before_pids = {entry.pid for entry in before}
        candidates = [
            entry for entry in after
            if entry.pid not in before_pids and command_pattern in entry.command
        ]

        if not candidates:
            return None

        if len(candidates) > 1 and cwd:
            with_cwd = [entry for entry in candidates if cwd in entry.command]
            if with_cwd:
                candidates = with_cwd

        return max(entry.pid for entry in candidates)


class ProcessDetectionService:
    """OS process listing, spawn detection, liveness and termination."""

    def __init__(self, strategy: Optional[DetectionStrategy] = None):
        self.strategy = strategy or NewestMatchingProcessStrategy()

    async def get_current_process_list(self) -> List[ProcessSnapshotEntry]:
        """
        List every visible OS process with its command line.

        The result always contains the calling process.
        """
        entries = await asyncio.to_thread(self._list_processes)

        own_pid = os.getpid()
        if not any(entry.pid == own_pid for entry in entries):
            entries.append(ProcessSnapshotEntry(own_pid, " ".join(psutil.Process(own_pid).cmdline())))

        return entries

    def _list_processes(self) -> List[ProcessSnapshotEntry]:
        entries = []
        for process in psutil.process_iter(['pid', 'name', 'cmdline']):
            try:
                cmdline = process.info.get('cmdline')
                command = " ".join(cmdline) if cmdline else f"[{process.info.get('name') or ''}]"
                entries.append(ProcessSnapshotEntry(process.info['pid'], command))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return entries

    async def detect_claude_code_pid(
        self,
        before_processes: List[ProcessSnapshotEntry],
        after_processes: List[ProcessSnapshotEntry],
        cwd: str,
        command_pattern: str
    ) -> Optional[int]:
        """
        Find the agent process spawned between two snapshots.

        Returns:
            The detected pid, or None if no new matching process exists
        """
        pid = self.strategy.detect_new_process(
            before_processes,
            after_processes,
            cwd,
            command_pattern
        )

        logger.debug(
            "pid_detection",
            detected_pid=pid,
            command_pattern=command_pattern,
            new_processes=len(after_processes) - len(before_processes)
        )
        return pid

    async def is_process_alive(self, pid: int) -> bool:
        """True if a process with this pid exists."""
        if pid <= 0:
            return False
        return await asyncio.to_thread(psutil.pid_exists, pid)

    async def kill_process(self, pid: int) -> bool:
        """
        Send SIGTERM to a process.

        Returns:
            Whether the signal was delivered. The process may still be
            running; poll is_process_alive() to confirm exit.
        """
        if pid <= 0:
            return False

        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            logger.debug("kill_target_missing", pid=pid)
            return False
        except psutil.AccessDenied as e:
            logger.warning("kill_denied", pid=pid, error=str(e))
            return False

        logger.info("process_terminated", pid=pid)
        return True


__all__ = [
    'ProcessSnapshotEntry',
    'DetectionStrategy',
    'NewestMatchingProcessStrategy',
    'ProcessDetectionService',
]
