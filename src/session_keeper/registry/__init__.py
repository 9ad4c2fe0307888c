"""
Process registry for Session Keeper.

This package tracks the OS processes backing agent sessions:
- PID persistence keyed by session process id
- Spawn detection by diffing process snapshots
- Liveness checks and graceful termination
- Reconciliation of persisted records with the process table
"""

from .storage import ProcessPidRepository, ProcessRecord, ProcessPidsFile
from .tracker import (
    ProcessDetectionService,
    ProcessSnapshotEntry,
    DetectionStrategy,
    NewestMatchingProcessStrategy,
)
from .lifecycle import SessionProcessTracker, TrackedProcessStatus

__all__ = [
    # Storage
    'ProcessPidRepository',
    'ProcessRecord',
    'ProcessPidsFile',

    # Detection
    'ProcessDetectionService',
    'ProcessSnapshotEntry',
    'DetectionStrategy',
    'NewestMatchingProcessStrategy',

    # Lifecycle
    'SessionProcessTracker',
    'TrackedProcessStatus',
]
