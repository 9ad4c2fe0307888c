"""
Session Keeper - process tracking and rate-limit auto-resume for AI coding agents.

This package provides:
- Detection, persistence and termination of spawned agent processes
- Crash-tolerant file-backed key-value storage
- Rate-limit detection in agent output with scheduled resume jobs
"""

__version__ = "0.1.0"
__author__ = "Session Keeper Team"

__all__ = [
    '__version__',
]
