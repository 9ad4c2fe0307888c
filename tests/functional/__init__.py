"""
Functional tests for Session Keeper.

These tests exercise real OS processes and real files: spawning and
detecting child processes, probing liveness and terminating them.

Requirements:
- A POSIX `sleep` executable in PATH

Usage:
    pytest tests/functional/
"""
