"""
Test utilities for Session Keeper.
"""

from .async_helpers import wait_for_condition
from .mock_helpers import (
    MockDetectionService,
    MockLifecycle,
    MockSchedulerClient,
    MockSessionRepository,
    MockUserConfigProvider,
    SpyResumeJobFactory,
    rate_limit_entry,
    rate_limit_line,
    user_entry,
)

__all__ = [
    "wait_for_condition",
    "MockDetectionService",
    "MockLifecycle",
    "MockSchedulerClient",
    "MockSessionRepository",
    "MockUserConfigProvider",
    "SpyResumeJobFactory",
    "rate_limit_entry",
    "rate_limit_line",
    "user_entry",
]
