"""
Rate-limit handling for agent transcripts.

This package provides:
- Parsing of the agent's session-limit notice and resume time computation
- Last-line JSONL detection with timezone-aware reset parsing
"""

from .models import ConversationEntry, EntryMessage, SessionData, SessionLookup
from .parser import (
    ResetTime,
    parse_rate_limit_message,
    parse_reset_time,
    calculate_resume_datetime,
)
from .detection import (
    RateLimitDetection,
    detect_rate_limit_from_last_line,
    extract_last_non_empty_line,
    parse_rate_limit_reset_time,
    read_last_line,
)

__all__ = [
    'ConversationEntry',
    'EntryMessage',
    'SessionData',
    'SessionLookup',
    'ResetTime',
    'parse_rate_limit_message',
    'parse_reset_time',
    'calculate_resume_datetime',
    'RateLimitDetection',
    'detect_rate_limit_from_last_line',
    'extract_last_non_empty_line',
    'parse_rate_limit_reset_time',
    'read_last_line',
]
