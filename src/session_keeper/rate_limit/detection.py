"""
Rate-limit detection from the last line of a JSONL transcript.

The validation here is deliberately narrow: only the fields that identify
a rate-limit entry are checked, so new fields written by the agent do not
break detection.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils.logging import get_logger
from .parser import RESUME_BUFFER, ensure_aware, format_iso_instant

logger = get_logger("session-keeper.rate-limit")

_RESET_TEXT_PATTERN = re.compile(
    r"resets\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*\(([^)]+)\)",
    re.IGNORECASE
)
_LINE_SPLIT = re.compile(r"\r?\n")

FALLBACK_DELAY = timedelta(minutes=30)


class TextContent(BaseModel):
    type: Literal["text"]
    text: str


class RateLimitMessage(BaseModel):
    content: List[TextContent]


class RateLimitEntry(BaseModel):
    """A transcript line written when the agent hits its usage limit."""
    type: Literal["assistant"]
    error: Literal["rate_limit"]
    is_api_error_message: Literal[True] = Field(alias="isApiErrorMessage")
    session_id: str = Field(alias="sessionId")
    message: RateLimitMessage

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


@dataclass(frozen=True)
class RateLimitDetection:
    detected: bool
    session_id: Optional[str] = None
    reset_time_text: Optional[str] = None


def extract_last_non_empty_line(content: str) -> str:
    """Last line with non-whitespace content, for LF or CRLF text."""
    for line in reversed(_LINE_SPLIT.split(content)):
        if line.strip():
            return line
    return ""


async def read_last_line(path: Union[str, Path]) -> str:
    """Read a transcript file and return its last non-empty line."""
    try:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            content = await f.read()
    except FileNotFoundError:
        return ""
    return extract_last_non_empty_line(content)


def detect_rate_limit_from_last_line(line: str) -> RateLimitDetection:
    """Check whether one JSONL line is a rate-limit entry."""
    line = line.strip()
    if not line:
        return RateLimitDetection(detected=False)

    try:
        entry = RateLimitEntry.model_validate(json.loads(line))
    except (ValueError, ValidationError):
        return RateLimitDetection(detected=False)

    if not entry.message.content:
        return RateLimitDetection(detected=False)

    return RateLimitDetection(
        detected=True,
        session_id=entry.session_id,
        reset_time_text=entry.message.content[0].text,
    )


def _fallback(now: datetime) -> str:
    return format_iso_instant(now + FALLBACK_DELAY)


def parse_rate_limit_reset_time(text: str, now: Optional[datetime] = None) -> str:
    """
    Resolve text such as "resets 8:30pm (Asia/Tokyo)" to a resume instant.

    The local time is placed on the current day in the named zone, moved to
    the next day if it is not after ``now`` and pushed one minute past the
    boundary. Text without a time and zone, or with an unknown zone, yields
    ``now`` plus thirty minutes.
    """
    now = ensure_aware(now)

    match = _RESET_TEXT_PATTERN.search(text)
    if not match:
        return _fallback(now)

    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) is not None else 0
    period = match.group(3).lower()

    if not 1 <= hour <= 12 or minute > 59:
        return _fallback(now)

    if hour == 12:
        hour = 12 if period == "pm" else 0
    elif period == "pm":
        hour += 12

    try:
        zone = ZoneInfo(match.group(4).strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.debug("unknown_reset_timezone", timezone=match.group(4))
        return _fallback(now)

    local_now = now.astimezone(zone)
    reset_at = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if reset_at <= local_now:
        reset_at += timedelta(days=1)

    return format_iso_instant(reset_at + RESUME_BUFFER)


__all__ = [
    'RateLimitEntry',
    'RateLimitDetection',
    'extract_last_non_empty_line',
    'read_last_line',
    'detect_rate_limit_from_last_line',
    'parse_rate_limit_reset_time',
]
