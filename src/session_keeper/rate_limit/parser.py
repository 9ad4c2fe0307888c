"""
Rate-limit message parsing.

Pure functions: recognize the agent's session-limit notice, convert its
12-hour reset token to a 24-hour clock time and compute when to resume.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from .models import ConversationEntry


# The agent separates the two halves with U+2219; middle dot and bullet also occur
_RATE_LIMIT_PATTERN = re.compile(
    r"Session limit reached\s*[∙·•]\s*resets\s+(\d{1,2}(?:am|pm))",
    re.IGNORECASE
)
_RESET_TOKEN_PATTERN = re.compile(r"^(\d{1,2})(am|pm)$", re.IGNORECASE)

RESUME_BUFFER = timedelta(minutes=1)


@dataclass(frozen=True)
class ResetTime:
    """A wall-clock time of day in 24-hour form."""
    hour: int
    minute: int = 0

    def to_label(self) -> str:
        """12-hour label such as '7pm' or '12am'."""
        period = "am" if self.hour < 12 else "pm"
        hour12 = self.hour % 12 or 12
        return f"{hour12}{period}"


def format_iso_instant(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def ensure_aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def extract_reset_time(text: str) -> Optional[str]:
    match = _RATE_LIMIT_PATTERN.search(text)
    return match.group(1) if match else None


def parse_rate_limit_message(
    entry: Union[ConversationEntry, Mapping[str, Any]]
) -> Optional[str]:
    """
    Extract the reset time token from a rate-limit notice.

    Args:
        entry: Transcript entry; only API error messages are inspected

    Returns:
        The token verbatim (for example "7pm"), or None
    """
    if not isinstance(entry, ConversationEntry):
        try:
            entry = ConversationEntry.model_validate(entry)
        except ValidationError:
            return None

    if not entry.is_api_error_message or entry.message is None:
        return None

    for text in entry.message.iter_text():
        token = extract_reset_time(text)
        if token:
            return token

    return None


def parse_reset_time(token: str) -> Optional[ResetTime]:
    """
    Convert a 12-hour token to a 24-hour time.

    12am is hour 0 and 12pm is hour 12. Hours outside 1..12 are invalid.
    """
    match = _RESET_TOKEN_PATTERN.match(token)
    if not match:
        return None

    hour = int(match.group(1))
    period = match.group(2).lower()

    if hour < 1 or hour > 12:
        return None

    if period == "am":
        hour24 = 0 if hour == 12 else hour
    else:
        hour24 = 12 if hour == 12 else hour + 12

    return ResetTime(hour=hour24, minute=0)


def calculate_resume_datetime(token: str, now: Optional[datetime] = None) -> Optional[str]:
    """
    Compute when to resume after a rate limit resets.

    The reset time is resolved on the UTC calendar day of ``now``, moved to
    the next day if it is not after ``now``, then pushed one minute past the
    boundary.

    Returns:
        ISO instant such as "2025-11-16T19:01:00.000Z", or None if the
        token cannot be parsed
    """
    reset = parse_reset_time(token)
    if reset is None:
        return None

    now = ensure_aware(now).astimezone(timezone.utc)
    reset_at = now.replace(hour=reset.hour, minute=reset.minute, second=0, microsecond=0)

    if reset_at <= now:
        reset_at += timedelta(days=1)

    return format_iso_instant(reset_at + RESUME_BUFFER)


__all__ = [
    'ResetTime',
    'RESUME_BUFFER',
    'format_iso_instant',
    'ensure_aware',
    'extract_reset_time',
    'parse_rate_limit_message',
    'parse_reset_time',
    'calculate_resume_datetime',
]
