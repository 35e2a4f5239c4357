"""
Shared utility functions for SARA.

Time helpers (all persisted timestamps are integer epoch milliseconds) and
YouTube video ID handling used by the pipeline and the HTTP layer.
"""

import re
import time
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urlparse

# Returns the current time as epoch milliseconds; injectable for tests
Clock = Callable[[], int]

MS_PER_SECOND = 1000
MS_PER_HOUR = 60 * 60 * MS_PER_SECOND
MS_PER_DAY = 24 * MS_PER_HOUR

YOUTUBE_URL_PATTERN = re.compile(
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})"
)
YOUTUBE_ID_PATTERN = re.compile(r"^([a-zA-Z0-9_-]{11})$")

VALID_YOUTUBE_HOSTS = frozenset({"youtube.com", "www.youtube.com", "youtu.be", "m.youtube.com"})


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def ms_to_datetime(value: int) -> datetime:
    """Convert epoch milliseconds to a timezone-aware UTC datetime."""
    return datetime.fromtimestamp(value / MS_PER_SECOND, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * MS_PER_SECOND)


def extract_video_id(value: str) -> str | None:
    """
    Extract the 11-character video ID from a YouTube URL or raw ID.

    Examples:
        >>> extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10")
        'dQw4w9WgXcQ'
        >>> extract_video_id("https://youtu.be/dQw4w9WgXcQ")
        'dQw4w9WgXcQ'
        >>> extract_video_id("dQw4w9WgXcQ")
        'dQw4w9WgXcQ'
        >>> extract_video_id("not a video") is None
        True
    """
    match = YOUTUBE_URL_PATTERN.search(value) or YOUTUBE_ID_PATTERN.match(value)
    return match.group(1) if match else None


def normalize_video_id(value: str) -> str | None:
    """
    Resolve user input to a video ID, rejecting URLs on foreign hosts.

    Raw IDs pass through. URLs must use http(s) and a YouTube host, so that
    ``https://evil.com/?ref=youtube.com/watch?v=...`` is not accepted.

    Examples:
        >>> normalize_video_id("https://m.youtube.com/watch?v=dQw4w9WgXcQ")
        'dQw4w9WgXcQ'
        >>> normalize_video_id("https://evil.com?ref=youtube.com/watch?v=dQw4w9WgXcQ") is None
        True
        >>> normalize_video_id("ftp://youtube.com/watch?v=dQw4w9WgXcQ") is None
        True
    """
    value = value.strip()
    if YOUTUBE_ID_PATTERN.match(value):
        return value

    if not value.startswith(("http://", "https://")):
        return None

    if urlparse(value).netloc not in VALID_YOUTUBE_HOSTS:
        return None

    return extract_video_id(value)


def sanitize_for_log(value: str) -> str:
    """Escape newlines, carriage returns and tabs so user input can't forge log lines."""
    return value.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
