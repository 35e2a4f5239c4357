"""
Error taxonomy for SARA.

QuotaExceededError and CollaboratorError are always surfaced to the HTTP
boundary with enough structure to render a user-facing message.
StorageError is raised on failed writes; failed reads are logged and degrade
to an empty state by the component that owns the record.
"""

from datetime import datetime
from typing import Any


class SaraError(Exception):
    """Base class for all SARA errors."""


class QuotaExceededError(SaraError):
    """A service quota is exhausted until its next reset."""

    def __init__(self, service: str, reset_time: datetime, remaining: int, ceiling: int):
        self.service = service
        self.reset_time = reset_time
        self.remaining = remaining
        self.ceiling = ceiling
        super().__init__(
            f"Quota exceeded for {service}. Resets at {reset_time.isoformat()}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "reset_time": self.reset_time.isoformat(),
            "remaining": self.remaining,
            "ceiling": self.ceiling,
        }


class StorageError(SaraError):
    """Reading or writing a durable record failed."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class CollaboratorError(SaraError):
    """An external call (transcript source, LLM provider) failed."""

    def __init__(self, service: str, message: str, transient: bool = False):
        self.service = service
        self.transient = transient
        super().__init__(message)


class TranscriptNotAvailableError(CollaboratorError):
    """The video has no captions in the requested language."""

    def __init__(self, video_id: str, lang: str = "en"):
        self.video_id = video_id
        self.lang = lang
        super().__init__(
            "transcript",
            f"No captions available for video {video_id} in language '{lang}'",
            transient=False,
        )


class UnknownServiceError(SaraError, KeyError):
    """A quota lookup named a service that has no configuration."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Unknown quota service: {service}")

    def __str__(self) -> str:
        return self.args[0]
