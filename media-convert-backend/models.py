# models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR})


class Target(str, Enum):
    MP4 = "mp4"
    MP3 = "mp3"


class ErrorKind(str, Enum):
    UNAVAILABLE = "unavailable"
    AGE_RESTRICTED = "age_restricted"
    LIVE_UNSUPPORTED = "live_unsupported"
    NETWORK_OR_TIMEOUT = "network_or_timeout"
    ENCODE_FAILURE = "encode_failure"
    GENERIC = "generic"


class Job(BaseModel):
    """Job model for tracking media conversion tasks."""

    id: str
    status: JobStatus = JobStatus.QUEUED
    progress: Optional[int] = None
    input_path: str
    output_path: Optional[str] = None
    target: Target
    preset: Optional[str] = None
    bitrate: Optional[int] = None
    source_url: Optional[str] = None
    title: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
