"""
Pydantic models for data validation in the Media Conversion service.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, field_validator

from config import VIDEO_PRESETS, DEFAULT_PRESET, MIN_BITRATE, MAX_BITRATE
from models import Target


def _check_bitrate(value):
    if value is not None and not MIN_BITRATE <= value <= MAX_BITRATE:
        raise ValueError(f"Bitrate must be between {MIN_BITRATE} and {MAX_BITRATE} kbps")
    return value


def _check_preset(value):
    if value is not None and value not in VIDEO_PRESETS:
        raise ValueError(f"Invalid preset. Must be one of {sorted(VIDEO_PRESETS)}")
    return value


Bitrate = Annotated[Optional[int], AfterValidator(_check_bitrate)]
Preset = Annotated[Optional[str], AfterValidator(_check_preset)]


class ConvertRequest(BaseModel):
    """Request model for converting a previously uploaded file."""
    file_id: str
    target: Target
    preset: Preset = DEFAULT_PRESET
    bitrate: Bitrate = None


class RemoteConvertRequest(BaseModel):
    """Request model for fetching a remote source and converting it."""
    url: str
    target: Target = Target.MP3
    preset: Preset = None
    bitrate: Bitrate = None

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("URL cannot be empty")
        return value


class UploadResponse(BaseModel):
    """Response model for an uploaded source file."""
    file_id: str
    original_name: str
    size: int


class JobResponse(BaseModel):
    """Response when submitting a conversion job."""
    job_id: str
    title: Optional[str] = None
    duration: Optional[int] = None
    author: Optional[str] = None
    thumbnail: Optional[str] = None


class StatusResponse(BaseModel):
    """Response for checking job status."""
    job_id: str
    status: str  # "queued" | "running" | "done" | "error"
    progress: Optional[int] = None
    download_url: Optional[str] = None
    error: Optional[str] = None


class FFmpegHealth(BaseModel):
    path: str
    available: bool


class HealthResponse(BaseModel):
    ok: bool
    timestamp: str
    ffmpeg: FFmpegHealth


class JobStatsResponse(BaseModel):
    total: int
    queued: int
    running: int
    done: int
    error: int
