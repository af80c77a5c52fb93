"""
Router for media conversion endpoints.
Handles uploads, job submission (local and remote sources), status polling and download.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from config import MAX_FILE_SIZE_MB, FFMPEG_PATH
from errors import JobNotFoundError, JobNotReadyError, StorageError
from models import JobStatus, Target
from retrieval import retrieve
from schemas import (
    ConvertRequest,
    RemoteConvertRequest,
    UploadResponse,
    JobResponse,
    StatusResponse,
    HealthResponse,
    JobStatsResponse,
)
from services import check_ffmpeg
from store import JobStore, get_store
from tasks import JobRunner, get_runner
from utils import create_temp_path, resolve_temp_path, safe_remove, save_upload, validate_upload


# Create the router
router = APIRouter(tags=["conversion"])


@router.get("/")
def read_root():
    return {"message": "Media conversion service is running."}


@router.get("/health", response_model=HealthResponse)
def health():
    """Basic health check, including whether ffmpeg can be executed."""
    available = check_ffmpeg(FFMPEG_PATH)
    return {
        "ok": available,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ffmpeg": {"path": FFMPEG_PATH, "available": available},
    }


@router.post("/upload", response_model=UploadResponse)
async def upload_file(request: Request, file: UploadFile = File(...)):
    """Receives a source media file and saves it to temporary storage."""
    error = validate_upload(file.filename, getattr(file, "size", None), MAX_FILE_SIZE_MB)
    if error:
        raise HTTPException(status_code=400, detail=error)

    file_id, file_path = create_temp_path(request.app.state.storage_root, file.filename)
    try:
        size = await asyncio.to_thread(save_upload, file.file, file_path, MAX_FILE_SIZE_MB * 1024 * 1024)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError as e:
        logging.error(f"Failed to save upload {file.filename}: {e}")
        raise HTTPException(status_code=500, detail="Upload failed")

    if size == 0:
        safe_remove(file_path, "empty upload")
        raise HTTPException(status_code=400, detail="No file provided")
    logging.info(f"Upload saved as {file_id} ({size} bytes)")
    return UploadResponse(file_id=file_id, original_name=file.filename, size=size)


@router.post("/convert", response_model=JobResponse)
async def convert(
    request: Request,
    body: ConvertRequest,
    store: JobStore = Depends(get_store),
    runner: JobRunner = Depends(get_runner),
):
    """Creates a conversion job for an uploaded file and starts it in the background."""
    input_path = resolve_temp_path(request.app.state.storage_root, body.file_id)
    if not input_path:
        raise HTTPException(status_code=404, detail="Input file not found")

    if any(job.input_path == input_path and not job.is_terminal for job in store.list_all()):
        raise HTTPException(status_code=409, detail="Input file is already being converted")

    try:
        job = runner.create_local_job(
            input_path,
            body.target,
            preset=body.preset if body.target == Target.MP4 else None,
            bitrate=body.bitrate if body.target == Target.MP3 else None,
        )
        runner.submit(job.id)
    except StorageError as e:
        logging.error(f"Failed to create conversion job: {e}")
        raise HTTPException(status_code=500, detail="Failed to start conversion")
    return JobResponse(job_id=job.id)


@router.post("/remote", response_model=JobResponse)
async def convert_remote(
    request: Request,
    body: RemoteConvertRequest,
    runner: JobRunner = Depends(get_runner),
):
    """Downloads the audio of a YouTube video, then converts it. Returns video details when available."""
    if not request.app.state.enable_remote:
        raise HTTPException(status_code=403, detail="Remote download feature is disabled")
    if not runner.fetcher.validate_url(body.url):
        raise HTTPException(status_code=400, detail="Invalid YouTube URL format or unsupported host")

    url = runner.fetcher.sanitize_url(body.url)
    try:
        job, metadata = await runner.create_remote_job(url, body.target, preset=body.preset, bitrate=body.bitrate)
        runner.submit(job.id)
    except StorageError as e:
        logging.error(f"Failed to create remote job for {url}: {e}")
        raise HTTPException(status_code=500, detail="Failed to start conversion")

    return JobResponse(
        job_id=job.id,
        title=metadata.get("title"),
        duration=metadata.get("duration"),
        author=metadata.get("author"),
        thumbnail=metadata.get("thumbnail"),
    )


@router.get("/jobs", response_model=JobStatsResponse)
def job_stats(store: JobStore = Depends(get_store)):
    """Job counts by status, for diagnostics."""
    return store.stats()


@router.get("/jobs/{job_id}", response_model=StatusResponse)
def get_job_status(
    job_id: str,
    request: Request,
    download: Optional[str] = None,
    store: JobStore = Depends(get_store),
):
    """Checks the status of a job. With ?download=1 the output is streamed instead."""
    if download == "1":
        return _stream_output(store, job_id)

    job = store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    response = StatusResponse(job_id=job.id, status=job.status.value, progress=job.progress)
    if job.status == JobStatus.DONE:
        response.download_url = str(request.app.url_path_for("download_job", job_id=job.id))
    if job.status == JobStatus.ERROR:
        response.error = job.error
    return response


@router.get("/jobs/{job_id}/download", name="download_job")
def download_job(job_id: str, store: JobStore = Depends(get_store)):
    """Streams the converted file of a finished job."""
    return _stream_output(store, job_id)


def _stream_output(store: JobStore, job_id: str) -> StreamingResponse:
    try:
        artifact = retrieve(store, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotReadyError as e:
        raise HTTPException(status_code=409, detail=f"File not ready (status: {e.status})")

    return StreamingResponse(
        artifact.iter_bytes(),
        media_type=artifact.content_type,
        headers={
            "Content-Length": str(artifact.content_length),
            "Content-Disposition": artifact.content_disposition,
            "Cache-Control": "no-cache",
        },
    )
