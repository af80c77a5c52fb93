# tasks.py

import os
import re
import asyncio
import logging
import threading
from functools import partial
from typing import Dict, Iterable, Optional, Tuple

import requests
from fastapi import Request

from config import MAX_CONCURRENT_JOBS, STORAGE_ROOT, DEFAULT_PRESET, DEFAULT_BITRATE
from errors import (
    EncodeError,
    FetchError,
    InvalidStateTransitionError,
    JobAlreadyActiveError,
    JobNotFoundError,
)
from models import ErrorKind, Job, JobStatus, Target
from progress import FETCH_DONE, Phase, clamp_percent, compose
from services import EncodeTarget
from store import JobStore
from utils import create_output_path, create_temp_path, safe_remove

MAX_ERROR_LENGTH = 500
INTERNAL_ERROR_MESSAGE = "Internal error during conversion"

ERROR_MESSAGES = {
    ErrorKind.UNAVAILABLE: "Video is unavailable, private, or region-locked",
    ErrorKind.AGE_RESTRICTED: "Video is age-restricted or requires sign-in",
    ErrorKind.LIVE_UNSUPPORTED: "Live streams are not supported",
    ErrorKind.NETWORK_OR_TIMEOUT: "Network error or timeout occurred",
}

# Checked in order; the first match wins.
_ERROR_RULES = [
    (ErrorKind.UNAVAILABLE, re.compile(r"video unavailable|not found|private|region|deleted", re.IGNORECASE)),
    (ErrorKind.AGE_RESTRICTED, re.compile(r"age[- ]restricted|sign[- ]?in", re.IGNORECASE)),
    (ErrorKind.LIVE_UNSUPPORTED, re.compile(r"\blive\b|premiere", re.IGNORECASE)),
    (ErrorKind.NETWORK_OR_TIMEOUT, re.compile(r"network|timeout|timed out|connection", re.IGNORECASE)),
]

_UNAVAILABLE_STATUS_CODES = {403, 404, 410, 451}
_NETWORK_EXCEPTIONS = (requests.ConnectionError, requests.Timeout, TimeoutError, ConnectionError)


def _scrub(message: str, paths: Iterable[Optional[str]]) -> str:
    """Replace local file paths with their base names and cap the length."""
    for path in sorted((p for p in paths if p), key=len, reverse=True):
        message = message.replace(path, os.path.basename(path.rstrip(os.sep)) or "file")
    message = " ".join(message.split())
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return message


def classify_error(exc: BaseException, paths: Iterable[Optional[str]] = ()) -> Tuple[ErrorKind, str]:
    """Map a collaborator failure onto the user-facing error taxonomy."""
    text = str(exc).strip() or exc.__class__.__name__

    if isinstance(exc, EncodeError):
        return ErrorKind.ENCODE_FAILURE, _scrub(text, paths)
    if isinstance(exc, FetchError) and exc.status_code in _UNAVAILABLE_STATUS_CODES:
        return ErrorKind.UNAVAILABLE, ERROR_MESSAGES[ErrorKind.UNAVAILABLE]
    if isinstance(exc, _NETWORK_EXCEPTIONS) or isinstance(exc.__cause__, _NETWORK_EXCEPTIONS):
        return ErrorKind.NETWORK_OR_TIMEOUT, ERROR_MESSAGES[ErrorKind.NETWORK_OR_TIMEOUT]

    for kind, pattern in _ERROR_RULES:
        if pattern.search(text):
            return kind, ERROR_MESSAGES[kind]
    return ErrorKind.GENERIC, _scrub(text, paths)


async def _in_thread(cleanup_paths, func, *args):
    """
    Run a blocking collaborator call in a worker thread.

    A thread cannot be interrupted, so if the job is cancelled it keeps
    running; the files it works on are removed once it returns.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        worker.add_done_callback(partial(_remove_after_worker, cleanup_paths))
        raise


def _remove_after_worker(paths, worker: asyncio.Future):
    if not worker.cancelled() and worker.exception() is not None:
        logging.debug(f"Worker of a cancelled job failed: {worker.exception()}")
    for path in paths:
        safe_remove(path, "file of cancelled job")


class ProgressTracker:
    """
    Writes job progress to the store, dropping values that would move the bar
    backwards or repeat the last write. Safe to call from worker threads.
    """

    def __init__(self, store: JobStore, job_id: str, start: int = 0):
        self.store = store
        self.job_id = job_id
        self.last = start
        self._lock = threading.Lock()

    def advance(self, value: int):
        with self._lock:
            if value <= self.last:
                return
            self.last = value
            self.store.update(self.job_id, progress=value)


class JobRunner:
    """
    Drives conversion jobs: queued -> running -> done | error.

    Each job runs as its own asyncio task. Blocking collaborator calls go to
    worker threads, and a semaphore caps how many jobs run at once; jobs
    waiting for a slot stay queued.
    """

    def __init__(self, store: JobStore, encoder, fetcher, storage_root: str = STORAGE_ROOT,
                 max_concurrent_jobs: int = MAX_CONCURRENT_JOBS):
        self.store = store
        self.encoder = encoder
        self.fetcher = fetcher
        self.storage_root = storage_root
        self.max_concurrent_jobs = max(1, int(max_concurrent_jobs))
        self._semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        self._tasks: Dict[str, asyncio.Task] = {}

    # --- job creation ---

    def create_local_job(self, input_path: str, target, preset: str = None, bitrate: int = None) -> Job:
        target = Target(target)
        if target == Target.MP4:
            job = self.store.create(input_path, target, preset=preset or DEFAULT_PRESET)
        else:
            job = self.store.create(input_path, target, bitrate=bitrate or DEFAULT_BITRATE)
        logging.info(f"✨ Job {job.id} created for local file ({target.value})")
        return job

    async def create_remote_job(self, url: str, target="mp3", preset: str = None,
                                bitrate: int = None) -> Tuple[Job, dict]:
        """Create a job for a remote source. Metadata is best-effort and never blocks creation."""
        metadata = {}
        try:
            metadata = await asyncio.to_thread(self.fetcher.query_metadata, url)
        except Exception as e:
            logging.warning(f"Could not get metadata for {url}: {e}")

        target = Target(target)
        _, download_path = create_temp_path(self.storage_root, "remote.download")
        job = self.store.create(
            download_path,
            target,
            preset=(preset or DEFAULT_PRESET) if target == Target.MP4 else None,
            bitrate=(bitrate or DEFAULT_BITRATE) if target == Target.MP3 else None,
            source_url=url,
            title=metadata.get("title"),
        )
        logging.info(f"✨ Job {job.id} created for remote source {url} ({target.value})")
        return job, metadata

    # --- execution ---

    @property
    def active_job_ids(self):
        return list(self._tasks)

    def submit(self, job_id: str) -> asyncio.Task:
        """Start driving a queued job in the background. Must be called from the event loop."""
        if job_id in self._tasks:
            raise JobAlreadyActiveError(job_id)
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.QUEUED:
            raise InvalidStateTransitionError(job_id, job.status.value, JobStatus.RUNNING.value)

        task = asyncio.get_running_loop().create_task(self.run(job_id), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(partial(self._on_task_done, job_id))
        return task

    def _on_task_done(self, job_id: str, task: asyncio.Task):
        self._tasks.pop(job_id, None)
        if task.cancelled():
            logging.warning(f"Job {job_id} task was cancelled")
            message = "Conversion was cancelled"
        else:
            exc = task.exception()
            if exc is None:
                return
            message = INTERNAL_ERROR_MESSAGE
            logging.error(f"💥 Unhandled error while running job {job_id}", exc_info=exc)

        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return
        safe_remove(job.input_path, "input file")
        safe_remove(job.output_path, "partial output")
        self.store.update(job_id, status=JobStatus.ERROR, progress=0, error=message, error_kind=ErrorKind.GENERIC)

    async def wait_all(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def run(self, job_id: str):
        async with self._semaphore:
            await self._execute(job_id)

    async def _execute(self, job_id: str):
        job = self.store.get(job_id)
        if job is None:
            logging.warning(f"Job {job_id} disappeared before it could start")
            return
        if job.status != JobStatus.QUEUED:
            raise InvalidStateTransitionError(job_id, job.status.value, JobStatus.RUNNING.value)

        self.store.update(job_id, status=JobStatus.RUNNING, progress=0)
        logging.info(f"📝 Running job {job_id} ({job.target.value})")
        tracker = ProgressTracker(self.store, job_id, start=0)
        output_path = None

        def on_fetch_progress(value):
            tracker.advance(compose(Phase.FETCH, value))

        def on_encode_progress(value):
            tracker.advance(compose(Phase.ENCODE, value))

        def on_local_progress(value):
            tracker.advance(clamp_percent(value))

        try:
            if job.source_url:
                await _in_thread(
                    (job.input_path,), self.fetcher.fetch, job.source_url, job.input_path, on_fetch_progress
                )
                tracker.advance(FETCH_DONE)
                encode_progress = on_encode_progress
            else:
                encode_progress = on_local_progress

            output_path = create_output_path(self.storage_root, job_id, job.target.value)
            self.store.update(job_id, output_path=output_path)
            await _in_thread(
                (job.input_path, output_path),
                self.encoder.encode, job.input_path, output_path, EncodeTarget.from_job(job), encode_progress,
            )
        except Exception as exc:
            kind, message = classify_error(exc, paths=(job.input_path, output_path, self.storage_root))
            safe_remove(job.input_path, "input file")
            safe_remove(output_path, "partial output")
            self.store.update(job_id, status=JobStatus.ERROR, progress=0, error=message, error_kind=kind)
            logging.error(f"❌ Job {job_id} failed ({kind.value}): {exc}")
            return

        if safe_remove(job.input_path, "input file"):
            logging.info(f"Cleaned up intermediate file for job {job_id}")
        self.store.update(job_id, status=JobStatus.DONE, progress=100)
        logging.info(f"✅ Job {job_id} finished. Output at: {output_path}")


# Dependency for FastAPI to get the application's job runner
def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner
