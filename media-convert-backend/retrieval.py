"""
Download eligibility and artifact streaming.

A job's output can be downloaded only when the job is done and its output
file still exists. Every call opens the file fresh; nothing is cached and
the job record is never modified, so repeated downloads work until the
retention sweeper reclaims the file.
"""

import os
from dataclasses import dataclass
from typing import BinaryIO, Iterator

from config import CONTENT_TYPES
from errors import JobNotFoundError, JobNotReadyError
from models import JobStatus
from store import JobStore
from utils import sanitize_filename

CHUNK_SIZE = 64 * 1024


@dataclass
class Artifact:
    path: str
    content_type: str
    content_length: int
    filename: str
    handle: BinaryIO

    def iter_bytes(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        try:
            while True:
                chunk = self.handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.handle.close()

    def close(self):
        self.handle.close()

    @property
    def content_disposition(self) -> str:
        return f'attachment; filename="{self.filename}"'


def retrieve(store: JobStore, job_id: str) -> Artifact:
    """
    Open a finished job's output for download.

    Raises:
        JobNotFoundError: the id is unknown.
        JobNotReadyError: the job is not done, or its output is missing or unreadable.
    """
    job = store.get(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status != JobStatus.DONE or not job.output_path:
        raise JobNotReadyError(job_id, job.status.value)

    try:
        handle = open(job.output_path, "rb")
    except OSError:
        raise JobNotReadyError(job_id, job.status.value)
    try:
        size = os.fstat(handle.fileno()).st_size
    except OSError:
        handle.close()
        raise JobNotReadyError(job_id, job.status.value)

    extension = job.target.value
    filename = sanitize_filename(job.title, fallback=f"converted_{job.id}")
    return Artifact(
        path=job.output_path,
        content_type=CONTENT_TYPES.get(extension, "application/octet-stream"),
        content_length=size,
        filename=f"{filename}.{extension}",
        handle=handle,
    )
