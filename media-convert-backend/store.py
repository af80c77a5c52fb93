# store.py

import os
import re
import uuid
import logging
import tempfile
import threading
from typing import Dict, List, Optional

from fastapi import Request
from pydantic import ValidationError

from errors import StorageError
from models import Job, JobStatus, ErrorKind, utcnow
from utils import safe_remove

# Job ids double as snapshot file names, so anything else is never looked up on disk.
_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

IMMUTABLE_FIELDS = frozenset({"id", "created_at", "input_path", "target", "preset", "bitrate", "source_url"})


class JobStore:
    """
    Owns every Job record and mirrors each write to a JSON snapshot
    (<jobs_dir>/<id>.json) so status and download survive a restart.

    A single re-entrant lock serialises all access; progress callbacks
    arrive from worker threads while the event loop serves status polls.
    """

    def __init__(self, jobs_dir: str):
        self.jobs_dir = jobs_dir
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()
        os.makedirs(self.jobs_dir, exist_ok=True)
        self.load_all()

    # --- snapshot I/O ---

    def _snapshot_path(self, job_id: str) -> str:
        return os.path.join(self.jobs_dir, f"{job_id}.json")

    def _write_snapshot(self, job: Job):
        fd, tmp_path = tempfile.mkstemp(dir=self.jobs_dir, prefix=f".{job.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(job.model_dump_json(indent=2))
            os.replace(tmp_path, self._snapshot_path(job.id))
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read_snapshot(self, job_id: str) -> Optional[Job]:
        path = self._snapshot_path(job_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                job = Job.model_validate_json(f.read())
        except (OSError, ValidationError) as e:
            logging.warning(f"Skipping unreadable job snapshot {path}: {e}")
            return None
        if job.id != job_id:
            logging.warning(f"Skipping job snapshot {path}: id mismatch ({job.id})")
            return None
        return job

    def _lookup(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None and _JOB_ID_PATTERN.match(job_id or ""):
            job = self._read_snapshot(job_id)
            if job is not None:
                self._jobs[job_id] = job
        return job

    def load_all(self) -> int:
        """
        Rehydrate every snapshot in the jobs directory.

        Corrupt files are skipped. Jobs that were still queued or running
        when the previous process stopped cannot be resumed, so they are
        closed out as errors instead of polling forever, and their
        input and any partial output are deleted.
        """
        loaded = 0
        with self._lock:
            for name in sorted(os.listdir(self.jobs_dir)):
                if not name.endswith(".json"):
                    continue
                job = self._read_snapshot(name[: -len(".json")])
                if job is None:
                    continue
                if not job.is_terminal:
                    safe_remove(job.input_path, "input of interrupted job")
                    safe_remove(job.output_path, "partial output of interrupted job")
                    job = job.model_copy(update={
                        "status": JobStatus.ERROR,
                        "progress": 0,
                        "error": "Conversion was interrupted by a service restart",
                        "error_kind": ErrorKind.GENERIC,
                        "updated_at": utcnow(),
                    })
                    self._persist(job)
                self._jobs[job.id] = job
                loaded += 1
        if loaded:
            logging.info(f"Rehydrated {loaded} job(s) from {self.jobs_dir}")
        return loaded

    def _persist(self, job: Job):
        try:
            self._write_snapshot(job)
        except OSError as e:
            logging.error(f"Could not persist snapshot for job {job.id}, keeping it in memory only: {e}")

    # --- public API ---

    def _new_id(self) -> str:
        while True:
            job_id = uuid.uuid4().hex
            if job_id not in self._jobs and not os.path.exists(self._snapshot_path(job_id)):
                return job_id

    def create(self, input_path: str, target, preset=None, bitrate=None, source_url=None, title=None) -> Job:
        with self._lock:
            job = Job(
                id=self._new_id(),
                status=JobStatus.QUEUED,
                input_path=input_path,
                target=target,
                preset=preset,
                bitrate=bitrate,
                source_url=source_url,
                title=title,
            )
            try:
                self._write_snapshot(job)
            except OSError as e:
                raise StorageError(f"Could not persist new job: {e}") from e
            self._jobs[job.id] = job
            return job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._lookup(job_id)
            return job.model_copy(deep=True) if job else None

    def update(self, job_id: str, **fields) -> Optional[Job]:
        """
        Merge fields into a job and persist it.

        Unknown ids are ignored. Terminal jobs are frozen and output_path is
        set-once. A failed snapshot write is logged and the change is kept in
        memory, so this never raises storage errors into the caller.
        """
        unknown = set(fields) - set(Job.model_fields)
        if unknown:
            raise ValueError(f"Unknown job field(s): {sorted(unknown)}")
        immutable = set(fields) & IMMUTABLE_FIELDS
        if immutable:
            raise ValueError(f"Immutable job field(s): {sorted(immutable)}")

        with self._lock:
            current = self._lookup(job_id)
            if current is None:
                return None
            if current.is_terminal:
                logging.debug(f"Ignoring update to terminal job {job_id}: {sorted(fields)}")
                return current.model_copy(deep=True)

            new_output = fields.get("output_path")
            if current.output_path and new_output is not None and new_output != current.output_path:
                logging.warning(f"Job {job_id} already has an output path; ignoring {new_output}")
                fields.pop("output_path")

            data = current.model_dump()
            data.update(fields)
            data["updated_at"] = utcnow()
            updated = Job.model_validate(data)

            self._jobs[job_id] = updated
            self._persist(updated)
            return updated.model_copy(deep=True)

    def remove(self, job_id: str):
        with self._lock:
            self._jobs.pop(job_id, None)
            if not _JOB_ID_PATTERN.match(job_id or ""):
                return
            path = self._snapshot_path(job_id)
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                logging.warning(f"Could not delete snapshot {path}: {e}")

    def list_all(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {"total": len(self._jobs)}
            for status in JobStatus:
                counts[status.value] = 0
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts


# Dependency for FastAPI to get the application's job store
def get_store(request: Request) -> JobStore:
    return request.app.state.store
