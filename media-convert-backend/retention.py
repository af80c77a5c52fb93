import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import (
    RETENTION_HOURS,
    ERROR_RETENTION_HOURS,
    SWEEP_INTERVAL_SECONDS,
    SWEEP_INITIAL_DELAY_SECONDS,
)
from models import JobStatus
from store import JobStore
from utils import cleanup_old_files, safe_remove


class RetentionSweeper:
    """
    Periodically reclaims finished jobs.

    A done job older than the retention window loses its output file and its
    record. Error jobs are only swept when error_retention_hours is set;
    queued and running jobs are never touched.
    """

    def __init__(self, store: JobStore, retention_hours: float = RETENTION_HOURS,
                 interval_seconds: float = SWEEP_INTERVAL_SECONDS,
                 error_retention_hours: Optional[float] = ERROR_RETENTION_HOURS,
                 storage_root: Optional[str] = None,
                 initial_delay_seconds: float = SWEEP_INITIAL_DELAY_SECONDS):
        self.store = store
        self.retention_hours = retention_hours
        self.interval_seconds = interval_seconds
        self.error_retention_hours = error_retention_hours
        self.storage_root = storage_root
        self.initial_delay_seconds = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None

    def _expired(self, job, now: datetime) -> bool:
        if job.status == JobStatus.DONE:
            window = self.retention_hours
        elif job.status == JobStatus.ERROR and self.error_retention_hours is not None:
            window = self.error_retention_hours
        else:
            return False
        return job.updated_at < now - timedelta(hours=window)

    def sweep_once(self, now: Optional[datetime] = None) -> int:
        """Run one pass and return the number of job records removed."""
        now = now or datetime.now(timezone.utc)
        removed = 0
        for job in self.store.list_all():
            if not self._expired(job, now):
                continue
            safe_remove(job.output_path, "output file")
            self.store.remove(job.id)
            removed += 1
            logging.info(f"🧹 Removed expired job {job.id} ({job.status.value})")

        if self.storage_root:
            # Anything a remaining job still points at is left alone.
            referenced = set()
            for job in self.store.list_all():
                referenced.update(p for p in (job.input_path, job.output_path) if p)
            files = cleanup_old_files(self.storage_root, self.retention_hours, keep=referenced, now=now.timestamp())
            if files:
                logging.info(f"🧹 Cleaned up {files} orphaned file(s)")
        return removed

    async def run_forever(self):
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            logging.info("Running cleanup task...")
            try:
                removed = await asyncio.to_thread(self.sweep_once)
                logging.info(f"Cleanup task finished, {removed} job(s) removed.")
            except Exception as e:
                logging.error(f"Cleanup task failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run_forever(), name="retention-sweeper")
            logging.info(
                f"Retention sweeper started (window {self.retention_hours}h, every {self.interval_seconds}s)"
            )
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
