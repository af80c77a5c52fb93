"""
HTTP client for the conversion service.

Polls job status until the job finishes. Giving up is purely the client's
decision: a PollTimeoutError says nothing about the job, which may still
complete on the server.
"""

import time
import logging
from typing import Optional

import requests

from config import POLL_INTERVAL_SECONDS, MAX_POLL_ATTEMPTS
from errors import ConversionError, PollTimeoutError

TERMINAL = ("done", "error")


class ConversionClient:
    def __init__(self, base_url: str = "http://127.0.0.1:8000", session: Optional[requests.Session] = None,
                 timeout: float = 30, poll_interval: float = POLL_INTERVAL_SECONDS,
                 max_attempts: int = MAX_POLL_ATTEMPTS, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def upload(self, path: str) -> dict:
        with open(path, "rb") as f:
            response = self.session.post(self._url("/upload"), files={"file": f}, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def convert(self, file_id: str, target: str, preset: str = None, bitrate: int = None) -> str:
        payload = {"file_id": file_id, "target": target}
        if preset:
            payload["preset"] = preset
        if bitrate:
            payload["bitrate"] = bitrate
        response = self.session.post(self._url("/convert"), json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()["job_id"]

    def convert_remote(self, url: str, target: str = "mp3", bitrate: int = None) -> dict:
        payload = {"url": url, "target": target}
        if bitrate:
            payload["bitrate"] = bitrate
        response = self.session.post(self._url("/remote"), json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def status(self, job_id: str) -> dict:
        response = self.session.get(self._url(f"/jobs/{job_id}"), timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def wait_for_job(self, job_id: str) -> dict:
        """
        Poll until the job is done or failed.

        Transient request errors count as attempts. Raises PollTimeoutError
        after max_attempts without a terminal status.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                status = self.status(job_id)
            except requests.HTTPError as e:
                if e.response is not None and e.response.status_code == 404:
                    raise ConversionError(f"Job not found: {job_id}") from e
                logging.warning(f"Polling job {job_id} failed (attempt {attempt}): {e}")
            except requests.RequestException as e:
                logging.warning(f"Polling job {job_id} failed (attempt {attempt}): {e}")
            else:
                if status.get("status") in TERMINAL:
                    return status
            if attempt < self.max_attempts:
                self._sleep(self.poll_interval)
        raise PollTimeoutError(job_id, self.max_attempts)

    def download(self, job_id: str, destination: str) -> str:
        with self.session.get(self._url(f"/jobs/{job_id}/download"), stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    f.write(chunk)
        return destination
