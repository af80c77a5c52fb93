"""
Error types for the conversion service.

All errors inherit from ConversionError for easy catching.
"""


class ConversionError(Exception):
    """Base exception for all conversion-related failures."""
    pass


class FetchError(ConversionError):
    """Raised by the remote fetcher when a source cannot be downloaded."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class EncodeError(ConversionError):
    """Raised by the encoder when ffmpeg exits with an error."""
    pass


class StorageError(ConversionError):
    """Raised when a job snapshot cannot be written during job creation."""
    pass


class JobNotFoundError(ConversionError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobNotReadyError(ConversionError):
    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is not ready for download (status: {status})")


class JobAlreadyActiveError(ConversionError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already being processed")


class InvalidStateTransitionError(ConversionError):
    def __init__(self, job_id: str, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(f"Invalid state transition for job {job_id}: {current_state} -> {target_state}")


class PollTimeoutError(ConversionError):
    """Raised by the polling client when a job does not finish in time.

    The job itself is unaffected and may still complete later.
    """

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Gave up waiting for job {job_id} after {attempts} attempts")
