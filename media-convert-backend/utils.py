import os
import re
import time
import uuid
import logging
from typing import Iterable, Optional, Tuple

from config import ALLOWED_EXTENSIONS

_FILE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def create_temp_path(storage_root: str, original_name: str) -> Tuple[str, str]:
    """Return (file_id, absolute path) for a new file under storage_root."""
    ensure_dir(storage_root)
    file_id = uuid.uuid4().hex
    extension = os.path.splitext(os.path.basename(original_name or ""))[1].lower()
    return file_id, os.path.join(storage_root, f"{file_id}{extension}")


def resolve_temp_path(storage_root: str, file_id: str) -> Optional[str]:
    """Resolve an upload's file id back to its absolute path, or None."""
    if not file_id or not _FILE_ID_PATTERN.match(file_id):
        return None
    try:
        names = os.listdir(storage_root)
    except OSError:
        return None
    for name in names:
        if os.path.splitext(name)[0] == file_id:
            path = os.path.join(storage_root, name)
            if os.path.isfile(path):
                return path
    return None


def create_output_path(storage_root: str, job_id: str, target: str) -> str:
    ensure_dir(storage_root)
    return os.path.join(storage_root, f"{job_id}_output.{target}")


def validate_upload(filename: str, size: Optional[int], max_size_mb: int) -> Optional[str]:
    """Return an error message if the upload is not acceptable, else None."""
    if not filename or size == 0:
        return "No file provided"
    if size is not None and size > max_size_mb * 1024 * 1024:
        return f"File size exceeds {max_size_mb}MB limit"
    extension = os.path.splitext(filename)[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        return "File type not supported"
    return None


def save_upload(fileobj, destination: str, max_bytes: int, chunk_size: int = 1024 * 1024) -> int:
    """Copy an upload stream to disk, aborting once it grows past max_bytes."""
    written = 0
    try:
        with open(destination, "wb") as buffer:
            while True:
                chunk = fileobj.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise ValueError(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
                buffer.write(chunk)
    except Exception:
        safe_remove(destination)
        raise
    return written


def safe_remove(path: Optional[str], label: str = "file") -> bool:
    """Best-effort delete. Returns True if a file was removed."""
    if not path:
        return False
    try:
        if os.path.exists(path):
            os.remove(path)
            return True
    except OSError as e:
        logging.warning(f"Could not delete {label} {path}: {e}")
    return False


def cleanup_old_files(storage_root: str, max_age_hours: float, keep: Iterable[str] = (), now: float = None) -> int:
    """Delete top-level files in storage_root older than max_age_hours, except those in keep."""
    now = time.time() if now is None else now
    cutoff = now - max_age_hours * 60 * 60
    keep = {os.path.abspath(p) for p in keep if p}
    deleted = 0
    try:
        names = os.listdir(storage_root)
    except OSError:
        return 0
    for name in names:
        path = os.path.abspath(os.path.join(storage_root, name))
        if path in keep or not os.path.isfile(path):
            continue
        try:
            if os.path.getmtime(path) < cutoff:
                os.remove(path)
                deleted += 1
        except OSError as e:
            logging.warning(f"Could not clean up {path}: {e}")
    return deleted


def sanitize_filename(name: Optional[str], fallback: str, max_length: int = 100) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("", name or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" .")
    return cleaned[:max_length].rstrip(" .") or fallback
