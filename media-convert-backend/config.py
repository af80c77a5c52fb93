"""
Configuration file for the Media Conversion service.
Contains all global constants, environment-driven settings and encoding presets.
"""

import os


def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default=None):
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return int(val)


# --- Paths ---
PROJECT_ROOT = os.getcwd()
STORAGE_ROOT = os.getenv("STORAGE_ROOT", os.path.join(PROJECT_ROOT, "temp"))

# --- Runtime ---
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
CORS_ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]

# --- Job execution & retention ---
MAX_CONCURRENT_JOBS = env_int("MAX_CONCURRENT_JOBS", os.cpu_count() or 1)
RETENTION_HOURS = env_int("RETENTION_HOURS", 24)
ERROR_RETENTION_HOURS = env_int("ERROR_RETENTION_HOURS")  # None: error jobs are kept
SWEEP_INTERVAL_SECONDS = env_int("SWEEP_INTERVAL_SECONDS", 60 * 60)
SWEEP_INITIAL_DELAY_SECONDS = 5

# --- Uploads ---
MAX_FILE_SIZE_MB = env_int("MAX_FILE_SIZE_MB", 200)
ALLOWED_EXTENSIONS = {".mp4", ".mov", ".mkv", ".webm", ".mp3", ".wav", ".m4a", ".aac", ".flac"}

# --- Remote sources ---
ENABLE_REMOTE = env_bool("ENABLE_REMOTE", False)
YOUTUBE_HOSTS = "youtube.com,www.youtube.com,m.youtube.com,youtu.be,music.youtube.com"
ALLOWED_REMOTE_HOSTS = {
    h.strip().lower() for h in (os.getenv("ALLOWED_REMOTE_HOSTS") or YOUTUBE_HOSTS).split(",") if h.strip()
}
MAX_URL_LENGTH = 2048
FETCH_TIMEOUT_SECONDS = env_int("FETCH_TIMEOUT_SECONDS", 30)
MAX_REMOTE_FILE_SIZE_MB = env_int("MAX_REMOTE_FILE_SIZE_MB", MAX_FILE_SIZE_MB)

# --- FFmpeg ---
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("FFPROBE_PATH", "ffprobe")

# --- Encoding presets ---

# Web: desktop browsers, good network conditions.
# Mobile: smaller screens, lower bitrate.
VIDEO_PRESETS = {
    "web": {"vcodec": "libx264", "acodec": "aac", "crf": 23, "scale": "1280x720"},
    "mobile": {"vcodec": "libx264", "acodec": "aac", "crf": 26, "scale": "854x480"},
}
DEFAULT_PRESET = "web"

AUDIO_BITRATES = {"low": 128, "medium": 192, "high": 320}
DEFAULT_BITRATE = AUDIO_BITRATES["medium"]
MIN_BITRATE = 64
MAX_BITRATE = 320

CONTENT_TYPES = {"mp4": "video/mp4", "mp3": "audio/mpeg"}

# --- Polling client ---
POLL_INTERVAL_SECONDS = 2
MAX_POLL_ATTEMPTS = 120


def is_production() -> bool:
    return ENVIRONMENT == "production"
