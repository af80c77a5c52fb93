"""
Service classes for the Media Conversion service.
Contains the external collaborators driven by the job runner:
MediaEncoder (ffmpeg) and RemoteFetcher (yt-dlp audio download and video details).
"""

import os
import re
import shutil
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import ffmpeg
import yt_dlp
from yt_dlp.utils import DownloadError

from config import (
    FFMPEG_PATH,
    FFPROBE_PATH,
    VIDEO_PRESETS,
    DEFAULT_PRESET,
    DEFAULT_BITRATE,
    ALLOWED_REMOTE_HOSTS,
    MAX_URL_LENGTH,
    FETCH_TIMEOUT_SECONDS,
    MAX_REMOTE_FILE_SIZE_MB,
)
from errors import EncodeError, FetchError
from utils import safe_remove

ProgressCallback = Callable[[float], None]

# Matches: time=00:00:01.00 or time=01:23:45.678
TIME_PATTERN = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def check_ffmpeg(path: str = FFMPEG_PATH) -> bool:
    """True if the configured ffmpeg binary can be executed."""
    if shutil.which(path):
        return True
    return os.path.isfile(path) and os.access(path, os.X_OK)


def media_duration(path: str, cmd: str = FFPROBE_PATH, **kwargs) -> Optional[float]:
    """Duration in seconds from ffprobe, or None if it cannot be determined."""
    try:
        info = ffmpeg.probe(path, cmd=cmd, **kwargs)
    except (ffmpeg.Error, OSError) as e:
        logging.warning(f"ffprobe failed for {path}: {e}")
        return None
    duration = info.get("format", {}).get("duration")
    try:
        return float(duration) if duration is not None else None
    except ValueError:
        return None


@dataclass(frozen=True)
class EncodeTarget:
    """What the encoder should produce: mp4 with a preset, or mp3 at a bitrate."""

    format: str
    preset: Optional[str] = None
    bitrate: Optional[int] = None

    @classmethod
    def from_job(cls, job) -> "EncodeTarget":
        target = getattr(job.target, "value", job.target)
        return cls(format=target, preset=job.preset, bitrate=job.bitrate)


class EncodeProgressParser:
    """Turns ffmpeg stderr lines into 0-100 percentages using the input duration."""

    def __init__(self, duration: Optional[float], on_progress: Optional[ProgressCallback] = None):
        self.duration = duration
        self.on_progress = on_progress
        self.last_percent = None

    def parse_line(self, line: str) -> Optional[float]:
        match = TIME_PATTERN.search(line)
        if not match or not self.duration or self.duration <= 0:
            return None
        hours, minutes, seconds = int(match.group(1)), int(match.group(2)), float(match.group(3))
        current = hours * 3600 + minutes * 60 + seconds
        percent = min(100.0, max(0.0, current / self.duration * 100.0))
        if percent != self.last_percent:
            self.last_percent = percent
            if self.on_progress:
                self.on_progress(percent)
        return percent


def _iter_stderr_lines(stream):
    """ffmpeg rewrites its status line with carriage returns; split on both."""
    buffer = b""
    while True:
        chunk = stream.read(1024)
        if not chunk:
            break
        buffer += chunk
        parts = re.split(rb"[\r\n]", buffer)
        buffer = parts.pop()
        for part in parts:
            if part.strip():
                yield part.decode("utf-8", errors="replace")
    if buffer.strip():
        yield buffer.decode("utf-8", errors="replace")


class MediaEncoder:
    """Handles ffmpeg transcoding and audio extraction."""

    def __init__(self, ffmpeg_cmd: str = FFMPEG_PATH, ffprobe_cmd: str = FFPROBE_PATH):
        self.ffmpeg_cmd = ffmpeg_cmd
        self.ffprobe_cmd = ffprobe_cmd

    def _build_stream(self, input_path: str, output_path: str, target: EncodeTarget):
        source = ffmpeg.input(input_path)
        if target.format == "mp4":
            preset = VIDEO_PRESETS.get(target.preset or DEFAULT_PRESET)
            if preset is None:
                raise EncodeError(f"Unknown video preset: {target.preset}")
            stream = ffmpeg.output(
                source,
                output_path,
                vcodec=preset["vcodec"],
                acodec=preset["acodec"],
                crf=preset["crf"],
                s=preset["scale"],
                preset="fast",
                movflags="+faststart",
                format="mp4",
            )
        elif target.format == "mp3":
            stream = ffmpeg.output(
                source.audio,
                output_path,
                acodec="libmp3lame",
                audio_bitrate=f"{target.bitrate or DEFAULT_BITRATE}k",
                format="mp3",
            )
        else:
            raise EncodeError(f"Unsupported target format: {target.format}")
        return stream.global_args("-hide_banner", "-nostdin").overwrite_output()

    def build_command(self, input_path: str, output_path: str, target: EncodeTarget) -> list:
        return self._build_stream(input_path, output_path, target).compile(cmd=self.ffmpeg_cmd)

    def encode(self, input_path: str, output_path: str, target: EncodeTarget,
               on_progress: Optional[ProgressCallback] = None):
        """
        Run ffmpeg to completion, reporting 0-100 progress along the way.
        Raises EncodeError with the last stderr line if ffmpeg fails.
        """
        stream = self._build_stream(input_path, output_path, target)
        duration = media_duration(input_path, cmd=self.ffprobe_cmd)
        parser = EncodeProgressParser(duration, on_progress)
        logging.info(f"🎬 Running FFmpeg command: {' '.join(stream.compile(cmd=self.ffmpeg_cmd))}")

        try:
            process = stream.run_async(cmd=self.ffmpeg_cmd, pipe_stderr=True)
        except OSError as e:
            raise EncodeError(f"FFmpeg could not be started: {e}") from e

        tail = deque(maxlen=20)
        for line in _iter_stderr_lines(process.stderr):
            tail.append(line)
            parser.parse_line(line)
        returncode = process.wait()

        if returncode != 0:
            last_line = tail[-1].strip() if tail else "Unknown FFmpeg error"
            logging.error(f"❌ FFmpeg failed with exit code {returncode}. Stderr tail:\n" + "\n".join(tail))
            raise EncodeError(f"FFmpeg conversion error: {last_line}")

        if on_progress:
            on_progress(100)
        logging.info(f"✅ FFmpeg finished: {output_path}")


class RemoteFetcher:
    """Downloads the audio of a YouTube video with yt-dlp and looks up its details."""

    # Query parameters that select the video or a position in it; everything else is dropped.
    KEPT_QUERY_PARAMS = ("v", "t", "start", "end")

    def __init__(self, timeout: int = FETCH_TIMEOUT_SECONDS, allowed_hosts=None,
                 max_size_mb: int = MAX_REMOTE_FILE_SIZE_MB):
        self.timeout = timeout
        self.allowed_hosts = ALLOWED_REMOTE_HOSTS if allowed_hosts is None else {h.lower() for h in allowed_hosts}
        self.max_bytes = max_size_mb * 1024 * 1024 if max_size_mb else None

    def _options(self, **extra) -> dict:
        options = {
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "noplaylist": True,
            "socket_timeout": self.timeout,
            "http_headers": {"User-Agent": USER_AGENT},
        }
        options.update(extra)
        return options

    def validate_url(self, url: str) -> bool:
        if not url or len(url) > MAX_URL_LENGTH:
            return False
        try:
            parts = urlsplit(url)
            _ = parts.port  # raises ValueError for a malformed port
        except ValueError:
            return False
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return False
        return parts.hostname.lower() in self.allowed_hosts

    @classmethod
    def sanitize_url(cls, url: str) -> str:
        """Drop credentials, fragments and every query parameter except the video id and start/end times."""
        parts = urlsplit(url.strip())
        netloc = parts.hostname or ""
        if ":" in netloc:
            netloc = f"[{netloc}]"
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        query = urlencode([(k, v) for k, v in parse_qsl(parts.query) if k in cls.KEPT_QUERY_PARAMS])
        return urlunsplit((parts.scheme, netloc, parts.path, query, ""))

    def query_metadata(self, url: str) -> dict:
        """Best-effort {title, duration, author, thumbnail} for a video. Raises FetchError."""
        try:
            with yt_dlp.YoutubeDL(self._options(skip_download=True)) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as e:
            raise FetchError(f"Failed to get video info: {_download_error_text(e)}") from e

        metadata = {}
        if info.get("title"):
            metadata["title"] = info["title"]
        try:
            metadata["duration"] = int(info["duration"])
        except (KeyError, TypeError, ValueError):
            pass
        author = info.get("uploader") or info.get("channel")
        if author:
            metadata["author"] = author
        if info.get("id"):
            metadata["thumbnail"] = f"https://img.youtube.com/vi/{info['id']}/mqdefault.jpg"
        elif info.get("thumbnail"):
            metadata["thumbnail"] = info["thumbnail"]
        return metadata

    def fetch(self, url: str, destination_path: str, on_progress: Optional[ProgressCallback] = None):
        """Download the best audio-only stream to destination_path. Partial files are removed on failure."""
        last_reported = [-1]
        too_large = []

        def hook(status):
            downloaded = status.get("downloaded_bytes") or 0
            total = status.get("total_bytes") or status.get("total_bytes_estimate") or 0
            if self.max_bytes and downloaded > self.max_bytes:
                too_large.append(True)
                raise FetchError(self._too_large_message())
            if status.get("status") == "downloading" and total > 0 and on_progress:
                percent = min(100, int(downloaded * 100 / total))
                if percent != last_reported[0]:
                    last_reported[0] = percent
                    on_progress(percent)

        options = self._options(
            format="bestaudio/best",
            outtmpl=destination_path,
            progress_hooks=[hook],
            max_filesize=self.max_bytes,
        )
        try:
            with yt_dlp.YoutubeDL(options) as ydl:
                ydl.download([url])
        except FetchError:
            self._discard(destination_path)
            raise
        except DownloadError as e:
            self._discard(destination_path)
            if too_large:
                raise FetchError(self._too_large_message()) from e
            raise FetchError(f"Download failed: {_download_error_text(e)}") from e
        except OSError as e:
            self._discard(destination_path)
            raise FetchError(f"File write error: {e}") from e

        # yt-dlp skips, rather than fails, a download whose announced size is over max_filesize.
        if not os.path.exists(destination_path):
            self._discard(destination_path)
            raise FetchError(self._too_large_message() if self.max_bytes else "Download produced no file")

        if on_progress:
            on_progress(100)
        logging.info(f"📥 Downloaded audio from {url} to {destination_path}")

    def _too_large_message(self) -> str:
        return f"Download exceeds {self.max_bytes // (1024 * 1024)}MB limit"

    @staticmethod
    def _discard(destination_path: str):
        for path in (destination_path, f"{destination_path}.part", f"{destination_path}.ytdl"):
            safe_remove(path, "partial download")


def _download_error_text(error: Exception) -> str:
    text = str(error).strip()
    if text.startswith("ERROR:"):
        text = text[len("ERROR:"):].strip()
    return text or error.__class__.__name__
