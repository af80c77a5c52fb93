# media-convert-backend/tests/test_tasks.py

import os
import asyncio
import threading

import pytest
import requests

from errors import (
    EncodeError,
    FetchError,
    InvalidStateTransitionError,
    JobAlreadyActiveError,
    JobNotFoundError,
)
from models import ErrorKind, JobStatus, Target
from services import EncodeTarget
from tasks import ERROR_MESSAGES, INTERNAL_ERROR_MESSAGE, MAX_ERROR_LENGTH, JobRunner, classify_error
from fakes import FakeEncoder, FakeFetcher, ProgressRecorder, unavailable_error

REMOTE_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture
def make_runner(store, storage_root):
    def factory(encoder=None, fetcher=None, max_concurrent_jobs=2):
        return JobRunner(
            store,
            encoder or FakeEncoder(),
            fetcher or FakeFetcher(),
            storage_root=storage_root,
            max_concurrent_jobs=max_concurrent_jobs,
        )
    return factory


def run_jobs(runner, *job_ids):
    async def main():
        for job_id in job_ids:
            runner.submit(job_id)
        await runner.wait_all()
    asyncio.run(main())


def run_remote(runner, url=REMOTE_URL, target="mp3"):
    async def main():
        job, metadata = await runner.create_remote_job(url, target)
        runner.submit(job.id)
        await runner.wait_all()
        return job, metadata
    return asyncio.run(main())


# --- lifecycle ---

def test_local_mp3_job_reports_encoder_progress(store, make_runner, input_file):
    """
    Local jobs pass the encoder's progress through unchanged and finish at 100.
    """
    recorder = ProgressRecorder(store)
    runner = make_runner(encoder=FakeEncoder(progress=[0, 25, 50, 75, 100]))
    job = runner.create_local_job(input_file, "mp3")

    run_jobs(runner, job.id)

    finished = store.get(job.id)
    assert finished.status == JobStatus.DONE
    assert finished.progress == 100
    assert recorder.distinct() == [0, 25, 50, 75, 100]
    assert recorder.statuses == [JobStatus.RUNNING, JobStatus.DONE]
    assert os.path.exists(finished.output_path)
    assert not os.path.exists(input_file)


def test_local_job_defaults(store, make_runner, input_file):
    encoder = FakeEncoder()
    runner = make_runner(encoder=encoder)
    mp4 = runner.create_local_job(input_file, "mp4")
    mp3 = runner.create_local_job(input_file, Target.MP3, bitrate=320)

    assert (mp4.preset, mp4.bitrate) == ("web", None)
    assert (mp3.preset, mp3.bitrate) == (None, 320)

    run_jobs(runner, mp4.id)
    assert encoder.calls[0][2] == EncodeTarget(format="mp4", preset="web")
    assert encoder.calls[0][1].endswith(f"{mp4.id}_output.mp4")


def test_remote_job_composes_fetch_and_encode_progress(store, make_runner):
    recorder = ProgressRecorder(store)
    fetcher = FakeFetcher(progress=[0, 50, 100])
    runner = make_runner(encoder=FakeEncoder(progress=[0, 50, 100]), fetcher=fetcher)

    job, metadata = run_remote(runner)

    finished = store.get(job.id)
    assert finished.status == JobStatus.DONE
    assert recorder.distinct() == [0, 25, 50, 75, 100]
    assert finished.source_url == REMOTE_URL
    assert finished.title == "Remote Clip"
    assert metadata["duration"] == 212
    assert fetcher.calls == [(REMOTE_URL, job.input_path)]
    assert not os.path.exists(job.input_path)


def test_progress_never_moves_backwards(store, make_runner, input_file):
    recorder = ProgressRecorder(store)
    runner = make_runner(encoder=FakeEncoder(progress=[0, 30, 20, 60, 150, 100]))
    job = runner.create_local_job(input_file, "mp3")

    run_jobs(runner, job.id)

    assert recorder.distinct() == [0, 30, 60, 100]
    assert recorder.values == sorted(recorder.values)


def test_metadata_failure_does_not_block_remote_job(store, make_runner):
    fetcher = FakeFetcher(metadata_error=FetchError("Failed to get video info: timeout"))
    runner = make_runner(fetcher=fetcher)

    job, metadata = run_remote(runner)

    assert metadata == {}
    assert job.title is None
    assert store.get(job.id).status == JobStatus.DONE


# --- failures ---

def test_encoder_failure_removes_partial_output(store, make_runner, input_file):
    """
    An ffmpeg failure ends the job in error, keeps the ffmpeg message and leaves no files behind.
    """
    encoder = FakeEncoder(error=EncodeError("FFmpeg conversion error: invalid codec"), partial_output=True)
    runner = make_runner(encoder=encoder)
    job = runner.create_local_job(input_file, "mp4")

    run_jobs(runner, job.id)

    failed = store.get(job.id)
    assert failed.status == JobStatus.ERROR
    assert failed.progress == 0
    assert failed.error_kind == ErrorKind.ENCODE_FAILURE
    assert "invalid codec" in failed.error
    assert failed.output_path is not None
    assert not os.path.exists(failed.output_path)
    assert not os.path.exists(input_file)


def test_plain_collaborator_error_is_generic(store, make_runner, input_file):
    runner = make_runner(encoder=FakeEncoder(error=RuntimeError("invalid codec"), partial_output=True))
    job = runner.create_local_job(input_file, "mp3")

    run_jobs(runner, job.id)

    failed = store.get(job.id)
    assert failed.status == JobStatus.ERROR
    assert failed.error_kind == ErrorKind.GENERIC
    assert failed.error == "invalid codec"
    assert not os.path.exists(failed.output_path)


def test_fetch_failure_skips_encoding_and_cleans_up(store, make_runner):
    encoder = FakeEncoder()
    runner = make_runner(encoder=encoder, fetcher=FakeFetcher(progress=[0, 40], error=unavailable_error()))

    job, _ = run_remote(runner)

    failed = store.get(job.id)
    assert failed.status == JobStatus.ERROR
    assert failed.error_kind == ErrorKind.UNAVAILABLE
    assert failed.error == ERROR_MESSAGES[ErrorKind.UNAVAILABLE]
    assert failed.output_path is None
    assert encoder.calls == []
    assert not os.path.exists(job.input_path)


def test_escaped_exception_is_recorded_on_the_job(store, make_runner, input_file):
    """
    If a job's task dies outside the normal failure path, the job still ends in error.
    """
    runner = make_runner()
    job = runner.create_local_job(input_file, "mp3")

    async def main():
        runner.submit(job.id)
        # Someone else moves the job before the task gets to run.
        store.update(job.id, status=JobStatus.RUNNING)
        await runner.wait_all()

    asyncio.run(main())

    failed = store.get(job.id)
    assert failed.status == JobStatus.ERROR
    assert failed.error == INTERNAL_ERROR_MESSAGE
    assert runner.active_job_ids == []
    assert not os.path.exists(input_file)


def test_cancelled_job_ends_in_error(store, make_runner, input_file):
    runner = make_runner()
    job = runner.create_local_job(input_file, "mp3")

    async def main():
        task = runner.submit(job.id)
        task.cancel()
        await runner.wait_all()

    asyncio.run(main())

    assert store.get(job.id).status == JobStatus.ERROR
    assert store.get(job.id).error == "Conversion was cancelled"
    assert not os.path.exists(input_file)


def test_cancelled_job_removes_files_once_the_worker_returns(store, make_runner, input_file):
    """
    Cancelling during encode cannot stop the worker thread; whatever it writes is removed when it returns.
    """
    encoder = FakeEncoder()
    encoder.release = threading.Event()
    runner = make_runner(encoder=encoder)
    job = runner.create_local_job(input_file, "mp3")

    async def main():
        task = runner.submit(job.id)
        for _ in range(200):
            if encoder.calls:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        await runner.wait_all()
        status = store.get(job.id).status
        encoder.release.set()
        await asyncio.to_thread(encoder.finished.wait, 5)
        output_path = store.get(job.id).output_path
        for _ in range(200):
            if not os.path.exists(output_path):
                break
            await asyncio.sleep(0.01)
        return status, output_path

    status, output_path = asyncio.run(main())

    assert status == JobStatus.ERROR
    assert output_path is not None
    assert not os.path.exists(output_path)
    assert not os.path.exists(input_file)


# --- submission rules ---

def test_submit_rejects_duplicates_and_non_queued_jobs(store, make_runner, input_file):
    runner = make_runner()
    job = runner.create_local_job(input_file, "mp3")

    async def main():
        runner.submit(job.id)
        with pytest.raises(JobAlreadyActiveError):
            runner.submit(job.id)
        await runner.wait_all()
        with pytest.raises(InvalidStateTransitionError):
            runner.submit(job.id)
        with pytest.raises(JobNotFoundError):
            runner.submit("no-such-job")

    asyncio.run(main())
    assert store.get(job.id).status == JobStatus.DONE


def test_jobs_beyond_the_limit_wait_queued(store, make_runner, storage_root):
    encoder = FakeEncoder()
    encoder.release = threading.Event()
    runner = make_runner(encoder=encoder, max_concurrent_jobs=1)
    jobs = []
    for name in ("a", "b"):
        path = os.path.join(storage_root, f"{name}.webm")
        open(path, "wb").close()
        jobs.append(runner.create_local_job(path, "mp3"))

    async def main():
        for job in jobs:
            runner.submit(job.id)
        for _ in range(200):
            if any(store.get(job.id).status == JobStatus.RUNNING for job in jobs):
                break
            await asyncio.sleep(0.01)
        seen = sorted(store.get(job.id).status.value for job in jobs)
        encoder.release.set()
        await runner.wait_all()
        return seen

    assert asyncio.run(main()) == ["queued", "running"]
    assert all(store.get(job.id).status == JobStatus.DONE for job in jobs)


# --- error classification ---

@pytest.mark.parametrize("exc, kind", [
    (EncodeError("FFmpeg conversion error: invalid codec"), ErrorKind.ENCODE_FAILURE),
    (FetchError("Video unavailable (HTTP 404 Not Found)", status_code=404), ErrorKind.UNAVAILABLE),
    (FetchError("Download failed: HTTP 451", status_code=451), ErrorKind.UNAVAILABLE),
    (FetchError("Download timed out after 30s"), ErrorKind.NETWORK_OR_TIMEOUT),
    (requests.ConnectionError("connection reset by peer"), ErrorKind.NETWORK_OR_TIMEOUT),
    (RuntimeError("This video is private"), ErrorKind.UNAVAILABLE),
    (RuntimeError("Sign in to confirm your age"), ErrorKind.AGE_RESTRICTED),
    (RuntimeError("This live event will begin in 5 minutes"), ErrorKind.LIVE_UNSUPPORTED),
    (RuntimeError("disk quota exceeded"), ErrorKind.GENERIC),
])
def test_classify_error(exc, kind):
    assert classify_error(exc)[0] == kind


def test_classify_error_uses_cause_for_network_failures():
    try:
        try:
            raise requests.Timeout("read timeout")
        except requests.Timeout as e:
            raise FetchError("Download failed") from e
    except FetchError as e:
        exc = e

    assert classify_error(exc) == (ErrorKind.NETWORK_OR_TIMEOUT, ERROR_MESSAGES[ErrorKind.NETWORK_OR_TIMEOUT])


def test_generic_errors_keep_the_message_without_local_paths():
    path = "/srv/media/temp/0123abcd.webm"
    kind, message = classify_error(RuntimeError(f"cannot read {path}: disk quota exceeded"), paths=(path,))

    assert kind == ErrorKind.GENERIC
    assert message == "cannot read 0123abcd.webm: disk quota exceeded"


def test_error_messages_are_capped():
    _, message = classify_error(EncodeError("x" * 5000))
    assert len(message) == MAX_ERROR_LENGTH
    assert message.endswith("...")
