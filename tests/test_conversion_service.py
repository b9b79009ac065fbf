"""
Unit tests for the ConversionService pipeline.

The transfer engine and transcoder are fakes; the job store is a real
SQLite file so persisted transitions can be checked.
"""

import threading
from unittest.mock import Mock, patch

import pytest

from ytconvert.conversion_service import INTERRUPTED_ERROR, ConversionService
from ytconvert.database import JobStore, PersistenceError
from ytconvert.job_manager import JobManager
from ytconvert.models import ConversionJob, JobStatus
from ytconvert.resolver import YouTubeResolver
from ytconvert.storage import StorageService
from ytconvert.worker_pool import CapacityError, WorkerPool

from conftest import FakeTranscoder, FakeTransfer, wait_until


@pytest.fixture
def dirs(tmp_path):
    ongoing = tmp_path / "ongoing"
    completed = tmp_path / "completed"
    ongoing.mkdir()
    completed.mkdir()
    return ongoing, completed


@pytest.fixture
def store(tmp_path):
    store = JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    store.init_schema()
    yield store
    store.dispose()


@pytest.fixture
def resolver():
    return YouTubeResolver("k", "h", settle_delay=0, session=Mock())


def _service(store, dirs, resolver, transfer=None, transcoder=None, pool=None):
    ongoing, completed = dirs
    return ConversionService(
        job_manager=JobManager(store, StorageService(completed)),
        transfer=transfer or FakeTransfer(),
        transcoder=transcoder or FakeTranscoder(),
        resolver=resolver,
        pool=pool or WorkerPool(max_workers=2, max_queue_size=10),
        ongoing_dir=ongoing,
        completed_dir=completed
    )


def _create(service, job_id="abc_1", format="avi", title="My Video", download_url="https://cdn/x.mp4"):
    return service.job_manager.create(job_id, "https://youtu.be/abc", format, download_url, title)


class TestConversionPipeline:
    """Tests for process_conversion state transitions."""

    def test_successful_conversion(self, store, dirs, resolver):
        """Test the downloading -> converting -> completed path."""
        ongoing, completed = dirs
        transcoder = FakeTranscoder()
        service = _service(store, dirs, resolver, transcoder=transcoder)
        job = _create(service)

        service.process_conversion(job)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 1.0
        assert job.filename == "My Video.avi"
        assert job.end_time is not None
        assert (completed / "My Video.avi").read_bytes() == b"video-bytes"
        assert list(ongoing.iterdir()) == []

        input_path, output_path, fmt, profile = transcoder.calls[0]
        assert input_path == ongoing / "abc_1_My Video.mp4"
        assert output_path == completed / "My Video.avi"
        assert (profile.video_codec, profile.audio_codec) == ("mpeg4", "mp3")

        stored = store.load_all()[0]
        assert stored.status == JobStatus.COMPLETED
        assert stored.filename == "My Video.avi"

    def test_progress_observed_in_store(self, store, dirs, resolver):
        """Test that each stage is persisted before the next starts."""
        seen = []

        class RecordingTransfer(FakeTransfer):
            def fetch(self, url, destination, job_id=None):
                seen.append((store.load_all()[0].status, store.load_all()[0].progress))
                return super().fetch(url, destination, job_id)

        class RecordingTranscoder(FakeTranscoder):
            def transcode(self, input_path, output_path, format):
                seen.append((store.load_all()[0].status, store.load_all()[0].progress))
                return super().transcode(input_path, output_path, format)

        service = _service(store, dirs, resolver, RecordingTransfer(), RecordingTranscoder())
        job = _create(service)

        service.process_conversion(job)

        assert seen == [(JobStatus.DOWNLOADING, 0.25), (JobStatus.CONVERTING, 0.5)]

    def test_empty_format_produces_mp4(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)
        job = _create(service, format="")

        service.process_conversion(job)

        assert job.filename == "My Video.mp4"

    def test_unsafe_title_is_sanitized(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)
        job = _create(service, title='AC/DC: "Live"?')

        service.process_conversion(job)

        assert job.filename == "ACDC Live.avi"

    def test_download_failure(self, store, dirs, resolver):
        """Test that a transfer failure fails the job and keeps it retryable."""
        ongoing, _ = dirs
        service = _service(store, dirs, resolver, transfer=FakeTransfer(error="timed out"))
        job = _create(service)

        service.process_conversion(job)

        assert job.status == JobStatus.FAILED
        assert job.error == "Failed to download video: timed out"
        assert job.can_retry
        assert list(ongoing.iterdir()) == []

    def test_conversion_failure_removes_temp(self, store, dirs, resolver):
        ongoing, completed = dirs
        service = _service(store, dirs, resolver, transcoder=FakeTranscoder(error="Invalid data found"))
        job = _create(service)

        service.process_conversion(job)

        assert job.status == JobStatus.FAILED
        assert job.error == "FFmpeg conversion failed: Invalid data found"
        assert list(ongoing.iterdir()) == []
        assert list(completed.iterdir()) == []
        assert store.load_all()[0].status == JobStatus.FAILED

    def test_unexpected_error_is_recorded(self, store, dirs, resolver):
        transfer = Mock()
        transfer.fetch.side_effect = RuntimeError("bug")
        service = _service(store, dirs, resolver, transfer=transfer)
        job = _create(service)

        service.process_conversion(job)

        assert job.status == JobStatus.FAILED
        assert "bug" in job.error
        assert not service.job_manager.is_active(job.id)

    def test_settle_interrupted_by_shutdown(self, store, dirs):
        resolver = YouTubeResolver("k", "h", settle_delay=30, session=Mock())
        resolver.shutdown()
        transfer = FakeTransfer()
        service = _service(store, dirs, resolver, transfer=transfer)
        job = _create(service)

        service.process_conversion(job, settle=True)

        assert job.status == JobStatus.FAILED
        assert transfer.calls == []


class TestSubmitAndRetry:
    """Tests for submission through the pool and retry."""

    def test_submit_runs_in_background(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)

        job = service.submit("abc_1", "https://youtu.be/abc", "mpg", "https://cdn/x", "Clip")

        assert wait_until(lambda: job.status == JobStatus.COMPLETED)
        assert job.filename == "Clip.mpg"
        service.pool.shutdown()

    def test_submit_at_capacity_marks_failed(self, store, dirs, resolver):
        """Test that a rejected submission leaves a failed, retryable job."""
        pool = WorkerPool(max_workers=1, max_queue_size=1)
        release = threading.Event()
        pool.submit("blocker", release.wait, 5)
        service = _service(store, dirs, resolver, pool=pool)

        with pytest.raises(CapacityError):
            service.submit("abc_1", "https://youtu.be/abc", "avi", "https://cdn/x", "Clip")

        job = service.get_job("abc_1")
        assert job.status == JobStatus.FAILED
        assert job.can_retry
        release.set()
        pool.shutdown()

    def test_retry_reuses_download_url(self, store, dirs, resolver):
        """Test that retry starts over with the stored URL and succeeds."""
        transfer = FakeTransfer(error="connection reset")
        service = _service(store, dirs, resolver, transfer=transfer)
        job = _create(service)
        service.process_conversion(job)
        assert job.status == JobStatus.FAILED

        transfer.error = None
        service.retry_job(job.id)

        assert wait_until(lambda: job.status == JobStatus.COMPLETED)
        assert job.error is None
        assert [call[0] for call in transfer.calls] == ["https://cdn/x.mp4", "https://cdn/x.mp4"]
        service.pool.shutdown()

    def test_retry_unknown_job(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)

        with pytest.raises(KeyError):
            service.retry_job("missing")

    def test_retry_without_download_url(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)
        job = _create(service, download_url="")
        with job.lock:
            job.mark_failed("Failed to download video: x")

        with pytest.raises(ValueError, match="no download URL available"):
            service.retry_job(job.id)

    def test_retry_while_running(self, store, dirs, resolver):
        service = _service(store, dirs, resolver)
        job = _create(service)
        service.job_manager.activate(job.id)

        with pytest.raises(ValueError, match="still running"):
            service.retry_job(job.id)

    def test_retry_completed_job_is_rejected(self, store, dirs, resolver):
        """Test that a finished job keeps its artifact and cannot be retried."""
        service = _service(store, dirs, resolver)
        job = _create(service)
        service.process_conversion(job)

        with pytest.raises(ValueError, match="job is completed"):
            service.retry_job(job.id)

        assert job.status == JobStatus.COMPLETED
        assert job.filename == "My Video.avi"

    def test_retry_queued_job_is_rejected(self, store, dirs, resolver):
        """Test that a job waiting for a worker is not scheduled a second time."""
        pool = WorkerPool(max_workers=1, max_queue_size=10)
        release = threading.Event()
        pool.submit("blocker", release.wait, 5)
        transfer = FakeTransfer()
        service = _service(store, dirs, resolver, transfer=transfer, pool=pool)
        job = service.submit("abc_1", "https://youtu.be/abc", "avi", "https://cdn/x.mp4", "My Video")

        with pytest.raises(ValueError, match="job is downloading"):
            service.retry_job(job.id)

        release.set()
        assert wait_until(lambda: job.status == JobStatus.COMPLETED)
        pool.shutdown()
        assert len(transfer.calls) == 1

    def test_failed_retry_does_not_keep_old_filename(self, store, dirs, resolver):
        transfer = FakeTransfer(error="connection reset")
        service = _service(store, dirs, resolver, transfer=transfer)
        job = _create(service)
        service.process_conversion(job)
        with job.lock:
            job.filename = "leftover.avi"

        service.retry_job(job.id)

        assert wait_until(lambda: job.status == JobStatus.FAILED and not service.job_manager.is_active(job.id))
        assert job.filename is None
        service.pool.shutdown()


class TestStateConsistency:
    """Tests that parallel jobs and lost writes leave job state intact."""

    def test_same_title_uses_separate_scratch_files(self, store, dirs, resolver):
        """Test that two jobs for one video never write the same temp file."""
        ongoing, completed = dirs
        both_fetching = threading.Barrier(2, timeout=5)

        class MeetingTransfer(FakeTransfer):
            def fetch(self, url, destination, job_id=None):
                result = super().fetch(url, destination, job_id)
                both_fetching.wait()
                return result

        transfer = MeetingTransfer()
        service = _service(store, dirs, resolver, transfer=transfer)
        first = service.submit("abc_100", "https://youtu.be/abc", "avi", "https://cdn/x.mp4", "My Video")
        second = service.submit("abc_105", "https://youtu.be/abc", "avi", "https://cdn/x.mp4", "My Video")

        assert wait_until(lambda: first.status.is_terminal and second.status.is_terminal)
        service.pool.shutdown()

        destinations = {call[1] for call in transfer.calls}
        assert len(destinations) == 2
        assert first.status == JobStatus.COMPLETED
        assert second.status == JobStatus.COMPLETED
        assert (completed / "My Video.avi").exists()
        assert list(ongoing.iterdir()) == []

    def test_listing_keeps_completion_whose_save_failed(self, store, dirs, resolver):
        """Test that a lost final write does not roll the job back on the next listing."""
        real_upsert = store.upsert

        def upsert(job):
            if job.status == JobStatus.COMPLETED:
                raise PersistenceError("database is locked")
            real_upsert(job)

        service = _service(store, dirs, resolver)
        job = _create(service)
        with patch.object(store, "upsert", side_effect=upsert):
            service.process_conversion(job)

        snapshot = service.list_jobs()[0]

        assert snapshot["status"] == "completed"
        assert snapshot["filename"] == "My Video.avi"
        assert snapshot["progress"] == 1.0
        assert snapshot["can_retry"] is False


class TestLoad:
    """Tests for startup loading."""

    def test_interrupted_jobs_marked_failed(self, store, dirs, resolver):
        """Test that jobs left mid-pipeline by a previous process fail on load."""
        store.upsert(ConversionJob(id="mid_1", url="u", status=JobStatus.CONVERTING, download_url="d"))
        store.upsert(ConversionJob(id="done_1", url="u", status=JobStatus.COMPLETED, filename="x.avi"))
        service = _service(store, dirs, resolver)

        assert service.load() == 2

        interrupted = service.get_job("mid_1")
        assert interrupted.status == JobStatus.FAILED
        assert interrupted.error == INTERRUPTED_ERROR
        assert interrupted.can_retry
        assert service.get_job("done_1").status == JobStatus.COMPLETED
        assert {j.id: j.status for j in store.load_all()}["mid_1"] == JobStatus.FAILED


class TestConvertLocal:
    """Tests for converting files already on disk."""

    def test_convert_local(self, store, dirs, resolver, tmp_path):
        _, completed = dirs
        source = tmp_path / "Holiday.mp4"
        source.write_bytes(b"local")
        service = _service(store, dirs, resolver)

        job = service.convert_local(source, "mpg", "cli_1")

        assert job.status == JobStatus.COMPLETED
        assert job.url == "cli-conversion"
        assert not job.can_retry
        assert (completed / "Holiday.mpg").read_bytes() == b"local"
        assert source.exists()

    def test_convert_local_failure(self, store, dirs, resolver, tmp_path):
        source = tmp_path / "Holiday.mp4"
        source.write_bytes(b"local")
        service = _service(store, dirs, resolver, transcoder=FakeTranscoder(error="bad"))

        job = service.convert_local(source, "avi", "cli_1")

        assert job.status == JobStatus.FAILED
        assert job.error == "FFmpeg conversion failed: bad"

    def test_convert_local_missing_input(self, store, dirs, resolver, tmp_path):
        service = _service(store, dirs, resolver)

        with pytest.raises(FileNotFoundError):
            service.convert_local(tmp_path / "none.mp4", "avi", "cli_1")
