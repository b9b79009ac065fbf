"""
Conversion pipeline: download a resolved video, transcode it, finalize.

This module provides the ConversionService class which drives each
ConversionJob through its state machine on the shared worker pool:

    downloading (0.25) -> converting (0.5) -> completed (1.0)

Any step may end in ``failed``. Every transition is applied and persisted
while holding the job's lock; the download and the ffmpeg run happen with
the lock released.
"""

import os
from pathlib import Path
from typing import Optional

from ytconvert.job_manager import JobManager
from ytconvert.logging_config import get_logger, log_with_context
from ytconvert.models import (
    PROGRESS_CONVERTING,
    PROGRESS_DOWNLOADING,
    ConversionJob,
    JobStatus,
)
from ytconvert.resolver import YouTubeResolver
from ytconvert.storage import sanitize_filename
from ytconvert.transcoder import ConversionError, Transcoder
from ytconvert.transfer import TransferEngine, TransferError
from ytconvert.worker_pool import CapacityError, WorkerPool


INTERRUPTED_ERROR = "Interrupted by service restart"
SHUTDOWN_ERROR = "Service shutting down before download started"


class ConversionService:
    """
    Orchestrates download + transcode for conversion jobs.

    Attributes:
        job_manager: Registry of conversion jobs
        transfer: TransferEngine used for downloads
        transcoder: Anything implementing ``transcode(input, output, format)``
        resolver: Provides the settle wait before the first download
        pool: Shared WorkerPool
        ongoing_dir: Scratch directory for downloads
        completed_dir: Directory receiving finished artifacts
    """

    def __init__(
        self,
        job_manager: JobManager,
        transfer: TransferEngine,
        transcoder: Transcoder,
        resolver: YouTubeResolver,
        pool: WorkerPool,
        ongoing_dir: Path,
        completed_dir: Path
    ):
        self.job_manager = job_manager
        self.transfer = transfer
        self.transcoder = transcoder
        self.resolver = resolver
        self.pool = pool
        self.ongoing_dir = Path(ongoing_dir)
        self.completed_dir = Path(completed_dir)
        self.logger = get_logger(__name__)

    def load(self) -> int:
        """
        Load stored jobs at startup.

        Jobs left in a non-terminal state by a previous process cannot still
        be running, so they are marked failed and become retryable.

        Returns:
            Number of jobs loaded
        """
        count = self.job_manager.load()

        for job in self.job_manager.jobs():
            with job.lock:
                if not job.status.is_terminal:
                    job.mark_failed(INTERRUPTED_ERROR)
                    self.job_manager.save(job)
                if job.can_retry:
                    log_with_context(
                        self.logger,
                        "info",
                        "Found failed job with download URL, can be retried",
                        job_id=job.id
                    )

        return count

    def submit(
        self,
        job_id: str,
        url: str,
        format: str,
        download_url: str,
        video_title: str
    ) -> ConversionJob:
        """
        Create a job and schedule it. Returns without waiting.

        Raises:
            ValueError: If ``job_id`` is already taken
            CapacityError: If the worker pool is full; the job is kept as failed
        """
        job = self.job_manager.create(job_id, url, format, download_url, video_title)
        self._schedule(job, settle=True)
        return job

    def get_job(self, job_id: str) -> Optional[ConversionJob]:
        return self.job_manager.get(job_id)

    def get_snapshot(self, job_id: str) -> Optional[dict]:
        job = self.job_manager.get(job_id)
        return self.job_manager.snapshot(job) if job else None

    def list_jobs(self) -> list[dict]:
        return self.job_manager.list_all()

    def retry_job(self, job_id: str) -> ConversionJob:
        """
        Restart a job from the download step with its stored download URL.

        The resolution API is not called again and no settle wait is applied.

        Raises:
            KeyError: If the job does not exist
            ValueError: If the job is running, queued, completed or has no
                download URL
            CapacityError: If the worker pool is full
        """
        job = self.job_manager.get(job_id)
        if job is None:
            raise KeyError(f"Job {job_id} not found")

        if self.job_manager.is_active(job_id):
            raise ValueError("Cannot retry: job is still running")

        with job.lock:
            if not job.download_url:
                raise ValueError("Cannot retry: no download URL available")
            if not job.can_retry:
                raise ValueError(f"Cannot retry: job is {job.status.value}")
            job.reset_for_retry()
            self.job_manager.save(job)

        log_with_context(self.logger, "info", "Retrying job", job_id=job_id)
        self._schedule(job, settle=False)
        return job

    def convert_local(self, input_path: Path, format: str, job_id: str) -> ConversionJob:
        """
        Transcode a file already on disk, on the calling thread.

        The job is recorded like any other conversion, with ``cli-conversion``
        as its URL and no download URL, so it is never retryable. The
        output lands in the completed directory next to downloaded jobs.

        Raises:
            FileNotFoundError: If ``input_path`` does not exist
            ValueError: If ``job_id`` is already taken
        """
        input_path = Path(input_path)
        if not input_path.is_file():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        job = self.job_manager.create(job_id, "cli-conversion", format, "", input_path.stem)
        output_name = f"{input_path.stem}.{job.target_format}"

        with job.lock:
            job.status = JobStatus.CONVERTING
            job.progress = PROGRESS_CONVERTING
            self.job_manager.save(job)

        try:
            self.transcoder.transcode(input_path, self.completed_dir / output_name, job.target_format)
        except ConversionError as e:
            self._mark_failed(job, f"FFmpeg conversion failed: {e}")
            return job

        with job.lock:
            job.mark_completed(output_name)
            self.job_manager.save(job)
        return job

    def _schedule(self, job: ConversionJob, settle: bool) -> None:
        try:
            self.pool.submit(job.id, self.process_conversion, job, settle)
        except CapacityError as e:
            self._mark_failed(job, str(e))
            raise

    def process_conversion(self, job: ConversionJob, settle: bool = False) -> None:
        """
        Run the pipeline for ``job`` on the calling thread.

        Failures are recorded on the job; nothing is raised.
        """
        if not self.job_manager.activate(job.id):
            log_with_context(self.logger, "warning", "Job already running", job_id=job.id)
            return

        try:
            self._run(job, settle)
        except Exception as e:
            log_with_context(self.logger, "error", "Job failed - unexpected error", job_id=job.id, error=e)
            self._mark_failed(job, f"Unexpected error during conversion: {e}")
        finally:
            self.job_manager.deactivate(job.id)

    def _run(self, job: ConversionJob, settle: bool) -> None:
        with job.lock:
            job.status = JobStatus.DOWNLOADING
            job.progress = PROGRESS_DOWNLOADING
            self.job_manager.save(job)
            download_url = job.download_url
            target_format = job.target_format
            safe_name = sanitize_filename(job.video_title) or job.id

        if settle and not self.resolver.wait_for_file_ready():
            self._mark_failed(job, SHUTDOWN_ERROR)
            return

        # Scratch name carries the job id; the same video may be queued twice
        temp_file = self.ongoing_dir / f"{job.id}_{safe_name}.mp4"
        output_name = f"{safe_name}.{target_format}"
        output_file = self.completed_dir / output_name

        try:
            self.transfer.fetch(download_url, temp_file, job_id=job.id)
        except TransferError as e:
            self._mark_failed(job, f"Failed to download video: {e}")
            self._remove_temp(temp_file, job.id)
            return

        with job.lock:
            job.status = JobStatus.CONVERTING
            job.progress = PROGRESS_CONVERTING
            self.job_manager.save(job)

        try:
            self.transcoder.transcode(temp_file, output_file, target_format)
        except (ConversionError, FileNotFoundError) as e:
            self._mark_failed(job, f"FFmpeg conversion failed: {e}")
            self._remove_temp(temp_file, job.id)
            return

        self._remove_temp(temp_file, job.id)

        with job.lock:
            job.mark_completed(output_name)
            self.job_manager.save(job)

        log_with_context(
            self.logger,
            "info",
            "Conversion completed",
            job_id=job.id,
            file_path=str(output_file)
        )

    def _mark_failed(self, job: ConversionJob, error: str) -> None:
        with job.lock:
            job.mark_failed(error)
            self.job_manager.save(job)
        log_with_context(self.logger, "error", "Job failed", job_id=job.id, reason=error)

    def _remove_temp(self, temp_file: Path, job_id: str) -> None:
        try:
            os.remove(temp_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            log_with_context(
                self.logger,
                "warning",
                "Failed to clean up temporary file",
                job_id=job_id,
                file_path=str(temp_file),
                error=e
            )
