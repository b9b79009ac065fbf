"""
Job registry for conversion jobs.

This module provides the JobManager class, the in-process view of every
conversion job. The registry is the authoritative cache and is reconciled
with the JobStore on reads.

Locking: ``_lock`` guards mapping membership only. Each ConversionJob has
its own lock which guards its fields; snapshots take only that lock, so a
listing is consistent per job but not a single point-in-time view.
A job lock may be held while taking ``_lock``, never the other way round.
"""

from datetime import datetime
from threading import Lock
from typing import Dict, Optional, Set

from ytconvert.database import JobStore, PersistenceError
from ytconvert.logging_config import get_logger, log_with_context
from ytconvert.models import ConversionJob, JobStatus
from ytconvert.storage import StorageService


class JobManager:
    """
    Manages the set of conversion jobs known to this process.

    Attributes:
        _jobs: Dictionary mapping job id to ConversionJob instances
        _active: Ids of jobs whose pipeline is currently running here
        _lock: Guards ``_jobs`` and ``_active`` membership
    """

    def __init__(self, store: JobStore, storage: StorageService):
        self.store = store
        self.storage = storage
        self._jobs: Dict[str, ConversionJob] = {}
        self._active: Set[str] = set()
        self._lock = Lock()
        self.logger = get_logger(__name__)

    def load(self) -> int:
        """
        Reconcile the registry with the store.

        Unknown ids are inserted. Known ids are merged in place under the
        job's own lock so that object identity (and the lock) survive.
        A stored row never replaces newer in-memory state: jobs running here
        are skipped, and so are jobs with a failed or concurrent save.

        Returns:
            Number of records read from the store

        Raises:
            PersistenceError: If the store cannot be read
        """
        with self._lock:
            revisions = {job_id: job.revision for job_id, job in self._jobs.items()}

        records = self.store.load_all()

        for record in records:
            with self._lock:
                existing = self._jobs.get(record.id)
                if existing is None:
                    self._jobs[record.id] = record
                    continue

            with existing.lock:
                if existing.unsaved or existing.revision != revisions.get(record.id):
                    continue
                if self.is_active(record.id):
                    continue
                existing.update_from(record)

        return len(records)

    def create(
        self,
        job_id: str,
        url: str,
        format: str,
        download_url: str,
        video_title: str
    ) -> ConversionJob:
        """
        Create, register and persist a new job in DOWNLOADING state.

        A persistence failure is logged; the in-memory job still exists.

        Raises:
            ValueError: If a job with the same id is already registered
        """
        job = ConversionJob(
            id=job_id,
            url=url,
            format=format,
            status=JobStatus.DOWNLOADING,
            start_time=datetime.utcnow(),
            download_url=download_url,
            video_title=video_title
        )

        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job {job_id} already exists")
            self._jobs[job_id] = job

        with job.lock:
            self.save(job)

        log_with_context(
            self.logger,
            "info",
            "Job created",
            job_id=job_id,
            url=url,
            target_format=job.target_format
        )
        return job

    def get(self, job_id: str) -> Optional[ConversionJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def save(self, job: ConversionJob) -> bool:
        """
        Persist ``job``. Caller holds ``job.lock``.

        Returns:
            False if the store rejected the write (logged, not raised)
        """
        job.revision += 1
        try:
            self.store.upsert(job)
            job.unsaved = False
            return True
        except PersistenceError as e:
            job.unsaved = True
            log_with_context(
                self.logger,
                "error",
                "Failed to save job to database",
                job_id=job.id,
                error=e
            )
            return False

    def activate(self, job_id: str) -> bool:
        """
        Mark a job as owned by a running pipeline.

        Returns:
            False if the job is already active
        """
        with self._lock:
            if job_id in self._active:
                return False
            self._active.add(job_id)
            return True

    def deactivate(self, job_id: str) -> None:
        with self._lock:
            self._active.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def jobs(self) -> list[ConversionJob]:
        """Current job objects (not snapshots)."""
        with self._lock:
            return list(self._jobs.values())

    def snapshot(self, job: ConversionJob) -> dict:
        """Consistent copy of one job plus display-only fields."""
        with job.lock:
            data = job.to_dict()
            data["can_retry"] = job.can_retry
        data["size"] = self.storage.get_formatted_file_size(data["filename"] or "")
        return data

    def list_all(self) -> list[dict]:
        """
        Snapshots of all jobs, newest ``start_time`` first.

        The registry is refreshed from the store first; if the store is
        unavailable the in-memory view is returned.
        """
        try:
            self.load()
        except PersistenceError as e:
            log_with_context(
                self.logger,
                "warning",
                "Error loading conversions from database, using in-memory view",
                error=e
            )

        snapshots = [self.snapshot(job) for job in self.jobs()]
        snapshots.sort(key=lambda s: s["start_time"], reverse=True)
        return snapshots
