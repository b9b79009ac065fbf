"""
Bounded worker pool shared by the download pipelines.

Jobs run on a ThreadPoolExecutor. Admission is capped at ``max_queue_size``
jobs (queued plus running); submissions beyond that raise CapacityError so
the API can answer 503 instead of piling up threads.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from ytconvert.logging_config import get_logger, log_with_context


class CapacityError(RuntimeError):
    """Raised when the pool cannot admit another job."""
    pass


class WorkerPool:
    """
    Runs pipeline tasks with bounded concurrency.

    Attributes:
        max_workers: Maximum number of jobs running at once
        max_queue_size: Maximum number of admitted jobs (queued + running)
    """

    def __init__(self, max_workers: int = 4, max_queue_size: int = 100):
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="job-worker"
        )
        self.logger = get_logger(__name__)

        self._active_jobs = 0
        self._queued_jobs = 0
        self._closed = False
        self._concurrency_lock = threading.Lock()

    def is_at_capacity(self) -> bool:
        with self._concurrency_lock:
            return self._active_jobs + self._queued_jobs >= self.max_queue_size

    def get_capacity_info(self) -> dict:
        """
        Get information about current capacity and load.

        Returns:
            Dictionary with active_jobs, queued_jobs, max_workers,
            max_queue_size, available_capacity and at_capacity
        """
        with self._concurrency_lock:
            admitted = self._active_jobs + self._queued_jobs
            return {
                "active_jobs": self._active_jobs,
                "queued_jobs": self._queued_jobs,
                "max_workers": self.max_workers,
                "max_queue_size": self.max_queue_size,
                "available_capacity": max(self.max_queue_size - admitted, 0),
                "at_capacity": admitted >= self.max_queue_size,
            }

    def submit(self, job_id: str, fn: Callable, *args, **kwargs) -> Future:
        """
        Schedule ``fn(*args, **kwargs)`` for ``job_id``.

        Raises:
            CapacityError: If the pool is full or shut down
        """
        with self._concurrency_lock:
            if self._closed:
                raise CapacityError("Worker pool is shut down")
            if self._active_jobs + self._queued_jobs >= self.max_queue_size:
                raise CapacityError(
                    f"Server is at capacity. Active jobs: {self._active_jobs}, "
                    f"Queued jobs: {self._queued_jobs}. Please retry later."
                )
            self._queued_jobs += 1

        try:
            return self.executor.submit(self._run, job_id, fn, *args, **kwargs)
        except RuntimeError as e:
            # Executor was shut down after the _closed check
            with self._concurrency_lock:
                self._queued_jobs -= 1
            raise CapacityError("Worker pool is shut down") from e

    def _run(self, job_id: str, fn: Callable, *args, **kwargs) -> None:
        with self._concurrency_lock:
            self._queued_jobs -= 1
            self._active_jobs += 1

        try:
            fn(*args, **kwargs)
        except Exception as e:
            # Pipelines record their own failures; this only catches bugs
            log_with_context(
                self.logger,
                "error",
                "Unhandled error in job worker",
                job_id=job_id,
                error=e
            )
        finally:
            with self._concurrency_lock:
                self._active_jobs -= 1

            self.logger.debug(
                f"Job {job_id} finished. Active: {self._active_jobs}, "
                f"Queued: {self._queued_jobs}"
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop admitting jobs and optionally wait for running ones."""
        with self._concurrency_lock:
            self._closed = True
        self.executor.shutdown(wait=wait, cancel_futures=not wait)
