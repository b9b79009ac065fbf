"""
Direct-download pipeline: fetch a resolved video and publish it unchanged.

States: processing -> completed | failed. The file is fetched into a
scratch file named after the download id and renamed into the completed
directory. A failed download can be retried with its stored download URL,
the same way conversion jobs are retried.
"""

import os
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Set

from ytconvert.database import JobStore, PersistenceError
from ytconvert.logging_config import get_logger, log_with_context
from ytconvert.models import DirectDownload, JobStatus
from ytconvert.resolver import YouTubeResolver
from ytconvert.transfer import TransferEngine, TransferError
from ytconvert.worker_pool import CapacityError, WorkerPool


class DirectDownloadService:
    """
    Tracks and processes direct downloads.

    Attributes:
        store: Persistence gateway
        transfer: TransferEngine used for downloads
        resolver: Provides the settle wait before the first download
        pool: Shared WorkerPool
        ongoing_dir: Scratch directory for downloads
        completed_dir: Directory receiving finished files
    """

    def __init__(
        self,
        store: JobStore,
        transfer: TransferEngine,
        resolver: YouTubeResolver,
        pool: WorkerPool,
        ongoing_dir: Path,
        completed_dir: Path
    ):
        self.store = store
        self.transfer = transfer
        self.resolver = resolver
        self.pool = pool
        self.ongoing_dir = Path(ongoing_dir)
        self.completed_dir = Path(completed_dir)
        self._downloads: Dict[str, DirectDownload] = {}
        self._active: Set[str] = set()
        self._lock = Lock()
        self.logger = get_logger(__name__)

    def load(self) -> int:
        """
        Load stored downloads at startup.

        Downloads still marked processing were interrupted by a restart and
        are marked failed.
        """
        records = self.store.load_downloads()
        for record in records:
            with self._lock:
                if record.id in self._downloads:
                    continue
                self._downloads[record.id] = record
            if record.status == JobStatus.PROCESSING:
                with record.lock:
                    record.mark_failed("Interrupted by service restart")
                    self._save(record)
        return len(records)

    def create_download(
        self,
        download_id: str,
        url: str,
        filename: str,
        download_url: str
    ) -> DirectDownload:
        """
        Register and persist a new download in PROCESSING state.

        Raises:
            ValueError: If the id is already taken
        """
        download = DirectDownload(
            id=download_id,
            url=url,
            filename=filename,
            download_url=download_url
        )

        with self._lock:
            if download_id in self._downloads:
                raise ValueError(f"Download {download_id} already exists")
            self._downloads[download_id] = download

        with download.lock:
            self._save(download)

        log_with_context(
            self.logger,
            "info",
            "Direct download created",
            job_id=download_id,
            url=url,
            artifact=filename
        )
        return download

    def submit(
        self,
        download_id: str,
        url: str,
        filename: str,
        download_url: str
    ) -> DirectDownload:
        """
        Create a download and schedule it. Returns without waiting.

        Raises:
            ValueError: If the id is already taken
            CapacityError: If the worker pool is full; the record is kept as failed
        """
        download = self.create_download(download_id, url, filename, download_url)
        self._schedule(download, settle=True)
        return download

    def get_download(self, download_id: str) -> Optional[DirectDownload]:
        with self._lock:
            return self._downloads.get(download_id)

    def is_active(self, download_id: str) -> bool:
        with self._lock:
            return download_id in self._active

    def snapshot(self, download: DirectDownload) -> dict:
        with download.lock:
            data = download.to_dict()
            data["can_retry"] = download.can_retry
        return data

    def list_downloads(self) -> list[dict]:
        """Snapshots of all downloads, newest first."""
        with self._lock:
            downloads = list(self._downloads.values())
        snapshots = [self.snapshot(d) for d in downloads]
        snapshots.sort(key=lambda s: s["start_time"], reverse=True)
        return snapshots

    def retry_download(self, download_id: str) -> DirectDownload:
        """
        Restart a failed download with its stored download URL.

        Raises:
            KeyError: If the download does not exist
            ValueError: If it is not failed or has no download URL
            CapacityError: If the worker pool is full
        """
        download = self.get_download(download_id)
        if download is None:
            raise KeyError(f"Download {download_id} not found")

        if self.is_active(download_id):
            raise ValueError("Cannot retry: download is still running")

        with download.lock:
            if not download.download_url:
                raise ValueError("Cannot retry: no download URL available")
            if not download.can_retry:
                raise ValueError(f"Cannot retry: download is {download.status.value}")
            download.reset_for_retry()
            self._save(download)

        self._schedule(download, settle=False)
        return download

    def delete_file(self, download_id: str) -> None:
        """
        Remove the downloaded file, keeping the record.

        Raises:
            KeyError: If the download does not exist
            FileNotFoundError: If the file is absent
        """
        download = self.get_download(download_id)
        if download is None:
            raise KeyError(f"Download {download_id} not found")

        os.remove(self.completed_dir / download.filename)
        log_with_context(self.logger, "info", "Download file deleted", job_id=download_id)

    def file_path(self, download: DirectDownload) -> Path:
        return self.completed_dir / download.filename

    def _schedule(self, download: DirectDownload, settle: bool) -> None:
        try:
            self.pool.submit(download.id, self.process_download, download, settle)
        except CapacityError as e:
            self._mark_failed(download, str(e))
            raise

    def process_download(self, download: DirectDownload, settle: bool = False) -> None:
        """Run the pipeline for ``download`` on the calling thread."""
        with self._lock:
            if download.id in self._active:
                return
            self._active.add(download.id)

        try:
            self._run(download, settle)
        except Exception as e:
            log_with_context(self.logger, "error", "Download failed - unexpected error", job_id=download.id, error=e)
            self._mark_failed(download, f"Unexpected error during download: {e}")
        finally:
            with self._lock:
                self._active.discard(download.id)

    def _run(self, download: DirectDownload, settle: bool) -> None:
        with download.lock:
            download_url = download.download_url
            filename = download.filename

        if settle and not self.resolver.wait_for_file_ready():
            self._mark_failed(download, "Service shutting down before download started")
            return

        temp_file = self.ongoing_dir / f"{download.id}_{filename}"
        completed_file = self.completed_dir / filename

        try:
            self.transfer.fetch(download_url, temp_file, job_id=download.id)
        except TransferError as e:
            self._mark_failed(download, f"Failed to download video: {e}")
            self._remove_temp(temp_file)
            return

        try:
            os.replace(temp_file, completed_file)
        except OSError as e:
            self._mark_failed(download, f"Failed to move file: {e}")
            self._remove_temp(temp_file)
            return

        with download.lock:
            download.mark_completed()
            self._save(download)

        log_with_context(
            self.logger,
            "info",
            "Download completed successfully",
            job_id=download.id,
            file_path=str(completed_file)
        )

    def _mark_failed(self, download: DirectDownload, error: str) -> None:
        with download.lock:
            download.mark_failed(error)
            self._save(download)
        log_with_context(self.logger, "error", "Download failed", job_id=download.id, reason=error)

    def _save(self, download: DirectDownload) -> None:
        try:
            self.store.upsert_download(download)
        except PersistenceError as e:
            log_with_context(
                self.logger,
                "error",
                "Failed to save download to database",
                job_id=download.id,
                error=e
            )

    def _remove_temp(self, temp_file: Path) -> None:
        try:
            os.remove(temp_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Failed to clean up temporary file {temp_file}: {e}")
