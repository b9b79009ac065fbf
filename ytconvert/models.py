"""
Data models for the YouTube conversion service.

This module defines the records tracked per request: ``ConversionJob`` for
download-then-transcode requests and ``DirectDownload`` for plain downloads.
Each record carries its own lock; the pipeline that owns a record holds it
only across a single status transition.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    """
    Processing states of a record.

    Conversion jobs move DOWNLOADING -> CONVERTING -> COMPLETED; direct
    downloads move PROCESSING -> COMPLETED. Either may end in FAILED.
    """
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Progress markers of the conversion pipeline
PROGRESS_DOWNLOADING = 0.25
PROGRESS_CONVERTING = 0.5
PROGRESS_COMPLETED = 1.0

DEFAULT_FORMAT = "mp4"


class ConversionJob:
    """
    Represents one conversion request.

    Attributes:
        id: Unique identifier (``<videoID>_<unixTimestamp>``)
        url: The URL the user submitted
        format: Target container (mp4, avi, mpg, ...)
        status: Current JobStatus
        start_time: When the current run started
        end_time: Set once on COMPLETED or FAILED, cleared by retry
        filename: Artifact name in the completed directory (COMPLETED only)
        error: Failure description (FAILED only)
        progress: 0.25 downloading, 0.5 converting, 1.0 completed
        download_url: Resolved transient source URL, kept for retries
        video_title: Human readable title used for the artifact name
        revision: Bumped on every save attempt; never persisted
        unsaved: True while the last save failed; never persisted
        lock: Guards the fields above; never persisted
    """

    def __init__(
        self,
        id: str,
        url: str,
        format: str = "",
        status: JobStatus = JobStatus.DOWNLOADING,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        filename: Optional[str] = None,
        error: Optional[str] = None,
        progress: float = 0.0,
        download_url: str = "",
        video_title: str = ""
    ):
        self.id = id
        self.url = url
        self.format = format
        self.status = JobStatus(status)
        self.start_time = start_time or datetime.utcnow()
        self.end_time = end_time
        self.filename = filename
        self.error = error
        self.progress = progress
        self.download_url = download_url
        self.video_title = video_title
        self.revision = 0
        self.unsaved = False
        self.lock = threading.Lock()

    @property
    def target_format(self) -> str:
        """Format used for the output extension; empty means mp4."""
        return self.format or DEFAULT_FORMAT

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and bool(self.download_url)

    def mark_failed(self, error: str) -> None:
        """Apply the FAILED transition. Caller holds ``lock``."""
        self.status = JobStatus.FAILED
        self.error = error
        self.end_time = datetime.utcnow()

    def mark_completed(self, filename: str) -> None:
        """Apply the COMPLETED transition. Caller holds ``lock``."""
        self.status = JobStatus.COMPLETED
        self.progress = PROGRESS_COMPLETED
        self.filename = filename
        self.end_time = datetime.utcnow()

    def reset_for_retry(self) -> None:
        """Return a job to the start of the pipeline. Caller holds ``lock``."""
        self.status = JobStatus.DOWNLOADING
        self.error = None
        self.filename = None
        self.end_time = None
        self.progress = PROGRESS_DOWNLOADING
        self.start_time = datetime.utcnow()

    def update_from(self, other: "ConversionJob") -> None:
        """Copy persisted fields from ``other``, keeping identity and lock."""
        self.url = other.url
        self.format = other.format
        self.status = other.status
        self.start_time = other.start_time
        self.end_time = other.end_time
        self.filename = other.filename
        self.error = other.error
        self.progress = other.progress
        self.download_url = other.download_url
        self.video_title = other.video_title

    def to_dict(self) -> dict:
        """Serializable view of the persisted fields."""
        return {
            "id": self.id,
            "url": self.url,
            "format": self.format,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "filename": self.filename,
            "error": self.error,
            "progress": self.progress,
            "download_url": self.download_url,
            "video_title": self.video_title,
        }

    def __repr__(self) -> str:
        return (
            f"ConversionJob(id={self.id!r}, status={self.status.value!r}, "
            f"format={self.format!r})"
        )


class DirectDownload:
    """
    Represents one download-only request.

    The final ``filename`` is fixed at creation; the file is fetched into a
    per-download scratch file and renamed to that name in the completed
    directory when the transfer succeeds.
    """

    def __init__(
        self,
        id: str,
        url: str,
        filename: str,
        download_url: str = "",
        status: JobStatus = JobStatus.PROCESSING,
        error: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ):
        self.id = id
        self.url = url
        self.filename = filename
        self.download_url = download_url
        self.status = JobStatus(status)
        self.error = error
        self.start_time = start_time or datetime.utcnow()
        self.end_time = end_time
        self.updated_at = updated_at or self.start_time
        self.lock = threading.Lock()

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and bool(self.download_url)

    def mark_failed(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.error = error
        self.end_time = self.updated_at = datetime.utcnow()

    def mark_completed(self) -> None:
        self.status = JobStatus.COMPLETED
        self.error = None
        self.end_time = self.updated_at = datetime.utcnow()

    def reset_for_retry(self) -> None:
        self.status = JobStatus.PROCESSING
        self.error = None
        self.end_time = None
        self.start_time = self.updated_at = datetime.utcnow()

    def update_from(self, other: "DirectDownload") -> None:
        self.url = other.url
        self.filename = other.filename
        self.download_url = other.download_url
        self.status = other.status
        self.error = other.error
        self.start_time = other.start_time
        self.end_time = other.end_time
        self.updated_at = other.updated_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "filename": self.filename,
            "download_url": self.download_url,
            "status": self.status.value,
            "error": self.error,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return (
            f"DirectDownload(id={self.id!r}, status={self.status.value!r}, "
            f"filename={self.filename!r})"
        )
