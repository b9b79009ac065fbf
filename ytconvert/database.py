"""
Relational persistence for conversion jobs and direct downloads.

``JobStore`` is the only component that talks to the database. Every call
opens its own short-lived session, so worker threads upserting different
jobs never share a transaction and only touch their own row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from ytconvert.logging_config import get_logger
from ytconvert.models import ConversionJob, DirectDownload, JobStatus


class PersistenceError(Exception):
    """Raised when a record cannot be written to or read from the database."""
    pass


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class ConversionJobRow(Base):
    __tablename__ = "conversion_jobs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    url: Mapped[str] = mapped_column(Text, default="")
    format: Mapped[str] = mapped_column(String(16), default="")
    status: Mapped[str] = mapped_column(String(32))
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    download_url: Mapped[str] = mapped_column(Text, default="")
    video_title: Mapped[str] = mapped_column(Text, default="")


class DirectDownloadRow(Base):
    __tablename__ = "direct_downloads"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    url: Mapped[str] = mapped_column(Text, default="")
    filename: Mapped[str] = mapped_column(Text)
    download_url: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32))
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


def _job_to_row(job: ConversionJob) -> ConversionJobRow:
    return ConversionJobRow(
        id=job.id,
        url=job.url,
        format=job.format,
        status=job.status.value,
        start_time=job.start_time,
        end_time=job.end_time,
        filename=job.filename,
        error=job.error,
        progress=job.progress,
        download_url=job.download_url,
        video_title=job.video_title,
    )


def _row_to_job(row: ConversionJobRow) -> ConversionJob:
    return ConversionJob(
        id=row.id,
        url=row.url or "",
        format=row.format or "",
        status=JobStatus(row.status),
        start_time=row.start_time,
        end_time=row.end_time,
        filename=row.filename,
        error=row.error,
        progress=row.progress or 0.0,
        download_url=row.download_url or "",
        video_title=row.video_title or "",
    )


def _download_to_row(download: DirectDownload) -> DirectDownloadRow:
    return DirectDownloadRow(
        id=download.id,
        url=download.url,
        filename=download.filename,
        download_url=download.download_url,
        status=download.status.value,
        error=download.error,
        start_time=download.start_time,
        end_time=download.end_time,
        updated_at=download.updated_at,
    )


def _row_to_download(row: DirectDownloadRow) -> DirectDownload:
    return DirectDownload(
        id=row.id,
        url=row.url or "",
        filename=row.filename,
        download_url=row.download_url or "",
        status=JobStatus(row.status),
        error=row.error,
        start_time=row.start_time,
        end_time=row.end_time,
        updated_at=row.updated_at,
    )


class JobStore:
    """
    Durable store of job records.

    Supports full-scan loads and upsert-by-id for both record kinds. All
    database failures are re-raised as PersistenceError.
    """

    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # Records are written from worker threads
            connect_args["check_same_thread"] = False

        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self.logger = get_logger(__name__)

    def init_schema(self) -> None:
        """Create the tables if they do not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create schema: {e}") from e

    def upsert(self, job: ConversionJob) -> None:
        """Insert or update one conversion job. Caller holds ``job.lock``."""
        self._merge(_job_to_row(job))

    def load_all(self) -> list[ConversionJob]:
        """Return every stored conversion job."""
        return [_row_to_job(row) for row in self._scan(ConversionJobRow)]

    def upsert_download(self, download: DirectDownload) -> None:
        """Insert or update one direct download record."""
        self._merge(_download_to_row(download))

    def load_downloads(self) -> list[DirectDownload]:
        """Return every stored direct download record."""
        return [_row_to_download(row) for row in self._scan(DirectDownloadRow)]

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.engine.connect() as connection:
                connection.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()

    def _merge(self, row: Base) -> None:
        try:
            with self._session_factory() as session:
                session.merge(row)
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save {row.__tablename__} {row.id}: {e}") from e

    def _scan(self, model) -> list:
        try:
            with self._session_factory() as session:
                return list(session.scalars(select(model)))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load {model.__tablename__}: {e}") from e
