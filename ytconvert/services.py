"""Wires settings into the service objects shared by the API and the CLI."""

from dataclasses import dataclass
from typing import Optional

from ytconvert.config import Settings
from ytconvert.conversion_service import ConversionService
from ytconvert.database import JobStore, PersistenceError
from ytconvert.direct_download_service import DirectDownloadService
from ytconvert.job_manager import JobManager
from ytconvert.logging_config import get_logger, log_with_context
from ytconvert.resolver import YouTubeResolver
from ytconvert.storage import StorageService
from ytconvert.transcoder import FFmpegTranscoder, Transcoder
from ytconvert.transfer import TransferEngine
from ytconvert.worker_pool import WorkerPool


logger = get_logger(__name__)


@dataclass
class Services:
    """Everything a front-end needs to accept and track jobs."""
    settings: Settings
    store: JobStore
    storage: StorageService
    resolver: YouTubeResolver
    transcoder: Transcoder
    pool: WorkerPool
    conversions: ConversionService
    direct_downloads: DirectDownloadService

    def shutdown(self, wait: bool = True) -> None:
        """Interrupt settle waits, drain the pool and close the database."""
        self.resolver.shutdown()
        self.pool.shutdown(wait=wait)
        self.store.dispose()


def build_services(
    settings: Settings,
    transfer: Optional[TransferEngine] = None,
    transcoder: Optional[Transcoder] = None
) -> Services:
    """
    Create directories, open the database and construct the pipelines.

    Stored jobs are loaded; a failure to load is logged and the service
    starts with an empty registry.
    """
    settings.ensure_directories()

    store = JobStore(settings.database_url)
    store.init_schema()

    storage = StorageService(settings.completed_dir)
    resolver = YouTubeResolver(
        api_key=settings.rapidapi_key,
        api_host=settings.rapidapi_host,
        settle_delay=settings.settle_delay_seconds,
        resolve_timeout=settings.resolve_timeout_seconds,
        title_timeout=settings.title_timeout_seconds
    )
    transfer = transfer or TransferEngine(
        max_attempts=settings.download_max_attempts,
        backoff_seconds=settings.download_backoff_seconds,
        timeout=settings.download_timeout_seconds
    )
    transcoder = transcoder or FFmpegTranscoder(settings.ffmpeg_binary)
    pool = WorkerPool(
        max_workers=settings.max_concurrent_workers,
        max_queue_size=settings.max_queue_size
    )

    conversions = ConversionService(
        job_manager=JobManager(store, storage),
        transfer=transfer,
        transcoder=transcoder,
        resolver=resolver,
        pool=pool,
        ongoing_dir=settings.ongoing_dir,
        completed_dir=settings.completed_dir
    )
    direct_downloads = DirectDownloadService(
        store=store,
        transfer=transfer,
        resolver=resolver,
        pool=pool,
        ongoing_dir=settings.ongoing_dir,
        completed_dir=settings.completed_dir
    )

    for name, loader in (("conversions", conversions.load), ("direct downloads", direct_downloads.load)):
        try:
            count = loader()
            log_with_context(logger, "info", f"Loaded {name} from database", count=count)
        except PersistenceError as e:
            log_with_context(logger, "warning", f"Failed to load {name} from database", error=e)

    return Services(
        settings=settings,
        store=store,
        storage=storage,
        resolver=resolver,
        transcoder=transcoder,
        pool=pool,
        conversions=conversions,
        direct_downloads=direct_downloads
    )
