"""
FastAPI application for the YouTube conversion service.

This module initializes the FastAPI application with CORS configuration,
request logging, exception handlers for consistent error responses, and
the download / conversion endpoints.
"""

import shutil
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError

from ytconvert.api_models import (
    ConversionSnapshot,
    DeleteResponse,
    DirectDownloadStatus,
    DownloadRequest,
    DownloadResponse,
    ErrorResponse,
    HealthResponse,
    RetryResponse,
)
from ytconvert.config import settings
from ytconvert.logging_config import get_logger, log_with_context, setup_logging
from ytconvert.models import JobStatus
from ytconvert.resolver import ResolutionError, YouTubeResolver
from ytconvert.services import Services, build_services
from ytconvert.storage import sanitize_filename
from ytconvert.worker_pool import CapacityError

# Configure structured logging
setup_logging(
    log_level=settings.log_level.value,
    use_json=True
)
logger = get_logger(__name__)

# Global service container, created on startup
services: Optional[Services] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Creates the storage directories, opens the database and loads stored
    jobs on startup; drains running jobs on shutdown.
    """
    global services

    logger.info("YouTube conversion service starting up...")
    logger.info(settings.display())

    missing = settings.missing_credentials()
    if missing:
        log_with_context(
            logger,
            "warning",
            "Resolution API credentials missing; downloads will fail",
            missing=missing
        )

    try:
        services = build_services(settings)
    except Exception as e:
        log_with_context(logger, "error", "Failed to create services", error=e)
        services = None

    logger.info("Application startup complete")

    yield

    logger.info("YouTube conversion service shutting down...")
    if services:
        services.shutdown(wait=True)
        services = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="YouTube Conversion Service",
    description="""
    Download YouTube videos and optionally convert them with ffmpeg.

    ## Workflow

    1. `POST /api/download` with `{url, format, convert}`
    2. Receive a job id; the job runs in the background
    3. Poll `GET /api/conversions` (conversions) or
       `GET /api/direct-download/{id}/status` (direct downloads)
    4. Fetch the result from `GET /api/file/{filename}` or
       `GET /api/direct-download/{id}`

    Failed jobs keep their resolved download link and can be retried with
    `POST /api/retry/{jobId}` without calling the resolution API again.

    ## Formats

    * `avi` - MPEG-4 video, MP3 audio
    * `mpg` - MPEG-2 video, MP2 audio at 192k
    * anything else - H.264 video, AAC audio
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request with its status code and processing time."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    log_with_context(
        logger,
        "info",
        "Request completed",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else "unknown",
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2)
    )
    return response


def _error(code: str, message: str, details=None) -> dict:
    return {"error": {"code": code, "message": message, "details": details}}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with the validation errors."""
    log_with_context(
        logger,
        "warning",
        "Validation error",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error("VALIDATION_ERROR", "Invalid request body", _jsonable_errors(exc.errors()))
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(
    request: Request,
    exc: ValidationError
) -> JSONResponse:
    log_with_context(
        logger,
        "warning",
        "Pydantic validation error",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error("VALIDATION_ERROR", "Invalid data format", _jsonable_errors(exc.errors()))
    )


@app.exception_handler(ValueError)
async def value_error_exception_handler(
    request: Request,
    exc: ValueError
) -> JSONResponse:
    """Client errors raised by the services (bad paths, not retryable...)."""
    log_with_context(
        logger,
        "warning",
        "Rejected request",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error("INVALID_INPUT", str(exc))
    )


@app.exception_handler(FileNotFoundError)
async def file_not_found_exception_handler(
    request: Request,
    exc: FileNotFoundError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error("NOT_FOUND", "File not found")
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    log_with_context(
        logger,
        "error",
        "Unexpected error",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error("INTERNAL_ERROR", "An unexpected error occurred", str(exc))
    )


def _jsonable_errors(errors) -> list:
    """Validation errors with non-JSON values (exceptions in ctx) stringified."""
    return [
        {key: (value if key != "ctx" else {k: str(v) for k, v in value.items()}) for key, value in err.items()}
        for err in errors
    ]


def _require_services() -> Services:
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=_error("SERVICE_UNAVAILABLE", "Service is not available")
        )
    return services


def _capacity_exception(svc: Services, exc: Exception) -> HTTPException:
    info = svc.pool.get_capacity_info()
    logger.warning(
        f"Service at capacity. Active: {info['active_jobs']}, Queued: {info['queued_jobs']}"
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=_error("AT_CAPACITY", str(exc) or "Server is at capacity. Please retry later.", info)
    )


@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Always answers 200 so monitoring can tell "down" from "degraded"; the
    individual flags say which dependency is missing.
    """
    if services is None:
        return HealthResponse(
            status="unavailable",
            database=False,
            ffmpeg_available=False,
            resolver_configured=False
        )

    database_ok = services.store.ping()
    ffmpeg_ok = shutil.which(settings.ffmpeg_binary) is not None
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        database=database_ok,
        ffmpeg_available=ffmpeg_ok,
        resolver_configured=not settings.missing_credentials()
    )


@app.get("/api/capacity", tags=["Health"])
async def get_capacity() -> dict:
    """Current worker pool load."""
    return _require_services().pool.get_capacity_info()


@app.post(
    "/api/download",
    response_model=DownloadResponse,
    tags=["Jobs"],
    summary="Resolve a video and start a conversion or direct download",
    responses={
        400: {"model": ErrorResponse, "description": "Missing or unrecognised URL"},
        502: {"model": ErrorResponse, "description": "Resolution API failed"},
        503: {"model": ErrorResponse, "description": "Service unavailable or at capacity"},
    }
)
def create_download(request: DownloadRequest) -> DownloadResponse:
    """
    Resolve a video URL and start a conversion or direct download.

    The resolution API is called once, synchronously. The download itself,
    including the settle delay, runs on the worker pool; the response is
    returned right away with the id to poll.

    Raises:
        HTTPException 400: Missing or unrecognised URL
        HTTPException 502: The resolution API failed
        HTTPException 503: Service unavailable or at capacity
    """
    svc = _require_services()

    if not request.url.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error("MISSING_URL", "URL is required")
        )

    try:
        video_id = YouTubeResolver.extract_video_id(request.url)
    except ResolutionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error("INVALID_URL", f"Invalid YouTube URL: {e}")
        )

    if svc.pool.is_at_capacity():
        raise _capacity_exception(svc, CapacityError())

    try:
        resolved = svc.resolver.resolve(video_id)
    except ResolutionError as e:
        log_with_context(logger, "error", "Resolution failed", video_id=video_id, error=e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=_error("RESOLUTION_FAILED", f"Failed to get download URL: {e}")
        )

    video_title = svc.resolver.title_for(resolved)
    job_id = f"{video_id}_{int(time.time())}"

    try:
        if request.convert:
            svc.conversions.submit(job_id, request.url, request.format, resolved.file_url, video_title)
            return DownloadResponse(status="converting", job_id=job_id)

        filename = (sanitize_filename(video_title) or video_id) + ".mp4"
        svc.direct_downloads.submit(job_id, request.url, filename, resolved.file_url)
        return DownloadResponse(status="processing", job_id=job_id)
    except CapacityError as e:
        raise _capacity_exception(svc, e)


@app.get("/api/conversions", response_model=list[ConversionSnapshot], tags=["Jobs"])
def list_conversions() -> list[ConversionSnapshot]:
    """All conversion jobs, newest first."""
    svc = _require_services()
    return [ConversionSnapshot.from_snapshot(s) for s in svc.conversions.list_jobs()]


@app.get("/api/conversions/{job_id}", response_model=ConversionSnapshot, tags=["Jobs"])
def get_conversion(job_id: str) -> ConversionSnapshot:
    svc = _require_services()
    snapshot = svc.conversions.get_snapshot(job_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("JOB_NOT_FOUND", f"Job {job_id} not found")
        )
    return ConversionSnapshot.from_snapshot(snapshot)


@app.post(
    "/api/retry/{job_id}",
    response_model=RetryResponse,
    tags=["Jobs"],
    responses={
        400: {"model": ErrorResponse, "description": "Job is not retryable"},
        404: {"model": ErrorResponse, "description": "Job not found"},
    }
)
def retry_conversion(job_id: str) -> RetryResponse:
    """
    Re-run a failed conversion from the download step.

    Raises:
        HTTPException 404: Unknown job
        HTTPException 400: Job is not failed or has no stored download URL
        HTTPException 503: At capacity
    """
    svc = _require_services()
    try:
        svc.conversions.retry_job(job_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("JOB_NOT_FOUND", "Job not found")
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error("NOT_RETRYABLE", str(e))
        )
    except CapacityError as e:
        raise _capacity_exception(svc, e)

    return RetryResponse(job_id=job_id)


@app.get("/api/file/{filename:path}", tags=["Files"])
def download_file(filename: str) -> FileResponse:
    """
    Stream a completed artifact as an attachment.

    Names resolving outside the completed directory are rejected with 400.
    """
    svc = _require_services()
    file_path = svc.storage.validate_file_path(filename)
    if not file_path.is_file():
        raise FileNotFoundError(filename)

    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        filename=file_path.name
    )


@app.delete("/api/delete/{filename:path}", response_model=DeleteResponse, tags=["Files"])
def delete_file(filename: str) -> DeleteResponse:
    """Delete a completed artifact. The job record is kept."""
    svc = _require_services()
    svc.storage.delete_file(filename)
    return DeleteResponse(status="ok")


@app.get("/api/direct-download/{download_id}/status", response_model=DirectDownloadStatus, tags=["Direct downloads"])
def direct_download_status(download_id: str) -> DirectDownloadStatus:
    svc = _require_services()
    download = svc.direct_downloads.get_download(download_id)
    if download is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("DOWNLOAD_NOT_FOUND", "Download not found")
        )
    return DirectDownloadStatus.from_snapshot(svc.direct_downloads.snapshot(download))


@app.get("/api/direct-download/{download_id}", tags=["Direct downloads"])
def direct_download_file(download_id: str):
    """
    Stream a finished direct download.

    Returns 202 with the current status while the download is processing,
    and 409 with the stored error when it failed.
    """
    svc = _require_services()
    download = svc.direct_downloads.get_download(download_id)
    if download is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("DOWNLOAD_NOT_FOUND", "Download not found")
        )

    snapshot = svc.direct_downloads.snapshot(download)
    body = DirectDownloadStatus.from_snapshot(snapshot).model_dump(mode="json", by_alias=True)

    if snapshot["status"] == JobStatus.PROCESSING.value:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body)
    if snapshot["status"] == JobStatus.FAILED.value:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body)

    file_path = svc.direct_downloads.file_path(download)
    if not file_path.is_file():
        raise FileNotFoundError(str(file_path))

    logger.info(f"Served file {snapshot['filename']} for download {download_id}")
    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        filename=snapshot["filename"]
    )


@app.delete("/api/direct-download/{download_id}", response_model=DeleteResponse, tags=["Direct downloads"])
def delete_direct_download(download_id: str) -> DeleteResponse:
    """Delete the downloaded file. The download record is kept."""
    svc = _require_services()
    try:
        svc.direct_downloads.delete_file(download_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("DOWNLOAD_NOT_FOUND", "Download not found")
        )
    return DeleteResponse(status="ok")


@app.post("/api/direct-download/{download_id}/retry", response_model=RetryResponse, tags=["Direct downloads"])
def retry_direct_download(download_id: str) -> RetryResponse:
    svc = _require_services()
    try:
        svc.direct_downloads.retry_download(download_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_error("DOWNLOAD_NOT_FOUND", "Download not found")
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_error("NOT_RETRYABLE", str(e))
        )
    except CapacityError as e:
        raise _capacity_exception(svc, e)

    return RetryResponse(job_id=download_id)


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
