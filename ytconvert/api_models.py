"""
API request and response models for the YouTube conversion service.

This module defines Pydantic models for API request validation and
response serialization. Field names on the wire are camelCase (``jobId``,
``startTime``...) because that is what polling clients consume.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DownloadRequest(BaseModel):
    """
    Body of ``POST /api/download``.

    Attributes:
        url: YouTube watch or youtu.be URL
        format: Target format for conversions (mp4, avi, mpg, ...)
        convert: True to transcode, False for a direct download
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "url": "https://youtu.be/dQw4w9WgXcQ",
                "format": "avi",
                "convert": True
            }
        }
    )

    url: str = Field("", description="Video URL")
    format: str = Field("", description="Target format; empty selects mp4")
    convert: bool = Field(False, description="Transcode after downloading")


class DownloadResponse(CamelModel):
    """Acknowledgement returned once a job has been scheduled."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {"status": "converting", "jobId": "dQw4w9WgXcQ_1700000000"}
        }
    )

    status: Literal["converting", "processing", "ready"] = Field(..., description="Pipeline that picked up the request")
    job_id: Optional[str] = Field(None, description="Id to poll")


class ConversionSnapshot(CamelModel):
    """One entry of ``GET /api/conversions``."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "dQw4w9WgXcQ_1700000000",
                "url": "https://youtu.be/dQw4w9WgXcQ",
                "format": "avi",
                "status": "completed",
                "startTime": "2024-01-01T12:00:00",
                "endTime": "2024-01-01T12:01:30",
                "filename": "Never Gonna Give You Up.avi",
                "error": "",
                "progress": 1.0,
                "size": "12.4 MB",
                "canRetry": False,
                "videoTitle": "Never Gonna Give You Up"
            }
        }
    )

    id: str
    url: str
    format: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    filename: str = ""
    error: str = ""
    progress: float = 0.0
    size: str = "0 Bytes"
    can_retry: bool = False
    video_title: str = ""

    @classmethod
    def from_snapshot(cls, data: dict) -> "ConversionSnapshot":
        return cls(
            id=data["id"],
            url=data["url"],
            format=data["format"],
            status=data["status"],
            start_time=data["start_time"],
            end_time=data["end_time"],
            filename=data["filename"] or "",
            error=data["error"] or "",
            progress=data["progress"],
            size=data["size"],
            can_retry=data["can_retry"],
            video_title=data["video_title"] or "",
        )


class DirectDownloadStatus(CamelModel):
    """State of a direct download."""

    id: str
    url: str
    filename: str
    status: str
    error: str = ""
    start_time: datetime
    end_time: Optional[datetime] = None
    can_retry: bool = False

    @classmethod
    def from_snapshot(cls, data: dict) -> "DirectDownloadStatus":
        return cls(
            id=data["id"],
            url=data["url"],
            filename=data["filename"],
            status=data["status"],
            error=data["error"] or "",
            start_time=data["start_time"],
            end_time=data["end_time"],
            can_retry=data["can_retry"],
        )


class RetryResponse(CamelModel):
    """Returned when a failed job has been rescheduled."""

    status: Literal["retrying"] = "retrying"
    job_id: str


class DeleteResponse(BaseModel):
    status: str = "ok"


class HealthResponse(BaseModel):
    """
    Response model for the health check endpoint.

    Attributes:
        status: Overall service health status
        database: Whether the job store answered
        ffmpeg_available: Whether the ffmpeg binary is on PATH
        resolver_configured: Whether RapidAPI credentials are set
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "database": True,
                "ffmpeg_available": True,
                "resolver_configured": True
            }
        }
    )

    status: str = Field(..., description="Service health status")
    database: bool = Field(..., description="Whether the job store is reachable")
    ffmpeg_available: bool = Field(..., description="Whether ffmpeg can be found")
    resolver_configured: bool = Field(..., description="Whether resolution credentials are set")


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    All API errors return this consistent structure.
    """

    class ErrorDetail(BaseModel):
        """Error detail structure."""
        code: str = Field(..., description="Error code")
        message: str = Field(..., description="Human-readable error message")
        details: Optional[str] = Field(None, description="Additional error context")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "NOT_RETRYABLE",
                    "message": "Cannot retry: no download URL available",
                    "details": None
                }
            }
        }
    )

    error: ErrorDetail = Field(..., description="Error information")
