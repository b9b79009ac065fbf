"""
Tests for the FastAPI application: error format, CORS, and every endpoint.

Services are built on a temporary directory with fake transfer and
transcoder objects and installed as ``ytconvert.main.services``; the
resolution API is patched per test.
"""

import threading
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import ytconvert.main as main
from ytconvert.main import app
from ytconvert.resolver import ResolutionError, ResolvedVideo

from conftest import wait_until

client = TestClient(app)


@pytest.fixture
def api_services(services, monkeypatch):
    monkeypatch.setattr(main, "services", services)
    return services


def _resolve_to(services, title="My Clip", video_id="abc123", file_url="https://cdn.example.com/abc123.mp4"):
    return patch.object(
        services.resolver,
        "resolve",
        return_value=ResolvedVideo(video_id=video_id, file_url=file_url, title=title)
    )


def _conversion(job_id):
    return client.get(f"/api/conversions/{job_id}").json()


def _download_status(download_id):
    return client.get(f"/api/direct-download/{download_id}/status").json()


class TestCORSConfiguration:
    """Test CORS middleware configuration."""

    def test_cors_allows_all_origins(self, api_services):
        response = client.get(
            "/api/health",
            headers={"Origin": "http://localhost:3000"}
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight(self, api_services):
        response = client.options(
            "/api/download",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST"
            }
        )
        assert response.status_code == 200
        assert "access-control-allow-methods" in response.headers


class TestHealthAndCapacity:
    """Tests for the operational endpoints."""

    def test_health(self, api_services):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert "ffmpeg_available" in data

    def test_health_without_services(self, monkeypatch):
        monkeypatch.setattr(main, "services", None)

        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unavailable"

    def test_capacity(self, api_services):
        data = client.get("/api/capacity").json()

        assert data["max_workers"] == 4
        assert data["at_capacity"] is False


class TestDownloadValidation:
    """Tests for request validation on POST /api/download."""

    def test_missing_url(self, api_services):
        response = client.post("/api/download", json={"url": "", "convert": True})

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "MISSING_URL"

    def test_invalid_url(self, api_services):
        response = client.post("/api/download", json={"url": "https://example.com/watch"})

        assert response.status_code == 400
        error = response.json()["detail"]["error"]
        assert error["code"] == "INVALID_URL"
        assert error["message"].startswith("Invalid YouTube URL")

    def test_malformed_body(self, api_services):
        """Test that schema violations return 400 with the standard error body."""
        response = client.post("/api/download", json={"url": "https://youtu.be/x", "convert": "maybe"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_resolution_failure(self, api_services):
        with patch.object(api_services.resolver, "resolve", side_effect=ResolutionError("no download URL returned from API")):
            response = client.post("/api/download", json={"url": "https://youtu.be/abc123", "convert": True})

        assert response.status_code == 502
        assert response.json()["detail"]["error"]["message"] == (
            "Failed to get download URL: no download URL returned from API"
        )
        assert client.get("/api/conversions").json() == []

    def test_at_capacity(self, api_services):
        with patch.object(api_services.pool, "is_at_capacity", return_value=True):
            response = client.post("/api/download", json={"url": "https://youtu.be/abc123", "convert": True})

        assert response.status_code == 503
        assert response.json()["detail"]["error"]["code"] == "AT_CAPACITY"

    def test_service_unavailable(self, monkeypatch):
        monkeypatch.setattr(main, "services", None)

        response = client.post("/api/download", json={"url": "https://youtu.be/abc123"})

        assert response.status_code == 503
        assert response.json()["detail"]["error"]["code"] == "SERVICE_UNAVAILABLE"


class TestConversionFlow:
    """End-to-end conversion through the API."""

    def test_convert_to_avi(self, api_services, fake_transcoder):
        """Test submit -> poll -> download -> delete for an avi conversion."""
        with _resolve_to(api_services):
            response = client.post(
                "/api/download",
                json={"url": "https://youtu.be/abc123", "format": "avi", "convert": True}
            )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "converting"
        job_id = body["jobId"]
        assert job_id.startswith("abc123_")

        assert wait_until(lambda: _conversion(job_id)["status"] == "completed")
        job = _conversion(job_id)
        assert job["filename"] == "My Clip.avi"
        assert job["progress"] == 1.0
        assert job["format"] == "avi"
        assert job["videoTitle"] == "My Clip"
        assert job["canRetry"] is False
        assert job["size"] == "11.0 Bytes"
        assert fake_transcoder.calls[0][3].video_codec == "mpeg4"

        listing = client.get("/api/conversions").json()
        assert [entry["id"] for entry in listing] == [job_id]

        download = client.get("/api/file/My Clip.avi")
        assert download.status_code == 200
        assert download.content == b"video-bytes"
        assert download.headers["content-type"] == "application/octet-stream"
        assert "attachment" in download.headers["content-disposition"]

        deleted = client.delete("/api/delete/My Clip.avi")
        assert deleted.json() == {"status": "ok"}
        assert client.get("/api/file/My Clip.avi").status_code == 404
        assert _conversion(job_id)["status"] == "completed"

    def test_empty_format_converts_to_mp4(self, api_services):
        with _resolve_to(api_services, title="Plain"):
            job_id = client.post(
                "/api/download",
                json={"url": "https://www.youtube.com/watch?v=abc123", "convert": True}
            ).json()["jobId"]

        assert wait_until(lambda: _conversion(job_id)["status"] == "completed")
        assert _conversion(job_id)["filename"] == "Plain.mp4"

    def test_failed_conversion_and_retry(self, api_services, fake_transfer):
        """Test that a failed download is reported and can be retried."""
        fake_transfer.error = "download failed with status code: 403"
        with _resolve_to(api_services):
            job_id = client.post(
                "/api/download",
                json={"url": "https://youtu.be/abc123", "format": "mpg", "convert": True}
            ).json()["jobId"]

        assert wait_until(
            lambda: _conversion(job_id)["status"] == "failed"
            and not api_services.conversions.job_manager.is_active(job_id)
        )
        job = _conversion(job_id)
        assert job["error"] == "Failed to download video: download failed with status code: 403"
        assert job["canRetry"] is True

        fake_transfer.error = None
        response = client.post(f"/api/retry/{job_id}")

        assert response.status_code == 200
        assert response.json() == {"status": "retrying", "jobId": job_id}
        assert wait_until(lambda: _conversion(job_id)["status"] == "completed")
        assert _conversion(job_id)["filename"] == "My Clip.mpg"

    def test_retry_unknown_job(self, api_services):
        response = client.post("/api/retry/missing_1")

        assert response.status_code == 404
        assert response.json()["detail"]["error"]["code"] == "JOB_NOT_FOUND"

    def test_retry_without_download_url(self, api_services):
        job = api_services.conversions.job_manager.create("abc_1", "u", "avi", "", "T")
        with job.lock:
            job.mark_failed("Failed to download video: x")

        response = client.post("/api/retry/abc_1")

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "NOT_RETRYABLE"

    def test_retry_completed_job_rejected(self, api_services):
        with _resolve_to(api_services):
            job_id = client.post(
                "/api/download",
                json={"url": "https://youtu.be/abc123", "format": "avi", "convert": True}
            ).json()["jobId"]
        assert wait_until(
            lambda: _conversion(job_id)["status"] == "completed"
            and not api_services.conversions.job_manager.is_active(job_id)
        )

        response = client.post(f"/api/retry/{job_id}")

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "NOT_RETRYABLE"
        assert _conversion(job_id)["filename"] == "My Clip.avi"

    def test_unknown_conversion(self, api_services):
        assert client.get("/api/conversions/missing_1").status_code == 404


class TestFiles:
    """Tests for artifact download and deletion."""

    def test_missing_file(self, api_services):
        response = client.get("/api/file/nothing.avi")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_path_traversal_rejected(self, api_services, tmp_path):
        """Test that encoded ../ sequences cannot reach outside the directory."""
        (tmp_path / "secret.txt").write_text("secret")

        response = client.get("/api/file/..%2F..%2Fsecret.txt")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    def test_delete_traversal_rejected(self, api_services, tmp_path):
        victim = tmp_path / "victim.txt"
        victim.write_text("keep")

        response = client.delete("/api/delete/..%2F..%2Fvictim.txt")

        assert response.status_code == 400
        assert victim.exists()

    def test_delete_missing_file(self, api_services):
        assert client.delete("/api/delete/nothing.avi").status_code == 404


class TestDirectDownloads:
    """Tests for convert=false requests."""

    def test_direct_download_flow(self, api_services, test_settings):
        """Test that a direct download creates no conversion and serves the file."""
        with _resolve_to(api_services, title='Live:"Home"'):
            response = client.post("/api/download", json={"url": "https://youtu.be/abc123"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        download_id = body["jobId"]

        assert wait_until(lambda: _download_status(download_id)["status"] == "completed")
        assert client.get("/api/conversions").json() == []

        response = client.get(f"/api/direct-download/{download_id}")
        assert response.status_code == 200
        assert response.content == b"video-bytes"
        assert "LiveHome.mp4" in response.headers["content-disposition"]
        assert (test_settings.completed_dir / "LiveHome.mp4").exists()

        assert client.delete(f"/api/direct-download/{download_id}").json() == {"status": "ok"}
        assert not (test_settings.completed_dir / "LiveHome.mp4").exists()

    def test_processing_returns_202(self, api_services):
        """Test that polling before the file is ready answers 202."""
        release = threading.Event()

        class BlockingTransfer:
            def fetch(self, url, destination, job_id=None):
                release.wait(5)
                destination.write_bytes(b"late")
                return 4

        api_services.direct_downloads.transfer = BlockingTransfer()
        with _resolve_to(api_services):
            download_id = client.post("/api/download", json={"url": "https://youtu.be/abc123"}).json()["jobId"]

        response = client.get(f"/api/direct-download/{download_id}")
        assert response.status_code == 202
        assert response.json()["status"] == "processing"

        release.set()
        assert wait_until(lambda: _download_status(download_id)["status"] == "completed")
        assert client.get(f"/api/direct-download/{download_id}").content == b"late"

    def test_failed_download_returns_409_and_retries(self, api_services, fake_transfer):
        fake_transfer.error = "connection reset"
        with _resolve_to(api_services):
            download_id = client.post("/api/download", json={"url": "https://youtu.be/abc123"}).json()["jobId"]

        assert wait_until(
            lambda: _download_status(download_id)["status"] == "failed"
            and not api_services.direct_downloads.is_active(download_id)
        )
        response = client.get(f"/api/direct-download/{download_id}")
        assert response.status_code == 409
        assert response.json()["error"] == "Failed to download video: connection reset"
        assert response.json()["canRetry"] is True

        fake_transfer.error = None
        retry = client.post(f"/api/direct-download/{download_id}/retry")

        assert retry.json() == {"status": "retrying", "jobId": download_id}
        assert wait_until(lambda: _download_status(download_id)["status"] == "completed")

    def test_unknown_download(self, api_services):
        assert client.get("/api/direct-download/missing_1").status_code == 404
        assert client.get("/api/direct-download/missing_1/status").status_code == 404
        assert client.post("/api/direct-download/missing_1/retry").status_code == 404
