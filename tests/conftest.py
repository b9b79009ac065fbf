"""
Shared fixtures: temporary settings, fake transfer/transcoder, wired services.
"""

import shutil
import time
from pathlib import Path

import pytest

from ytconvert.config import Settings
from ytconvert.services import build_services
from ytconvert.transcoder import ConversionError, select_profile
from ytconvert.transfer import TransferError


class FakeTransfer:
    """Writes ``payload`` to the destination, or raises ``error``."""

    def __init__(self, payload: bytes = b"video-bytes", error: str = None):
        self.payload = payload
        self.error = error
        self.calls = []

    def fetch(self, url, destination, job_id=None):
        self.calls.append((url, Path(destination), job_id))
        if self.error:
            raise TransferError(self.error)
        Path(destination).write_bytes(self.payload)
        return len(self.payload)


class FakeTranscoder:
    """Copies the input to the output, or raises ``error``."""

    def __init__(self, error: str = None):
        self.error = error
        self.calls = []

    def transcode(self, input_path, output_path, format):
        self.calls.append((Path(input_path), Path(output_path), format, select_profile(format)))
        if self.error:
            raise ConversionError(self.error)
        shutil.copyfile(input_path, output_path)
        return Path(output_path)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "EXEC_DIR": str(tmp_path),
        "DATABASE_URL": f"sqlite:///{tmp_path / 'conversions.db'}",
        "RAPIDAPI_KEY": "test-key",
        "RAPIDAPI_HOST": "yt-api.example.com",
        "SETTLE_DELAY_SECONDS": 0,
        "DOWNLOAD_BACKOFF_SECONDS": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def fake_transfer():
    return FakeTransfer()


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()


@pytest.fixture
def services(test_settings, fake_transfer, fake_transcoder):
    """Fully wired services on a temporary directory and SQLite file."""
    svc = build_services(test_settings, transfer=fake_transfer, transcoder=fake_transcoder)
    yield svc
    svc.shutdown(wait=True)
