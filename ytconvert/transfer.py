"""
Downloads of remote files with a bounded retry budget.
"""

import os
import time
from pathlib import Path
from typing import Callable, Optional, Union

import requests

from ytconvert.logging_config import get_logger, log_with_context


CHUNK_SIZE = 64 * 1024


class TransferError(Exception):
    """Raised when a download failed on every attempt."""
    pass


class TransferEngine:
    """
    Streams a URL to a local file.

    Attempt N that fails is followed by a sleep of ``N * backoff_seconds``
    (5s, 10s with the defaults); there is no sleep after the last attempt.
    Transport errors and non-2xx responses both use up an attempt.

    Args:
        max_attempts: Attempts before giving up
        backoff_seconds: Backoff unit
        timeout: Connect/read timeout passed to requests
        session: Optional requests session
        sleep: Sleep function (tests pass a recorder)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    def fetch(
        self,
        url: str,
        destination: Union[str, Path],
        job_id: Optional[str] = None
    ) -> int:
        """
        Download ``url`` to ``destination``.

        Returns:
            Number of bytes written

        Raises:
            TransferError: With the last attempt's error once the budget is spent
        """
        destination = Path(destination)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                size = self._fetch_once(url, destination)
                log_with_context(
                    self.logger,
                    "info",
                    "Download finished",
                    job_id=job_id,
                    file_path=str(destination),
                    bytes_written=size,
                    attempt=attempt
                )
                return size
            except (requests.RequestException, OSError) as e:
                last_error = e
                self._remove_partial(destination)
                log_with_context(
                    self.logger,
                    "warning",
                    f"Download attempt {attempt} failed",
                    job_id=job_id,
                    attempt=attempt,
                    reason=str(e)
                )

            if attempt < self.max_attempts:
                self.sleep(self.backoff_seconds * attempt)

        raise TransferError(str(last_error)) from last_error

    def _fetch_once(self, url: str, destination: Path) -> int:
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            if not 200 <= response.status_code < 300:
                raise requests.HTTPError(
                    f"download failed with status code: {response.status_code}",
                    response=response
                )

            size = 0
            with open(destination, "wb") as out:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        out.write(chunk)
                        size += len(chunk)
            return size

    @staticmethod
    def _remove_partial(destination: Path) -> None:
        try:
            os.remove(destination)
        except FileNotFoundError:
            pass
