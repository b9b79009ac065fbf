"""
Resolution of YouTube URLs into transient download links.

The RapidAPI ``download_video`` endpoint returns a file URL that is not
servable right away; ``wait_for_file_ready`` must complete before the URL
is fetched.
"""

import threading
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

import requests

from ytconvert.logging_config import get_logger, log_with_context


OEMBED_URL = "https://www.youtube.com/oembed"
DOWNLOAD_QUALITY = "247"


class ResolutionError(Exception):
    """Raised when a URL cannot be parsed or the resolution API fails."""
    pass


@dataclass
class ResolvedVideo:
    """Result of a resolution call."""
    video_id: str
    file_url: str
    title: str = ""
    size: int = 0


class YouTubeResolver:
    """
    Client for the RapidAPI resolution endpoint and YouTube oEmbed.

    Args:
        api_key: RapidAPI key
        api_host: RapidAPI host
        settle_delay: Seconds to wait after resolution before fetching
        resolve_timeout: Timeout of the resolution request
        title_timeout: Timeout of the oEmbed title lookup
        session: Optional requests session (tests inject a mock)
    """

    def __init__(
        self,
        api_key: str,
        api_host: str,
        settle_delay: float = 20.0,
        resolve_timeout: float = 30.0,
        title_timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key
        self.api_host = api_host
        self.settle_delay = settle_delay
        self.resolve_timeout = resolve_timeout
        self.title_timeout = title_timeout
        self.session = session or requests.Session()
        self._shutdown = threading.Event()
        self.logger = get_logger(__name__)

    @staticmethod
    def extract_video_id(url: str) -> str:
        """
        Extract the video id from a ``youtu.be`` or ``youtube.com/watch`` URL.

        Raises:
            ResolutionError: If no id can be found

        Example:
            >>> YouTubeResolver.extract_video_id("https://youtu.be/abc123?t=4")
            'abc123'
        """
        if "youtu.be/" in url:
            video_id = url.split("youtu.be/", 1)[1].split("?", 1)[0].split("/", 1)[0]
            if video_id:
                return video_id

        if "youtube.com/watch" in url:
            values = parse_qs(urlparse(url).query).get("v")
            if values and values[0]:
                return values[0]

        raise ResolutionError("could not extract video ID from URL")

    def resolve(self, video_id: str) -> ResolvedVideo:
        """
        Ask the resolution API for a download link.

        Raises:
            ResolutionError: On transport errors, bad responses, or a missing file URL
        """
        api_url = f"https://{self.api_host}/download_video/{video_id}"
        headers = {
            "x-rapidapi-key": self.api_key,
            "x-rapidapi-host": self.api_host,
        }

        try:
            response = self.session.get(
                api_url,
                params={"quality": DOWNLOAD_QUALITY},
                headers=headers,
                timeout=self.resolve_timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise ResolutionError(f"resolution request failed: {e}") from e
        except ValueError as e:
            raise ResolutionError(f"invalid resolution response: {e}") from e

        if not isinstance(payload, dict) or not payload.get("file"):
            raise ResolutionError("no download URL returned from API")

        resolved = ResolvedVideo(
            video_id=video_id,
            file_url=payload["file"],
            title=payload.get("title") or "",
            size=int(payload.get("size") or 0)
        )
        log_with_context(
            self.logger,
            "info",
            "Resolved download URL",
            video_id=video_id,
            size=resolved.size
        )
        return resolved

    def get_video_title(self, video_id: str) -> str:
        """
        Look up a video title through oEmbed.

        Raises:
            ResolutionError: If the lookup fails or returns no title
        """
        watch_url = f"https://www.youtube.com/watch?v={video_id}"
        try:
            response = self.session.get(
                OEMBED_URL,
                params={"url": watch_url, "format": "json"},
                timeout=self.title_timeout
            )
            response.raise_for_status()
            title = response.json().get("title")
        except requests.RequestException as e:
            raise ResolutionError(f"oembed request failed: {e}") from e
        except (ValueError, AttributeError) as e:
            raise ResolutionError(f"invalid oembed response: {e}") from e

        if not title:
            raise ResolutionError("no title found in oembed response")
        return title

    def title_for(self, resolved: ResolvedVideo) -> str:
        """Title from the resolution, then oEmbed, then the video id."""
        if resolved.title:
            return resolved.title
        try:
            return self.get_video_title(resolved.video_id)
        except ResolutionError as e:
            log_with_context(
                self.logger,
                "warning",
                "Could not fetch video title",
                video_id=resolved.video_id,
                error=e
            )
            return resolved.video_id

    def wait_for_file_ready(self) -> bool:
        """
        Block for the settle delay.

        Returns:
            True once the delay elapsed, False if ``shutdown`` interrupted it
        """
        if self.settle_delay <= 0:
            return not self._shutdown.is_set()
        self.logger.debug(f"Waiting {self.settle_delay} seconds for file to be ready")
        return not self._shutdown.wait(self.settle_delay)

    def shutdown(self) -> None:
        """Interrupt pending settle waits."""
        self._shutdown.set()
