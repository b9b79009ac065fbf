"""
Helpers for the completed-items directory.

Resolves artifact names to paths without ever leaving the completed
directory, reports artifact sizes, and removes artifacts on request.
"""

import math
import os
from pathlib import Path
from typing import Union

from ytconvert.logging_config import get_logger, log_with_context


SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]

INVALID_FILENAME_CHARS = '/\\:*?"<>|'
MAX_FILENAME_LENGTH = 200


def sanitize_filename(name: str) -> str:
    """
    Make a video title usable as a file name.

    Strips characters that are invalid on common filesystems, truncates to
    200 characters and trims surrounding whitespace. The result may be empty;
    callers fall back to the job or video id.

    Example:
        >>> sanitize_filename('  What? A "Title": Part 1/2  ')
        'What A Title Part 12'
    """
    result = "".join(ch for ch in name if ch not in INVALID_FILENAME_CHARS)
    return result[:MAX_FILENAME_LENGTH].strip()


def format_file_size(size: int) -> str:
    """
    Format a byte count for display.

    Example:
        >>> format_file_size(1536)
        '1.5 KB'
    """
    if size <= 0:
        return "0 Bytes"
    k = 1024
    i = min(int(math.log(size) / math.log(k)), len(SIZE_UNITS) - 1)
    return f"{size / math.pow(k, i):.1f} {SIZE_UNITS[i]}"


class StorageService:
    """Access to finished artifacts in the completed directory."""

    def __init__(self, completed_dir: Union[str, Path]):
        self.completed_dir = Path(completed_dir).resolve()
        self.logger = get_logger(__name__)

    def validate_file_path(self, filename: str) -> Path:
        """
        Resolve ``filename`` inside the completed directory.

        Raises:
            ValueError: If the name is empty or resolves outside the directory
        """
        if not filename or not filename.strip():
            raise ValueError("Filename required")

        file_path = (self.completed_dir / filename).resolve()
        if file_path == self.completed_dir or not file_path.is_relative_to(self.completed_dir):
            log_with_context(
                self.logger,
                "warning",
                "Rejected file path outside completed directory",
                requested=filename
            )
            raise ValueError("Invalid file path")

        return file_path

    def file_size(self, filename: str) -> int:
        """Size of an artifact in bytes, 0 when it is missing."""
        if not filename:
            return 0
        try:
            return self.validate_file_path(filename).stat().st_size
        except (ValueError, OSError):
            return 0

    def get_formatted_file_size(self, filename: str) -> str:
        return format_file_size(self.file_size(filename))

    def delete_file(self, filename: str) -> None:
        """
        Remove an artifact. The job record that produced it is kept.

        Raises:
            ValueError: If the path escapes the completed directory
            FileNotFoundError: If the artifact does not exist
        """
        file_path = self.validate_file_path(filename)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {filename}")

        os.remove(file_path)
        log_with_context(self.logger, "info", "Artifact deleted", file_path=str(file_path))

    def list_files(self, directory: Union[str, Path, None] = None) -> list[tuple[str, int]]:
        """Return ``(name, size)`` for each regular file, sorted by name."""
        directory = Path(directory) if directory is not None else self.completed_dir
        if not directory.is_dir():
            return []
        return sorted(
            (entry.name, entry.stat().st_size)
            for entry in directory.iterdir()
            if entry.is_file()
        )
