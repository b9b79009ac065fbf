"""
Video transcoding through the external ffmpeg binary.

The encoding profile is picked purely by the target format string.
Unknown formats fall through to the default H.264/AAC profile instead of
being rejected.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union

import ffmpeg

from ytconvert.logging_config import get_logger


class ConversionError(Exception):
    """Raised when ffmpeg exits with an error or cannot be started."""
    pass


@dataclass(frozen=True)
class EncodingProfile:
    """Codec selection passed to ffmpeg for one target format."""
    video_codec: str
    audio_codec: str
    options: dict = field(default_factory=dict)

    def output_args(self) -> dict:
        args = {"c:v": self.video_codec, "c:a": self.audio_codec}
        args.update(self.options)
        return args


DEFAULT_PROFILE = EncodingProfile("libx264", "aac")

PROFILES = {
    "avi": EncodingProfile("mpeg4", "mp3"),
    "mpg": EncodingProfile("mpeg2video", "mp2", {"q:v": 2, "b:a": "192k"}),
}


def select_profile(format: Optional[str]) -> EncodingProfile:
    """Profile for ``format``; anything unrecognised gets the default."""
    return PROFILES.get(format or "", DEFAULT_PROFILE)


class Transcoder(Protocol):
    """Narrow interface the pipelines depend on."""

    def transcode(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        format: str
    ) -> Path:
        ...


class FFmpegTranscoder:
    """
    Runs ffmpeg through ffmpeg-python.

    Args:
        ffmpeg_binary: Executable name or path
    """

    def __init__(self, ffmpeg_binary: str = "ffmpeg"):
        self.ffmpeg_binary = ffmpeg_binary
        self.logger = get_logger(__name__)

    def build_stream(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        format: str
    ):
        """Build the ffmpeg invocation without running it."""
        profile = select_profile(format)
        return (
            ffmpeg
            .input(str(input_path))
            .output(str(output_path), **profile.output_args())
            .overwrite_output()
        )

    def transcode(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        format: str
    ) -> Path:
        """
        Convert ``input_path`` into ``output_path``.

        A partial output file is removed when the conversion fails.

        Returns:
            The output path

        Raises:
            FileNotFoundError: If the input file does not exist
            ConversionError: If ffmpeg fails or is not installed
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        if not input_path.exists():
            raise FileNotFoundError(f"Input video file not found: {input_path}")

        stream = self.build_stream(input_path, output_path, format)
        self.logger.info(f"Converting video file: {input_path} -> {output_path}")

        try:
            ffmpeg.run(stream, cmd=self.ffmpeg_binary, capture_stdout=True, capture_stderr=True)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
            self._remove_output(output_path)
            # Last line of ffmpeg's stderr carries the actual failure
            detail = stderr.splitlines()[-1] if stderr else str(e)
            raise ConversionError(detail) from e
        except OSError as e:
            self._remove_output(output_path)
            raise ConversionError(f"could not run {self.ffmpeg_binary}: {e}") from e

        if not output_path.exists():
            raise ConversionError("Conversion produced no output file")

        self.logger.info(f"Video conversion successful: {output_path}")
        return output_path

    def _remove_output(self, output_path: Path) -> None:
        try:
            output_path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(f"Failed to remove partial output {output_path}: {e}")
