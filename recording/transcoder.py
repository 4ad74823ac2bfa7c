import asyncio
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional

from logging_config import get_logger
from recording.errors import SpawnFailure, TranscodeFailure

logger = get_logger(__name__)


@dataclass(frozen=True)
class CodecProfile:
    encoder: str  # ffmpeg -c:a value
    suffix: str  # appended to the capture stem
    extension: str


# Narrowband telephony targets, all resampled to 8 kHz mono
CODECS: Dict[str, CodecProfile] = {
    "mulaw": CodecProfile(encoder="pcm_mulaw", suffix="mulaw", extension="wav"),
    "alaw": CodecProfile(encoder="pcm_alaw", suffix="alaw", extension="wav"),
    "gsm": CodecProfile(encoder="libgsm", suffix="gsm", extension="gsm"),
}

SAMPLE_RATE = 8000
CHANNELS = 1


def output_path_for(input_path: str, codec: str) -> str:
    """recordings/audio-r1-17.webm -> recordings/audio-r1-17-mulaw.wav"""
    profile = CODECS[codec]
    stem, _ = os.path.splitext(input_path)
    return f"{stem}-{profile.suffix}.{profile.extension}"


class FFmpegTranscoder:
    """Converts a closed capture file into a telephony-codec file with an ffmpeg subprocess."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: Optional[float] = None):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    async def validate(self) -> bool:
        """Check that ffmpeg is installed and runnable."""
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(
                    [self.ffmpeg_path, "-version"],
                    capture_output=True,
                    timeout=5,
                    text=True,
                ),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"FFmpeg not usable at {self.ffmpeg_path}: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"FFmpeg at {self.ffmpeg_path} exited with code {result.returncode} on -version")
            return False
        logger.info(f"FFmpeg validated at path: {self.ffmpeg_path}")
        return True

    def build_command(self, input_path: str, output_path: str, codec: str) -> list:
        profile = CODECS[codec]
        return [
            self.ffmpeg_path,
            "-y",
            "-i", input_path,
            "-ar", str(SAMPLE_RATE),
            "-ac", str(CHANNELS),
            "-c:a", profile.encoder,
            output_path,
        ]

    async def convert(self, input_path: str, codec: str) -> str:
        """
        Transcode input_path to the given codec.

        Returns:
            Path of the encoded file

        Raises:
            SpawnFailure: ffmpeg could not be started
            TranscodeFailure: ffmpeg exited non-zero or timed out
        """
        if codec not in CODECS:
            raise TranscodeFailure(f"Unsupported codec: {codec}")

        output_path = output_path_for(input_path, codec)
        cmd = self.build_command(input_path, output_path, codec)
        logger.info(f"Transcoding {input_path} -> {output_path} ({codec})")
        logger.debug(f"FFmpeg command: {' '.join(cmd)}")

        # Blocking run happens in the default executor so other connections keep flowing
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(
                    cmd,
                    capture_output=True,
                    timeout=self.timeout,
                    text=True,
                ),
            )
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise TranscodeFailure(f"FFmpeg timed out after {self.timeout}s", stderr=stderr) from e
        except OSError as e:
            raise SpawnFailure(f"Could not start {self.ffmpeg_path}: {e}") from e

        if result.stderr:
            logger.debug(f"FFmpeg STDERR:\n{result.stderr}")

        if result.returncode != 0:
            raise TranscodeFailure(
                f"FFmpeg exited with code {result.returncode}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        logger.info(f"Encoded file saved: {output_path}")
        return output_path
