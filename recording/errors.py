from typing import Optional


class RecordingError(Exception):
    """Base class for failures contained inside the recording pipeline."""


class OpenFailure(RecordingError):
    """The recordings directory or the capture file could not be created."""


class FlushFailure(RecordingError):
    """Closing the capture file failed, so its contents cannot be trusted."""


class SpawnFailure(RecordingError):
    """The transcoder subprocess could not be started at all."""


class TranscodeFailure(RecordingError):
    """The transcoder ran but did not produce an output file."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
