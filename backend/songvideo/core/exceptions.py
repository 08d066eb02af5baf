"""
Render pipeline error taxonomy.

Every error raised inside a render job derives from RenderError and carries
a user-facing message. The orchestrator stores that message on the project
when the job fails, so messages must be safe to show to the end user.

Encoder and probe errors live next to the code that raises them
(songvideo.tasks.ffmpeg_runner and songvideo.tasks.media_probe).
"""

from typing import Optional


class RenderError(Exception):
    """Base class for failures surfaced to the project's error_message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EncoderUnavailableError(RenderError):
    """FFmpeg cannot be executed on this host."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "FFmpeg is not available on the server. "
            "Please install FFmpeg to enable video rendering."
        )


class SongNotFoundError(RenderError):
    """The song referenced by the project does not exist."""

    def __init__(self, song_id: str):
        super().__init__("Song not found")
        self.song_id = song_id


class AudioAssetNotFoundError(RenderError):
    """
    The song's audio reference cannot be resolved to a readable file.

    attempted_path is set when a local lookup was made so the message can
    name both the reference and where it was looked for.
    """

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        attempted_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.reference = reference
        self.attempted_path = attempted_path


class StorageError(RenderError):
    """Staging inputs or promoting the rendered file failed."""


class RenderCancelled(RenderError):
    """The job observed a cancellation request between pipeline steps."""

    def __init__(self, project_id: str):
        super().__init__("Render cancelled")
        self.project_id = project_id
