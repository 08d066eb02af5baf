"""
File Storage & Security

Provides secure file path handling with:
- Path traversal prevention for server-relative asset references
- Per-project render working directories
- Output file naming and atomic promotion into the public video folder
- Upload file type validation
"""

import base64
import binascii
import errno
import logging
import mimetypes
import os
import re
import shutil
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


# Extensions accepted for client-rendered video uploads
ALLOWED_VIDEO_EXTENSIONS: set[str] = {".mp4", ".webm", ".mov"}

# mimetypes disagrees across platforms for these
_DATA_URI_EXTENSIONS: dict[str, str] = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

# Public sub-folder that rendered videos are promoted into
VIDEOS_DIR = "videos"

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_project_id(project_id: str) -> bool:
    """
    Validate that a project ID is safe to use as a path component.

    Project IDs are UUIDs in practice, but any short token of letters,
    digits, dashes and underscores is accepted.

    Example:
        >>> validate_project_id("550e8400-e29b-41d4-a716-446655440000")
        True
        >>> validate_project_id("../malicious")
        False
    """
    return bool(_SAFE_ID_RE.match(project_id or ""))


def _ensure_within(path: Path, root: Path) -> Path:
    resolved_path = path.resolve()
    resolved_root = root.resolve()

    if resolved_path != resolved_root and not str(resolved_path).startswith(
        str(resolved_root) + os.sep
    ):
        raise ValueError("Path traversal detected: path escapes storage root")

    return resolved_path


def resolve_public_path(reference: str, public_root: Path) -> Path:
    """
    Map a server-relative reference such as "/audio/s1.mp3" onto the public
    asset root.

    Args:
        reference: Reference beginning with "/"
        public_root: Public asset root directory

    Returns:
        Path: Resolved absolute path (not checked for existence)

    Raises:
        ValueError: If the reference escapes the public root
    """
    relative = reference.split("?", 1)[0].lstrip("/")
    return _ensure_within(Path(public_root) / relative, Path(public_root))


def get_work_dir(work_root: Path, project_id: str) -> Path:
    """
    Get the isolated working directory for a project's render job.

    Raises:
        ValueError: If project_id is not a safe path component
    """
    if not validate_project_id(project_id):
        raise ValueError(f"Invalid project ID: {project_id!r}")

    return _ensure_within(Path(work_root) / project_id, Path(work_root))


def get_video_output_path(public_root: Path, project_id: str, ext: str = ".mp4") -> Path:
    """
    Get the public destination for a project's video.

    Example:
        >>> get_video_output_path(Path("/srv/public"), "p1")
        PosixPath('/srv/public/videos/p1.mp4')
    """
    if not validate_project_id(project_id):
        raise ValueError(f"Invalid project ID: {project_id!r}")

    return _ensure_within(
        Path(public_root) / VIDEOS_DIR / f"{project_id}{ext}", Path(public_root)
    )


def get_video_url(project_id: str, ext: str = ".mp4") -> str:
    """Server-relative URL under which a promoted video is served."""
    return f"/{VIDEOS_DIR}/{project_id}{ext}"


def validate_video_extension(filename: str) -> str | None:
    """
    Return the lower-cased extension if it is an accepted video upload type.

    Example:
        >>> validate_video_extension("clip.MOV")
        '.mov'
        >>> validate_video_extension("script.exe") is None
        True
    """
    ext = os.path.splitext(filename or "")[1].lower()
    return ext if ext in ALLOWED_VIDEO_EXTENSIONS else None


def is_remote_reference(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


def is_data_uri(reference: str) -> bool:
    return reference.startswith("data:")


def write_data_uri(uri: str, directory: Path, stem: str) -> Path:
    """
    Decode a base64 data URI into a file inside directory.

    The extension is derived from the declared media type
    (e.g. data:audio/mpeg;base64,... -> <stem>.mp3).

    Raises:
        ValueError: If the URI is not a base64 data URI
    """
    header, sep, payload = uri.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise ValueError("Unsupported data URI: expected base64 payload")

    media_type = header[len("data:"):].split(";", 1)[0].strip().lower()
    ext = _DATA_URI_EXTENSIONS.get(media_type) or mimetypes.guess_extension(media_type) or ".bin"

    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload in data URI: {e}")

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{stem}{ext}"
    path.write_bytes(data)
    return path


def promote_output(source: Path, destination: Path) -> None:
    """
    Move a finished render into its public location atomically.

    Readers of the destination see either the previous file or the complete
    new one. Within one filesystem this is a single rename; across
    filesystems the file is copied to a temporary sibling of the destination
    first and then renamed over it.

    Raises:
        OSError: If the move fails
    """
    destination.parent.mkdir(parents=True, exist_ok=True)

    try:
        os.replace(source, destination)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    tmp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        shutil.copyfile(source, tmp_path)
        os.replace(tmp_path, destination)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    source.unlink()


def remove_work_dir(path: Path) -> None:
    """Recursively delete a render working directory; failures are logged."""
    if not path.exists():
        return

    try:
        shutil.rmtree(path)
        logger.debug(f"Removed working directory {path}")
    except OSError as e:
        logger.warning(f"Failed to remove working directory {path}: {e}")
