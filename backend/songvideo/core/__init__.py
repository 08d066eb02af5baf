# Core modules for SongVideo backend
from .config import Settings, get_settings
from .database import Base, get_async_session, async_engine, AsyncSessionLocal
from .exceptions import (
    AudioAssetNotFoundError,
    EncoderUnavailableError,
    RenderCancelled,
    RenderError,
    SongNotFoundError,
    StorageError,
)
from .storage import (
    ALLOWED_VIDEO_EXTENSIONS,
    get_video_output_path,
    get_video_url,
    get_work_dir,
    is_data_uri,
    is_remote_reference,
    promote_output,
    remove_work_dir,
    resolve_public_path,
    validate_project_id,
    validate_video_extension,
    write_data_uri,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_async_session",
    "async_engine",
    "AsyncSessionLocal",
    # Errors
    "AudioAssetNotFoundError",
    "EncoderUnavailableError",
    "RenderCancelled",
    "RenderError",
    "SongNotFoundError",
    "StorageError",
    # Storage
    "ALLOWED_VIDEO_EXTENSIONS",
    "get_video_output_path",
    "get_video_url",
    "get_work_dir",
    "is_data_uri",
    "is_remote_reference",
    "promote_output",
    "remove_work_dir",
    "resolve_public_path",
    "validate_project_id",
    "validate_video_extension",
    "write_data_uri",
]
