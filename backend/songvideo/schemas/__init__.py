"""Pydantic request/response schemas."""

from .video_project import (
    CompleteRequest,
    ErrorResponse,
    ProgressUpdateRequest,
    PublishRequest,
    RenderRequest,
    RenderResponse,
    TextLayer,
    VideoProjectCreateRequest,
    VideoProjectListResponse,
    VideoProjectResponse,
    VisualConfig,
)

__all__ = [
    "CompleteRequest",
    "ErrorResponse",
    "ProgressUpdateRequest",
    "PublishRequest",
    "RenderRequest",
    "RenderResponse",
    "TextLayer",
    "VideoProjectCreateRequest",
    "VideoProjectListResponse",
    "VideoProjectResponse",
    "VisualConfig",
]
