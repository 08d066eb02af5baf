"""
Pydantic schemas for the video project API.

The visual configuration is owned by the browser client and is stored as the
JSON object it sent, with the client's camelCase keys. VisualConfig is the
typed view the render pipeline reads from that object; unknown keys are kept
and ignored. Request and response envelopes use snake_case.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Visual configuration ---


class TextLayer(BaseModel):
    """A text overlay positioned in percent of the frame."""

    model_config = ConfigDict(extra="allow")

    text: str = Field("", description="Text to draw")
    x: float = Field(50.0, description="Horizontal position, percent of width")
    y: float = Field(50.0, description="Vertical position, percent of height")
    size: int = Field(48, gt=0, description="Font size in pixels")
    color: str = Field("#ffffff", description="Font color")


class VisualConfig(BaseModel):
    """Typed view of a project's visual configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    preset: Optional[str] = None
    visualizer: Optional[Any] = None
    effects: Optional[Any] = None
    intensities: Optional[Dict[str, Any]] = None
    text_layers: List[TextLayer] = Field(default_factory=list, alias="textLayers")
    background_type: Literal["gradient", "image", "video"] = Field(
        "gradient", alias="backgroundType"
    )
    custom_image: Optional[str] = Field(None, alias="customImage")
    custom_album_art: Optional[str] = Field(None, alias="customAlbumArt")
    video_url: Optional[str] = Field(None, alias="videoUrl")


# --- Request Schemas ---


class VideoProjectCreateRequest(BaseModel):
    """Request to create (or fetch the existing) video project for a song."""

    song_id: str = Field(..., min_length=1, max_length=36, description="Source song id")
    config: Dict[str, Any] = Field(default_factory=dict, description="Visual configuration")
    force: bool = Field(
        False,
        description="Create a new project even if one already exists for this song",
    )


class RenderRequest(BaseModel):
    """Request to start a server-side render."""

    config: Optional[Dict[str, Any]] = Field(
        None,
        description="Replace the stored visual configuration before rendering",
    )


class ProgressUpdateRequest(BaseModel):
    """Progress pushed by a client-side renderer."""

    stage: Optional[str] = Field(None, max_length=30, description="Render stage")
    progress: int = Field(0, description="Progress percentage (clamped to 0-100)")
    error_message: Optional[str] = Field(None, description="Failure reason, marks the project failed")


class CompleteRequest(BaseModel):
    """Client reports a finished video."""

    video_url: str = Field(..., min_length=1, max_length=500)


class PublishRequest(BaseModel):
    """Record that the video was published to YouTube."""

    youtube_video_id: str = Field(..., min_length=1, max_length=50)
    youtube_video_url: Optional[str] = Field(None, max_length=500)
    metadata: Optional[Dict[str, Any]] = None


# --- Response Schemas ---


class RenderResponse(BaseModel):
    """Response when a render job is accepted (202 Accepted)."""

    job_id: str = Field(..., description="Render job handle")
    project_id: str
    state: str
    message: str


class VideoProjectResponse(BaseModel):
    """Full video project record, as polled by clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    song_id: str
    user_id: str
    state: str
    render_stage: str
    progress: int = Field(0, ge=0, le=100)
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    render_job_id: Optional[str] = None
    cancel_requested: bool = False
    youtube_video_id: Optional[str] = None
    youtube_video_url: Optional[str] = None
    youtube_metadata: Optional[Dict[str, Any]] = None
    upload_progress: int = 0
    upload_job_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class VideoProjectListResponse(BaseModel):
    """List of the caller's video projects, newest first."""

    projects: List[VideoProjectResponse]
    total: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    details: Optional[dict] = None
