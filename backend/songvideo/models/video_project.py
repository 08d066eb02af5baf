"""
VideoProject model for SongVideo.

One row per song-to-video render target. The row is the persistent state
machine that clients poll while a render job runs in the background.

State lifecycle:
    not_started -> rendering -> completed -> uploading -> uploaded
                          \\-> failed      (retry: failed -> rendering)
                          \\-> cancelled   (retry: cancelled -> rendering)
    completed -> rendering re-renders and overwrites the previous output.

Lifecycle columns (state, render_stage, progress, video_url, error_message,
render_job_id, cancel_requested, completed_at) are only written through
songvideo.services.project_store.ProjectStateStore.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base
from .user import generate_uuid

if TYPE_CHECKING:
    from .user import User


class ProjectState(str, Enum):
    """Top-level lifecycle state of a video project."""

    NOT_STARTED = "not_started"
    RENDERING = "rendering"
    COMPLETED = "completed"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RenderStage(str, Enum):
    """
    Advisory sub-stage shown to users while rendering.

    Never used for control decisions. The server pipeline emits
    queued -> starting -> fetching_audio -> analyzing_audio ->
    preparing_render -> encoding -> completed; the remaining values are
    reported by client-side renderers through the progress endpoint.
    """

    IDLE = "idle"
    QUEUED = "queued"
    STARTING = "starting"
    INITIALIZING = "initializing"
    FETCHING_AUDIO = "fetching_audio"
    ANALYZING_AUDIO = "analyzing_audio"
    PREPARING_RENDER = "preparing_render"
    PROCESSING = "processing"
    ENCODING = "encoding"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# States from which a new server render may be started
RENDERABLE_STATES = (
    ProjectState.NOT_STARTED.value,
    ProjectState.FAILED.value,
    ProjectState.COMPLETED.value,
    ProjectState.CANCELLED.value,
)


class VideoProject(Base):
    """Persistent render state for one song's video."""

    __tablename__ = "video_projects"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        doc="UUID primary key"
    )
    song_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
        doc="Source song (row owned by the generation service)"
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        doc="Foreign key to owning user"
    )

    # Render state
    state: Mapped[str] = mapped_column(
        String(20),
        default=ProjectState.NOT_STARTED.value,
        nullable=False,
        index=True,
        doc="Lifecycle state (see ProjectState)"
    )
    render_stage: Mapped[str] = mapped_column(
        String(30),
        default=RenderStage.IDLE.value,
        nullable=False,
        doc="Advisory render sub-stage (see RenderStage)"
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Progress percentage (0-100)"
    )
    config: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        doc="Client visual configuration, stored as given"
    )
    video_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        doc="Output reference, set once completed"
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Failure message (truncated), only when failed"
    )
    render_job_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Handle of the latest render job"
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Set to ask the running job to stop at the next step boundary"
    )

    # Publishing
    youtube_video_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        doc="YouTube video id once published"
    )
    youtube_video_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        doc="YouTube watch URL once published"
    )
    youtube_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Title/description/tags used for the upload"
    )
    upload_progress: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Upload progress percentage (0-100)"
    )
    upload_job_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Handle of the latest upload job"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        doc="Creation timestamp"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        doc="Bumped on every mutation"
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        doc="First successful completion"
    )

    owner: Mapped["User"] = relationship(
        "User",
        back_populates="video_projects"
    )

    def __repr__(self) -> str:
        return (
            f"<VideoProject(id={self.id!r}, state={self.state!r}, "
            f"progress={self.progress!r})>"
        )
