"""
SQLAlchemy models for SongVideo.

This module exports all database models for convenient importing:

    from songvideo.models import User, Song, VideoProject

All models use UUID strings as primary keys for SQLite compatibility.
"""

from .user import User
from .song import Song
from .video_project import ProjectState, RenderStage, VideoProject

__all__ = [
    "User",
    "Song",
    "VideoProject",
    "ProjectState",
    "RenderStage",
]
