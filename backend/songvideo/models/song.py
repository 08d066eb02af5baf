"""
Song model for SongVideo.

Songs are produced by the music generation service and written to this
table by it. The render pipeline only reads them: audio_url is the track to
encode and cover_url is the artwork used as a fallback background.

audio_url and cover_url accept three reference forms:
- absolute http(s) URLs (downloaded before encoding)
- server-relative paths such as "/audio/<file>" (resolved under the
  public asset root)
- data: URIs (decoded into the render working directory)
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .user import generate_uuid


class Song(Base):
    """A generated song with its audio and cover artwork references."""

    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        doc="UUID primary key"
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        doc="Owning user (not enforced; songs come from another service)"
    )
    title: Mapped[str] = mapped_column(
        String(200),
        default="Untitled",
        nullable=False,
        doc="Song title"
    )
    audio_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Audio reference: URL, /audio/... path or data URI"
    )
    cover_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Cover artwork reference: URL, server path or data URI"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        doc="Creation timestamp"
    )

    def __repr__(self) -> str:
        return f"<Song(id={self.id!r}, title={self.title!r})>"
