"""
Common dependencies for SongVideo API endpoints.

Provides reusable FastAPI dependencies for database sessions,
authentication, the project state store and the render orchestrator.
Tests replace the last two through app.dependency_overrides to inject a
test session factory and stubbed encoder/prober.
"""

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.database import AsyncSessionLocal, get_async_session
from ..core.security import get_current_user
from ..models.user import User
from ..services.project_store import ProjectStateStore
from ..tasks.render import RenderOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    The session is automatically committed on success or
    rolled back on exception.
    """
    async for session in get_async_session():
        yield session


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Get the current authenticated user.

    Raises:
        HTTPException 401: If token is invalid, expired, or user not found
    """
    return current_user


def get_project_store() -> ProjectStateStore:
    """State store bound to the application session factory."""
    settings = get_settings()
    return ProjectStateStore(
        AsyncSessionLocal,
        error_message_max_length=settings.error_message_max_length,
    )


def get_render_orchestrator(
    store: ProjectStateStore = Depends(get_project_store),
) -> RenderOrchestrator:
    """Orchestrator using the real FFmpeg runner and prober."""
    return RenderOrchestrator(store=store, settings=get_settings())


__all__ = [
    "get_db",
    "get_current_active_user",
    "get_current_user",
    "get_project_store",
    "get_render_orchestrator",
]
