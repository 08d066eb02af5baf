"""
SongVideo API routes package.

Contains all API endpoint routers for the application.
"""

from fastapi import APIRouter

from .auth import router as auth_router
from .video_projects import router as video_projects_router

# Main API router that includes all sub-routers
api_router = APIRouter()

api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_router.include_router(
    video_projects_router, prefix="/video-projects", tags=["video-projects"]
)

__all__ = [
    "api_router",
    "auth_router",
    "video_projects_router",
]
