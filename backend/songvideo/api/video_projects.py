"""
Video project API endpoints for SongVideo.

Project CRUD, render job submission with a duplicate guard, status polling,
client progress pushes and completion/upload/publish bookkeeping. All
endpoints require authentication and verify project ownership.

Render submission returns as soon as the project is claimed; the pipeline
runs as a detached task and its progress is observed through
GET /video-projects/{id}/status.
"""

import logging
import time
from typing import Optional

import aiofiles
from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .deps import (
    get_current_active_user,
    get_db,
    get_project_store,
    get_render_orchestrator,
)
from ..core.config import get_settings
from ..core.storage import (
    ALLOWED_VIDEO_EXTENSIONS,
    get_video_output_path,
    get_video_url,
    validate_video_extension,
)
from ..models.user import User
from ..models.video_project import ProjectState, VideoProject
from ..schemas.video_project import (
    CompleteRequest,
    ErrorResponse,
    ProgressUpdateRequest,
    PublishRequest,
    RenderRequest,
    RenderResponse,
    VideoProjectCreateRequest,
    VideoProjectListResponse,
    VideoProjectResponse,
)
from ..services.project_store import ProjectStateStore
from ..tasks.render import (
    RenderOrchestrator,
    cancel_render_job,
    get_active_job,
    start_render_job,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_UPLOAD_CHUNK_SIZE = 1024 * 1024


# =============================================================================
# Helper Functions
# =============================================================================


def _not_found(project_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": "not_found",
            "message": "Video project not found",
            "resource_type": "video_project",
            "resource_id": project_id,
        },
    )


def _conflict(message: str, project: VideoProject) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "error": "conflict",
            "message": message,
            "details": {"project_id": project.id, "state": project.state},
        },
    )


async def get_video_project_or_404(
    project_id: str,
    db: AsyncSession,
    user: User,
) -> VideoProject:
    """
    Get a video project by ID, verifying ownership.

    Raises:
        HTTPException 404: If project not found or not owned by user
    """
    result = await db.execute(select(VideoProject).where(VideoProject.id == project_id))
    project = result.scalar_one_or_none()

    if project is None or project.user_id != user.id:
        raise _not_found(project_id)

    return project


async def _reload(store: ProjectStateStore, project_id: str) -> VideoProjectResponse:
    project = await store.get(project_id)
    if project is None:
        raise _not_found(project_id)
    return VideoProjectResponse.model_validate(project)


def new_render_job_id(project_id: str) -> str:
    return f"render_{project_id}_{int(time.time() * 1000)}"


# =============================================================================
# CRUD
# =============================================================================


@router.post(
    "",
    response_model=VideoProjectResponse,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"description": "Existing project for this song returned"}},
)
async def create_video_project(
    data: VideoProjectCreateRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VideoProjectResponse:
    """
    Create a video project for a song.

    Unless force is set, an existing project for the same song and user is
    returned instead (200) and its config is left untouched.
    """
    if not data.force:
        result = await db.execute(
            select(VideoProject)
            .where(
                VideoProject.song_id == data.song_id,
                VideoProject.user_id == current_user.id,
            )
            .order_by(VideoProject.created_at.desc())
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            response.status_code = status.HTTP_200_OK
            return VideoProjectResponse.model_validate(existing)

    project = VideoProject(
        song_id=data.song_id,
        user_id=current_user.id,
        config=data.config,
    )
    db.add(project)
    await db.flush()
    await db.refresh(project)

    logger.info(f"Created video project {project.id} for song {data.song_id}")
    return VideoProjectResponse.model_validate(project)


@router.get("", response_model=VideoProjectListResponse)
async def list_video_projects(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VideoProjectListResponse:
    """List the caller's video projects, newest first."""
    result = await db.execute(
        select(VideoProject)
        .where(VideoProject.user_id == current_user.id)
        .order_by(VideoProject.created_at.desc())
    )
    projects = [VideoProjectResponse.model_validate(p) for p in result.scalars().all()]
    return VideoProjectListResponse(projects=projects, total=len(projects))


@router.get(
    "/{project_id}",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_video_project(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VideoProjectResponse:
    project = await get_video_project_or_404(project_id, db, current_user)
    return VideoProjectResponse.model_validate(project)


@router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_video_project(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Response:
    """Delete a video project, cancelling its render job if one is running."""
    project = await get_video_project_or_404(project_id, db, current_user)

    if cancel_render_job(project_id):
        logger.info(f"Cancelled running render for deleted project {project_id}")

    await db.delete(project)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Render job submission and polling
# =============================================================================


@router.post(
    "/{project_id}/render",
    response_model=RenderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        200: {"description": "Already rendering; existing job returned"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Project is being published"},
    },
)
async def start_render(
    project_id: str,
    response: Response,
    data: Optional[RenderRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
    orchestrator: RenderOrchestrator = Depends(get_render_orchestrator),
) -> RenderResponse:
    """
    Start a server-side render.

    Returns 202 with a new job handle once the project has been claimed.
    If the project is already rendering, returns 200 with the running job's
    handle and starts nothing. The same applies while a render task for
    the project is still live, even if a client push already moved the row
    out of rendering. Projects being published (uploading, uploaded) cannot
    be re-rendered.
    """
    project = await get_video_project_or_404(project_id, db, current_user)

    if project.state in (ProjectState.UPLOADING.value, ProjectState.UPLOADED.value):
        raise _conflict(f"Cannot render a project in state '{project.state}'", project)

    if get_active_job(project_id) is not None:
        logger.info(f"Render already running for project {project_id}; returning its job")
        response.status_code = status.HTTP_200_OK
        return RenderResponse(
            job_id=project.render_job_id or "",
            project_id=project_id,
            state=project.state,
            message="Already rendering",
        )

    config = data.config if data is not None and data.config is not None else None
    job_id = new_render_job_id(project_id)

    if not await store.mark_rendering(project_id, job_id, config=config):
        current = await store.get(project_id)
        if current is not None and current.state == ProjectState.RENDERING.value:
            response.status_code = status.HTTP_200_OK
            return RenderResponse(
                job_id=current.render_job_id or "",
                project_id=project_id,
                state=current.state,
                message="Already rendering",
            )
        raise _conflict("Project cannot be rendered in its current state", current or project)

    start_render_job(
        orchestrator,
        project_id=project_id,
        song_id=project.song_id,
        user_id=current_user.id,
        config=config if config is not None else project.config,
        job_id=job_id,
    )

    return RenderResponse(
        job_id=job_id,
        project_id=project_id,
        state=ProjectState.RENDERING.value,
        message="Render started",
    )


@router.get(
    "/{project_id}/status",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_render_status(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> VideoProjectResponse:
    """Polling read of the full project record."""
    project = await get_video_project_or_404(project_id, db, current_user)
    return VideoProjectResponse.model_validate(project)


@router.delete(
    "/{project_id}/render",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_render(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
) -> VideoProjectResponse:
    """
    Request cancellation of the running render.

    The running job stops at its next step boundary, or immediately when it
    is encoding. A project marked rendering with no live job in this process
    is moved to cancelled directly.
    """
    project = await get_video_project_or_404(project_id, db, current_user)

    if project.state != ProjectState.RENDERING.value:
        raise _conflict("Project is not rendering", project)

    await store.request_cancel(project_id)
    if not cancel_render_job(project_id):
        await store.mark_cancelled(project_id)

    return await _reload(store, project_id)


# =============================================================================
# Client-reported progress and completion
# =============================================================================


@router.post(
    "/{project_id}/progress",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def update_render_progress(
    project_id: str,
    data: ProgressUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
) -> VideoProjectResponse:
    """Progress push from a client-side renderer."""
    await get_video_project_or_404(project_id, db, current_user)
    await store.apply_client_progress(
        project_id, data.stage, data.progress, data.error_message
    )
    return await _reload(store, project_id)


@router.post(
    "/{project_id}/complete",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def complete_video_project(
    project_id: str,
    data: CompleteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
) -> VideoProjectResponse:
    """Mark a project completed with a video produced elsewhere."""
    await get_video_project_or_404(project_id, db, current_user)
    await store.mark_completed(project_id, data.video_url)
    return await _reload(store, project_id)


@router.post(
    "/{project_id}/upload",
    response_model=VideoProjectResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
    },
)
async def upload_rendered_video(
    project_id: str,
    video: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
) -> VideoProjectResponse:
    """
    Upload a client-rendered video and mark the project completed.

    The file is stored as videos/{project_id}{ext} under the public root.
    """
    await get_video_project_or_404(project_id, db, current_user)
    settings = get_settings()

    ext = validate_video_extension(video.filename or "")
    if ext is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": (
                    "Invalid file type. Allowed video formats: "
                    f"{', '.join(sorted(ALLOWED_VIDEO_EXTENSIONS))}"
                ),
            },
        )

    destination = get_video_output_path(settings.public_root, project_id, ext)
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(f".{destination.name}.upload")

    written = 0
    try:
        async with aiofiles.open(tmp_path, "wb") as f:
            while True:
                chunk = await video.read(_UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > settings.max_upload_size:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail={
                            "error": "file_too_large",
                            "message": (
                                "File exceeds maximum size of "
                                f"{settings.max_upload_size // (1024 * 1024)}MB"
                            ),
                            "max_size_bytes": settings.max_upload_size,
                        },
                    )
                await f.write(chunk)

        if written == 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "validation_error", "message": "File is empty"},
            )

        tmp_path.replace(destination)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    await store.mark_completed(project_id, get_video_url(project_id, ext))
    logger.info(f"Stored uploaded video for project {project_id} ({written} bytes)")
    return await _reload(store, project_id)


@router.post(
    "/{project_id}/publish",
    response_model=VideoProjectResponse,
    responses={404: {"model": ErrorResponse}},
)
async def publish_video_project(
    project_id: str,
    data: PublishRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    store: ProjectStateStore = Depends(get_project_store),
) -> VideoProjectResponse:
    """Record that the video was published to YouTube."""
    await get_video_project_or_404(project_id, db, current_user)
    youtube_url = (
        data.youtube_video_url
        or f"https://www.youtube.com/watch?v={data.youtube_video_id}"
    )
    await store.mark_published(project_id, data.youtube_video_id, youtube_url, data.metadata)
    return await _reload(store, project_id)
