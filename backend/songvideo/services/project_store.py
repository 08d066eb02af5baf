"""
Project State Store

The single writer of VideoProject lifecycle fields. Every transition is one
UPDATE statement committed in its own session, so a transition is either
fully visible to pollers or not at all, and concurrent writers cannot
interleave half-applied changes.

Rules enforced here rather than by callers:
- Starting a render is a compare-and-set that only succeeds from a
  renderable state, which makes "at most one render in flight per project"
  hold even when two submissions race.
- Progress is clamped to 0-100 and never decreases while rendering.
- completed_at is written on the first successful completion only.
- Failure messages are truncated to error_message_max_length.
- Writes that carry a job handle only apply while that job owns the
  project, so a superseded job cannot overwrite its successor.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.video_project import (
    RENDERABLE_STATES,
    ProjectState,
    RenderStage,
    VideoProject,
)

logger = logging.getLogger(__name__)


def clamp_progress(value: Any) -> int:
    """Coerce a progress value into an integer percentage in [0, 100]."""
    try:
        progress = int(value)
    except (TypeError, ValueError):
        progress = 0
    return max(0, min(100, progress))


def truncate_message(message: Optional[str], max_length: int) -> str:
    message = message or "Unknown error"
    return message[:max_length]


class ProjectStateStore:
    """
    Atomic lifecycle transitions for video projects.

    Each method returns True when a row was changed. A False return means
    the project does not exist or was not in a state the transition accepts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        error_message_max_length: int = 500,
    ):
        self.session_factory = session_factory
        self.error_message_max_length = error_message_max_length

    async def _execute(self, stmt) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    @staticmethod
    def _for_job(job_id: Optional[str]) -> list:
        """Restrict a write to the job that currently owns the project."""
        if job_id is None:
            return []
        return [VideoProject.render_job_id == job_id]

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, project_id: str) -> Optional[VideoProject]:
        async with self.session_factory() as session:
            return await session.get(VideoProject, project_id)

    async def is_cancel_requested(self, project_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(VideoProject.cancel_requested).where(VideoProject.id == project_id)
            )
            return bool(result.scalar_one_or_none())

    # =========================================================================
    # Server render transitions
    # =========================================================================

    async def mark_rendering(
        self,
        project_id: str,
        job_id: str,
        config: Optional[dict] = None,
    ) -> bool:
        """
        Claim the project for a new render job.

        Succeeds only from not_started, failed, completed or cancelled. On
        success the stage is queued, progress and error are reset, and
        job_id becomes the project's render handle.

        Args:
            project_id: Project to claim
            job_id: New render job handle
            config: Optional replacement visual configuration

        Returns:
            True if claimed, False if rendering already (or not renderable)
        """
        values: dict[str, Any] = dict(
            state=ProjectState.RENDERING.value,
            render_stage=RenderStage.QUEUED.value,
            progress=0,
            error_message=None,
            render_job_id=job_id,
            cancel_requested=False,
            updated_at=datetime.utcnow(),
        )
        if config is not None:
            values["config"] = config

        stmt = (
            update(VideoProject)
            .where(
                VideoProject.id == project_id,
                VideoProject.state.in_(RENDERABLE_STATES),
            )
            .values(**values)
        )
        claimed = await self._execute(stmt)
        if claimed:
            logger.info(f"Project {project_id} claimed for render job {job_id}")
        return claimed

    async def update_progress(
        self,
        project_id: str,
        stage: str,
        progress: Any,
        job_id: Optional[str] = None,
    ) -> bool:
        """
        Record a stage/progress update for a rendering project.

        Progress is clamped and only ever raised. Updates for projects that
        are no longer rendering are ignored so a late write cannot revive a
        failed or cancelled job. When job_id is given, writes from any other
        job are ignored as well.
        """
        progress = clamp_progress(progress)
        stmt = (
            update(VideoProject)
            .where(
                VideoProject.id == project_id,
                VideoProject.state == ProjectState.RENDERING.value,
                *self._for_job(job_id),
            )
            .values(
                render_stage=stage,
                progress=case(
                    (VideoProject.progress > progress, VideoProject.progress),
                    else_=progress,
                ),
                updated_at=datetime.utcnow(),
            )
        )
        return await self._execute(stmt)

    async def mark_completed(
        self,
        project_id: str,
        video_url: str,
        job_id: Optional[str] = None,
    ) -> bool:
        now = datetime.utcnow()
        stmt = (
            update(VideoProject)
            .where(VideoProject.id == project_id, *self._for_job(job_id))
            .values(
                state=ProjectState.COMPLETED.value,
                render_stage=RenderStage.COMPLETED.value,
                progress=100,
                video_url=video_url,
                error_message=None,
                cancel_requested=False,
                completed_at=func.coalesce(VideoProject.completed_at, now),
                updated_at=now,
            )
        )
        completed = await self._execute(stmt)
        if completed:
            logger.info(f"Project {project_id} completed: {video_url}")
        return completed

    async def mark_failed(
        self,
        project_id: str,
        message: Optional[str],
        job_id: Optional[str] = None,
    ) -> bool:
        truncated = truncate_message(message, self.error_message_max_length)
        stmt = (
            update(VideoProject)
            .where(VideoProject.id == project_id, *self._for_job(job_id))
            .values(
                state=ProjectState.FAILED.value,
                render_stage=RenderStage.FAILED.value,
                progress=0,
                error_message=truncated,
                cancel_requested=False,
                updated_at=datetime.utcnow(),
            )
        )
        failed = await self._execute(stmt)
        if failed:
            logger.warning(f"Project {project_id} failed: {truncated}")
        return failed

    async def mark_cancelled(self, project_id: str, job_id: Optional[str] = None) -> bool:
        stmt = (
            update(VideoProject)
            .where(VideoProject.id == project_id, *self._for_job(job_id))
            .values(
                state=ProjectState.CANCELLED.value,
                render_stage=RenderStage.CANCELLED.value,
                cancel_requested=False,
                updated_at=datetime.utcnow(),
            )
        )
        cancelled = await self._execute(stmt)
        if cancelled:
            logger.info(f"Project {project_id} render cancelled")
        return cancelled

    async def request_cancel(self, project_id: str) -> bool:
        """Flag a rendering project so its job stops at the next step boundary."""
        stmt = (
            update(VideoProject)
            .where(
                VideoProject.id == project_id,
                VideoProject.state == ProjectState.RENDERING.value,
            )
            .values(cancel_requested=True, updated_at=datetime.utcnow())
        )
        return await self._execute(stmt)

    # =========================================================================
    # Client-reported transitions
    # =========================================================================

    async def apply_client_progress(
        self,
        project_id: str,
        stage: Optional[str],
        progress: Any,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Map a progress push from a client-side renderer onto the state machine.

        - error_message present: failed
        - progress >= 100: completed
        - otherwise: rendering, with the reported stage and progress

        Applying the same push twice leaves the project unchanged.
        """
        if error_message:
            return await self.mark_failed(project_id, error_message)

        progress = clamp_progress(progress)
        now = datetime.utcnow()

        if progress >= 100:
            values: dict[str, Any] = dict(
                state=ProjectState.COMPLETED.value,
                render_stage=stage or RenderStage.COMPLETED.value,
                progress=100,
                error_message=None,
                completed_at=func.coalesce(VideoProject.completed_at, now),
                updated_at=now,
            )
        else:
            values = dict(
                state=ProjectState.RENDERING.value,
                render_stage=stage or RenderStage.PROCESSING.value,
                progress=case(
                    (
                        and_(
                            VideoProject.state == ProjectState.RENDERING.value,
                            VideoProject.progress > progress,
                        ),
                        VideoProject.progress,
                    ),
                    else_=progress,
                ),
                error_message=None,
                updated_at=now,
            )

        stmt = update(VideoProject).where(VideoProject.id == project_id).values(**values)
        return await self._execute(stmt)

    async def mark_published(
        self,
        project_id: str,
        youtube_video_id: str,
        youtube_video_url: str,
        metadata: Optional[dict] = None,
    ) -> bool:
        stmt = (
            update(VideoProject)
            .where(VideoProject.id == project_id)
            .values(
                state=ProjectState.UPLOADED.value,
                youtube_video_id=youtube_video_id,
                youtube_video_url=youtube_video_url,
                youtube_metadata=metadata,
                upload_progress=100,
                updated_at=datetime.utcnow(),
            )
        )
        published = await self._execute(stmt)
        if published:
            logger.info(f"Project {project_id} published as {youtube_video_id}")
        return published
