"""
Render Task for SongVideo

Turns a song plus its visual configuration into an MP4 in the background and
reports progress through the project row that clients poll.

Pipeline (stage, progress written at the end of each step):
1. Check FFmpeg availability            (fails fast, nothing allocated)
2. Fetch the song
3. Mark started                         starting          0
4. Stage audio into the working dir     fetching_audio    5
5. Probe audio duration                 analyzing_audio  10
6. Prepare the render                   preparing_render 15
7. Build the encoder command
8. Encode                               encoding      15-95 (rate limited)
9. Promote output to public/videos      completed       100
10. Remove the working directory        (always)

Every failure inside a job ends in mark_failed with the error's user-facing
message. Cancellation (cooperative flag or task cancel) ends in
mark_cancelled. Jobs run as detached asyncio tasks tracked in an in-process
registry; there is no queue and no concurrency limit.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import aiofiles
import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..core.config import Settings
from ..core.exceptions import (
    AudioAssetNotFoundError,
    EncoderUnavailableError,
    RenderCancelled,
    RenderError,
    SongNotFoundError,
    StorageError,
)
from ..core.storage import (
    get_video_output_path,
    get_video_url,
    get_work_dir,
    is_data_uri,
    is_remote_reference,
    promote_output,
    remove_work_dir,
    resolve_public_path,
    write_data_uri,
)
from ..models.song import Song
from ..models.video_project import RenderStage
from ..schemas.video_project import VisualConfig
from ..services.project_store import ProjectStateStore
from .command_builder import EncoderCommandBuilder, RenderSettings, resolve_background
from .ffmpeg_runner import check_encoder_available, parse_elapsed_seconds, run_encoder
from .media_probe import probe_duration

logger = logging.getLogger(__name__)

# Progress checkpoints
PROGRESS_STARTING = 0
PROGRESS_AUDIO_FETCHED = 5
PROGRESS_AUDIO_ANALYZED = 10
PROGRESS_ENCODE_START = 15
PROGRESS_ENCODE_END = 95
PROGRESS_COMPLETE = 100

AUDIO_EXTENSIONS = {".mp3", ".wav", ".flac", ".aac", ".m4a", ".ogg"}
OUTPUT_FILENAME = "output.mp4"

_DOWNLOAD_CHUNK_SIZE = 64 * 1024


@dataclass
class RenderPaths:
    """Filesystem roots used by a render job."""

    public_root: Path
    work_root: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderPaths":
        return cls(public_root=settings.public_root, work_root=settings.work_root)


# ============================================================================
# Encoding progress
# ============================================================================


class ProgressReporter:
    """
    Bridges encoder diagnostics to persisted progress.

    elapsed / duration is mapped linearly onto [start, end]. A write happens
    only when the mapped value increases and at least `interval` seconds
    have passed since the previous write. Progress is advisory: a failed
    write is logged and encoding carries on.
    """

    def __init__(
        self,
        store: ProjectStateStore,
        project_id: str,
        duration: float,
        interval: float = 0.5,
        start: int = PROGRESS_ENCODE_START,
        end: int = PROGRESS_ENCODE_END,
        clock: Callable[[], float] = time.monotonic,
        job_id: Optional[str] = None,
    ):
        self.store = store
        self.project_id = project_id
        self.job_id = job_id
        self.duration = duration
        self.interval = interval
        self.start = start
        self.end = end
        self.clock = clock
        self.last_progress = start
        self._last_write_at: Optional[float] = None

    def progress_for(self, elapsed: float) -> int:
        if self.duration <= 0:
            return self.start
        ratio = min(max(elapsed / self.duration, 0.0), 1.0)
        return self.start + int(ratio * (self.end - self.start))

    async def on_line(self, line: str) -> None:
        elapsed = parse_elapsed_seconds(line)
        if elapsed is None:
            return

        progress = self.progress_for(elapsed)
        if progress <= self.last_progress:
            return

        now = self.clock()
        if self._last_write_at is not None and now - self._last_write_at < self.interval:
            return

        self._last_write_at = now
        self.last_progress = progress
        try:
            await self.store.update_progress(
                self.project_id, RenderStage.ENCODING.value, progress, job_id=self.job_id
            )
        except SQLAlchemyError as e:
            logger.warning(f"Project {self.project_id}: progress write failed at {progress}%: {e}")


# ============================================================================
# Orchestrator
# ============================================================================


Runner = Callable[..., Awaitable[None]]
Prober = Callable[..., Awaitable[float]]
AvailabilityCheck = Callable[..., Awaitable[bool]]


class RenderOrchestrator:
    """
    Runs the end-to-end render pipeline for one project at a time.

    Collaborators are injected so tests can substitute the encoder, the
    prober and the filesystem roots.
    """

    def __init__(
        self,
        store: ProjectStateStore,
        settings: Settings,
        paths: Optional[RenderPaths] = None,
        runner: Runner = run_encoder,
        prober: Prober = probe_duration,
        availability_check: AvailabilityCheck = check_encoder_available,
        render_settings: Optional[RenderSettings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self.paths = paths or RenderPaths.from_settings(settings)
        self.runner = runner
        self.prober = prober
        self.availability_check = availability_check
        self.render_settings = render_settings or RenderSettings()
        self.http_transport = http_transport

    async def run(
        self,
        project_id: str,
        song_id: str,
        user_id: str,
        config: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> None:
        """
        Execute the render job. Never raises except to propagate task
        cancellation; the outcome is observable through the store.

        When job_id is given, every write is scoped to that job, so a job
        that has been superseded on its project leaves the row alone.
        """
        logger.info(f"Starting render for project {project_id} (song={song_id}, user={user_id})")
        work_dir: Optional[Path] = None
        started_at = time.monotonic()

        try:
            work_dir = get_work_dir(self.paths.work_root, project_id)
            await self._run_pipeline(project_id, song_id, config or {}, work_dir, job_id)
            logger.info(
                f"Render for project {project_id} completed in "
                f"{time.monotonic() - started_at:.1f}s"
            )

        except asyncio.CancelledError:
            logger.info(f"Render task for project {project_id} cancelled")
            await self.store.mark_cancelled(project_id, job_id=job_id)
            raise

        except RenderCancelled:
            await self.store.mark_cancelled(project_id, job_id=job_id)

        except RenderError as e:
            logger.error(f"Render for project {project_id} failed: {e.message}")
            await self.store.mark_failed(project_id, e.message, job_id=job_id)

        except Exception as e:
            logger.exception(f"Unexpected error rendering project {project_id}")
            await self.store.mark_failed(project_id, str(e) or e.__class__.__name__, job_id=job_id)

        finally:
            if work_dir is not None:
                await asyncio.to_thread(remove_work_dir, work_dir)

    async def _run_pipeline(
        self,
        project_id: str,
        song_id: str,
        config_blob: Dict[str, Any],
        work_dir: Path,
        job_id: Optional[str] = None,
    ) -> None:
        s = self.settings

        # Step 1: encoder availability
        if not await self.availability_check(s.ffmpeg_path, timeout=s.encoder_check_timeout):
            raise EncoderUnavailableError()

        # Step 2: song lookup
        song = await self._fetch_song(song_id)

        # Step 3: started
        await self.store.update_progress(
            project_id, RenderStage.STARTING.value, PROGRESS_STARTING, job_id=job_id
        )
        try:
            config = VisualConfig.model_validate(config_blob)
        except ValidationError as e:
            raise RenderError(f"Invalid visual configuration: {e}")
        await self._check_cancel(project_id)

        # Step 4: stage audio
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create working directory: {e}")
        audio_path = await self._stage_audio(song, work_dir)
        await self.store.update_progress(
            project_id, RenderStage.FETCHING_AUDIO.value, PROGRESS_AUDIO_FETCHED, job_id=job_id
        )
        await self._check_cancel(project_id)

        # Step 5: probe
        duration = await self.prober(audio_path, ffprobe_path=s.ffprobe_path, timeout=s.probe_timeout)
        await self.store.update_progress(
            project_id, RenderStage.ANALYZING_AUDIO.value, PROGRESS_AUDIO_ANALYZED, job_id=job_id
        )
        await self._check_cancel(project_id)

        # Step 6 + 7: prepare and build command
        await self.store.update_progress(
            project_id, RenderStage.PREPARING_RENDER.value, PROGRESS_ENCODE_START, job_id=job_id
        )
        output_path = work_dir / OUTPUT_FILENAME
        background = resolve_background(
            config, song.cover_url, self.paths.public_root, work_dir
        )
        cmd = EncoderCommandBuilder(
            config=config,
            background=background,
            audio_path=str(audio_path),
            duration=duration,
            output_path=str(output_path),
            settings=self.render_settings,
            font_path=s.font_path,
            ffmpeg_path=s.ffmpeg_path,
        ).build()
        logger.debug(f"Project {project_id} encoder command: {' '.join(cmd)}")
        logger.info(
            f"Project {project_id}: duration={duration:.2f}s background={background.kind} "
            f"text_layers={len(config.text_layers)}"
        )
        await self._check_cancel(project_id)

        # Step 8: encode
        reporter = ProgressReporter(
            self.store, project_id, duration, interval=s.progress_update_interval, job_id=job_id
        )
        await self.runner(cmd, reporter.on_line, timeout=s.encode_timeout)
        await self._check_cancel(project_id)

        # Step 9: promote
        if not output_path.is_file():
            raise StorageError("Encoder finished without producing an output file")
        destination = get_video_output_path(self.paths.public_root, project_id)
        try:
            await asyncio.to_thread(promote_output, output_path, destination)
        except OSError as e:
            raise StorageError(f"Failed to store rendered video: {e}")

        await self.store.mark_completed(project_id, get_video_url(project_id), job_id=job_id)

    async def _fetch_song(self, song_id: str) -> Song:
        async with self.store.session_factory() as session:
            song = await session.get(Song, song_id)
        if song is None:
            raise SongNotFoundError(song_id)
        return song

    async def _check_cancel(self, project_id: str) -> None:
        if await self.store.is_cancel_requested(project_id):
            logger.info(f"Cancellation requested for project {project_id}")
            raise RenderCancelled(project_id)

    # =========================================================================
    # Audio staging
    # =========================================================================

    async def _stage_audio(self, song: Song, work_dir: Path) -> Path:
        """
        Make the song's audio available as a local file.

        Raises:
            AudioAssetNotFoundError: If the reference is missing, unsupported,
                or cannot be fetched
        """
        url = (song.audio_url or "").strip()
        if not url:
            raise AudioAssetNotFoundError("Song has no audio file")

        if is_remote_reference(url):
            ext = os.path.splitext(urlparse(url).path)[1].lower()
            if ext not in AUDIO_EXTENSIONS:
                ext = ".mp3"
            return await self._download(url, work_dir / f"audio{ext}")

        if is_data_uri(url):
            try:
                return await asyncio.to_thread(write_data_uri, url, work_dir, "audio")
            except ValueError as e:
                raise AudioAssetNotFoundError(f"Invalid audio data URI: {e}", reference=url[:64])

        if url.startswith("/"):
            try:
                path = resolve_public_path(url, self.paths.public_root)
            except ValueError:
                raise AudioAssetNotFoundError(f"Audio file not found: {url}", reference=url)
            if not path.is_file():
                raise AudioAssetNotFoundError(
                    f"Audio file not found: {url} (looked for: {path})",
                    reference=url,
                    attempted_path=str(path),
                )
            return path

        raise AudioAssetNotFoundError("Unsupported audio URL format", reference=url)

    async def _download(self, url: str, destination: Path) -> Path:
        logger.info(f"Downloading audio from {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.download_timeout,
                follow_redirects=True,
                transport=self.http_transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise AudioAssetNotFoundError(
                            f"Failed to download audio: HTTP {response.status_code}",
                            reference=url,
                        )
                    async with aiofiles.open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK_SIZE):
                            await f.write(chunk)
        except httpx.HTTPError as e:
            raise AudioAssetNotFoundError(f"Failed to download audio: {e}", reference=url)

        return destination


# ============================================================================
# Job registry
# ============================================================================

# project_id -> running task (one per project)
_active_jobs: Dict[str, asyncio.Task] = {}


def start_render_job(
    orchestrator: RenderOrchestrator,
    project_id: str,
    song_id: str,
    user_id: str,
    config: Optional[Dict[str, Any]] = None,
    job_id: Optional[str] = None,
) -> asyncio.Task:
    """
    Launch a render as a detached task and return immediately.

    The task is tracked until it finishes so it can be cancelled. Callers
    check get_active_job first; a project never has two live tasks.
    """
    task = asyncio.create_task(
        orchestrator.run(project_id, song_id, user_id, config, job_id=job_id),
        name=f"render:{project_id}",
    )
    _active_jobs[project_id] = task
    task.add_done_callback(lambda t: _job_finished(project_id, t))
    logger.info(f"Render job launched for project {project_id} ({len(_active_jobs)} active)")
    return task


def _job_finished(project_id: str, task: asyncio.Task) -> None:
    if _active_jobs.get(project_id) is task:
        del _active_jobs[project_id]

    if not task.cancelled() and task.exception() is not None:
        logger.error(
            f"Render task for project {project_id} raised",
            exc_info=task.exception(),
        )


def get_active_job(project_id: str) -> Optional[asyncio.Task]:
    """Return the live render task for a project, if any."""
    task = _active_jobs.get(project_id)
    if task is None or task.done():
        return None
    return task


def cancel_render_job(project_id: str) -> bool:
    """Cancel the running task for a project. Returns False if none is running."""
    task = _active_jobs.get(project_id)
    if task is None or task.done():
        return False
    task.cancel()
    return True


async def shutdown_render_jobs() -> None:
    """Cancel all running render tasks and wait for them to settle."""
    tasks = [task for task in _active_jobs.values() if not task.done()]
    if not tasks:
        return

    logger.info(f"Cancelling {len(tasks)} active render job(s)")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
