"""
Shared test fixtures for SongVideo Backend tests.

Provides:
- Test database (SQLite file in a temp dir, one connection per session so
  the background render task and request handlers do not share a
  transaction)
- Test client (httpx AsyncClient over ASGITransport)
- Authenticated client (with JWT token)
- User / song / video project factories
- Fake encoder, prober and availability check for the render pipeline
- Executable script factory for subprocess-level tests
"""

import asyncio
import os
import stat
import sys
import tempfile
import uuid
from pathlib import Path
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment variables before importing app modules
_test_root = tempfile.mkdtemp(prefix="songvideo_test_")
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-purposes-only-32chars"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_root}/test.db"
os.environ["PUBLIC_PATH"] = os.path.join(_test_root, "public")
os.environ["WORK_PATH"] = os.path.join(_test_root, "work")

from songvideo.api.deps import get_db, get_project_store, get_render_orchestrator
from songvideo.core.config import get_settings
from songvideo.core.database import Base, get_async_session
from songvideo.core.security import hash_password
from songvideo.main import app
from songvideo.models.song import Song
from songvideo.models.user import User
from songvideo.models.video_project import VideoProject
from songvideo.services.project_store import ProjectStateStore
from songvideo.tasks.render import RenderOrchestrator, RenderPaths, shutdown_render_jobs


# =============================================================================
# Test Database Configuration
# =============================================================================

TEST_DATABASE_URL = os.environ["DATABASE_URL"]

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"timeout": 15},
    poolclass=NullPool,
    echo=False,
)

TestAsyncSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def test_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide an async database session for testing.

    Creates all tables before the test and drops them after.
    Each test gets a fresh database.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    """Override database dependency for testing."""
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def store() -> ProjectStateStore:
    """State store bound to the test database."""
    return ProjectStateStore(TestAsyncSessionLocal, error_message_max_length=500)


# =============================================================================
# Filesystem Fixtures
# =============================================================================


@pytest.fixture
def render_paths(tmp_path: Path) -> RenderPaths:
    """Per-test public and working roots."""
    paths = RenderPaths(public_root=tmp_path / "public", work_root=tmp_path / "work")
    (paths.public_root / "audio").mkdir(parents=True)
    paths.work_root.mkdir(parents=True)
    return paths


@pytest.fixture
def script_factory(tmp_path: Path):
    """
    Create executable shell scripts standing in for ffmpeg/ffprobe.

    Usage:
        ffprobe = script_factory("ffprobe", "echo 5.0")
    """
    if os.name != "posix":
        pytest.skip("shell script stand-ins require a POSIX shell")

    def _make(name: str, body: str) -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


# =============================================================================
# Render Pipeline Fakes
# =============================================================================


class FakeEncoder:
    """
    Stand-in for run_encoder.

    Emits FFmpeg-style status lines through the callback and writes a small
    file at the output path (the last argument) unless told to fail.
    """

    def __init__(
        self,
        lines: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        block: Optional[asyncio.Event] = None,
    ):
        self.lines = lines if lines is not None else [
            f"frame={i * 25} fps=25 q=28.0 size=   {i * 64}kB time=00:00:0{i}.00 bitrate=128.0kbits/s speed=2x"
            for i in range(1, 6)
        ]
        self.error = error
        self.block = block
        self.calls: List[List[str]] = []
        self.started = asyncio.Event()

    async def __call__(self, args, on_diagnostic_line=None, timeout=None) -> None:
        self.calls.append(list(args))
        self.started.set()

        if self.block is not None:
            await self.block.wait()

        for line in self.lines:
            if on_diagnostic_line is not None:
                await on_diagnostic_line(line)

        if self.error is not None:
            raise self.error

        Path(args[-1]).write_bytes(b"\x00\x00\x00\x18ftypmp42")


class FakeProber:
    """Stand-in for probe_duration."""

    def __init__(self, duration: float = 5.0, error: Optional[Exception] = None):
        self.duration = duration
        self.error = error
        self.calls: List[str] = []

    async def __call__(self, path, ffprobe_path="ffprobe", timeout=10.0) -> float:
        self.calls.append(str(path))
        if self.error is not None:
            raise self.error
        return self.duration


async def encoder_available(ffmpeg_path="ffmpeg", timeout=5.0) -> bool:
    return True


async def encoder_missing(ffmpeg_path="ffmpeg", timeout=5.0) -> bool:
    return False


class RecordingStore(ProjectStateStore):
    """ProjectStateStore that records every (stage, progress) it is asked to write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.updates: List[tuple] = []

    async def update_progress(self, project_id, stage, progress, job_id=None):
        self.updates.append((stage, progress))
        return await super().update_progress(project_id, stage, progress, job_id=job_id)

    async def mark_completed(self, project_id, video_url, job_id=None):
        self.updates.append(("completed", 100))
        return await super().mark_completed(project_id, video_url, job_id=job_id)


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore(TestAsyncSessionLocal, error_message_max_length=500)


@pytest.fixture
def make_orchestrator(render_paths: RenderPaths, recording_store: RecordingStore):
    """
    Build a RenderOrchestrator wired to the test database and fakes.

    Keyword arguments override the defaults (runner, prober,
    availability_check, http_transport, store).
    """

    def _make(**overrides) -> RenderOrchestrator:
        options = dict(
            store=recording_store,
            settings=get_settings(),
            paths=render_paths,
            runner=FakeEncoder(),
            prober=FakeProber(),
            availability_check=encoder_available,
        )
        options.update(overrides)
        return RenderOrchestrator(**options)

    return _make


# =============================================================================
# Test Client Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def async_client(test_db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide an async HTTP client for testing the FastAPI application.

    Overrides the database and store dependencies to use the test database.
    Render jobs started during the test are cancelled afterwards.
    """
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_async_session] = override_get_db
    app.dependency_overrides[get_project_store] = lambda: ProjectStateStore(TestAsyncSessionLocal)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await shutdown_render_jobs()
    app.dependency_overrides.clear()


@pytest.fixture
def use_orchestrator():
    """
    Route render submissions to a given orchestrator.

    Usage:
        use_orchestrator(make_orchestrator(runner=encoder))
    """

    def _use(orchestrator: RenderOrchestrator) -> RenderOrchestrator:
        app.dependency_overrides[get_render_orchestrator] = lambda: orchestrator
        return orchestrator

    return _use


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def test_user_data() -> dict:
    """Provide test user data."""
    return {
        "username": f"testuser_{uuid.uuid4().hex[:8]}",
        "password": "TestPassword123!",
    }


@pytest_asyncio.fixture
async def test_user(async_client: AsyncClient, test_user_data: dict) -> dict:
    """
    Create a test user and return user data with ID.

    Returns dict with id, username, password, and access_token.
    """
    response = await async_client.post("/api/auth/register", json=test_user_data)
    assert response.status_code == 201, f"Failed to create user: {response.text}"
    user_data = response.json()

    response = await async_client.post("/api/auth/login", json=test_user_data)
    assert response.status_code == 200, f"Failed to login: {response.text}"
    login_data = response.json()

    return {
        "id": user_data["id"],
        "username": test_user_data["username"],
        "password": test_user_data["password"],
        "access_token": login_data["access_token"],
    }


@pytest.fixture
def auth_headers(test_user: dict) -> dict:
    """Provide authentication headers for the test user."""
    return {"Authorization": f"Bearer {test_user['access_token']}"}


@pytest_asyncio.fixture
async def second_auth_headers(async_client: AsyncClient) -> dict:
    """Authentication headers for a second, unrelated user."""
    credentials = {"username": f"seconduser_{uuid.uuid4().hex[:8]}", "password": "SecondPassword123!"}
    response = await async_client.post("/api/auth/register", json=credentials)
    assert response.status_code == 201
    response = await async_client.post("/api/auth/login", json=credentials)
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


# =============================================================================
# Helper Functions
# =============================================================================
#
# Rows are committed so the store's own sessions can see them.


async def create_user_directly(
    db: AsyncSession,
    username: Optional[str] = None,
    password: str = "TestPassword123!",
) -> User:
    """Create a user directly in the database."""
    if username is None:
        username = f"testuser_{uuid.uuid4().hex[:8]}"

    user = User(username=username, password_hash=hash_password(password))
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_song_directly(
    db: AsyncSession,
    song_id: Optional[str] = None,
    audio_url: Optional[str] = "/audio/test.mp3",
    cover_url: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Song:
    """Create a song row the way the generation service would."""
    song = Song(
        id=song_id or str(uuid.uuid4()),
        user_id=user_id,
        title="Test Song",
        audio_url=audio_url,
        cover_url=cover_url,
    )
    db.add(song)
    await db.commit()
    await db.refresh(song)
    return song


async def create_video_project_directly(
    db: AsyncSession,
    user: User,
    song: Song,
    project_id: Optional[str] = None,
    config: Optional[dict] = None,
    **fields,
) -> VideoProject:
    """Create a video project directly in the database."""
    project = VideoProject(
        id=project_id or str(uuid.uuid4()),
        song_id=song.id,
        user_id=user.id,
        config=config if config is not None else {"backgroundType": "gradient", "textLayers": []},
        **fields,
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return project


def write_public_audio(paths: RenderPaths, name: str = "test.mp3") -> Path:
    """Place a stand-in audio file under public/audio."""
    audio = paths.public_root / "audio" / name
    audio.parent.mkdir(parents=True, exist_ok=True)
    audio.write_bytes(b"ID3\x03\x00\x00\x00\x00\x00\x00")
    return audio


def python_script(code: str) -> List[str]:
    """Command line running code with the current interpreter."""
    return [sys.executable, "-c", code]
