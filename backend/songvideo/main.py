"""
SongVideo Backend API

Main FastAPI application entry point.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from .api import api_router
from .core.config import get_settings
from .core.database import async_engine, create_all_tables
from .tasks.ffmpeg_runner import check_encoder_available
from .tasks.render import shutdown_render_jobs

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("songvideo.api")

# Load settings
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create storage folders and tables on startup; stop render jobs on shutdown."""
    for directory in (
        settings.public_root / "videos",
        settings.public_root / "audio",
        settings.work_root,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    await create_all_tables()

    if not await check_encoder_available(
        settings.ffmpeg_path, timeout=settings.encoder_check_timeout
    ):
        logger.warning("FFmpeg is not available; server-side rendering will fail until it is installed")

    logger.info(f"{settings.app_name} {settings.version} started")
    yield

    await shutdown_render_jobs()
    await async_engine.dispose()


app = FastAPI(
    title="SongVideo API",
    description="Song-to-video render service",
    version=settings.version,
    lifespan=lifespan,
)


# Request body size limit middleware
@app.middleware("http")
async def limit_request_body_size(request: Request, call_next):
    """
    Middleware to enforce maximum request body size.

    Prevents uploads larger than MAX_UPLOAD_SIZE (default 500MB).
    """
    content_length = request.headers.get("content-length")

    if content_length and content_length.isdigit():
        if int(content_length) > settings.max_upload_size:
            return JSONResponse(
                status_code=413,
                content={
                    "error": "request_entity_too_large",
                    "message": f"Request body too large. Maximum size: {settings.max_upload_size} bytes ({settings.max_upload_size // (1024 * 1024)}MB)",
                    "max_size_bytes": settings.max_upload_size,
                },
            )

    return await call_next(request)


# CORS configuration (loaded from environment)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix="/api")

# Rendered videos and local audio are served from the public root
app.mount(
    "/videos",
    StaticFiles(directory=str(settings.public_root / "videos"), check_dir=False),
    name="videos",
)
app.mount(
    "/audio",
    StaticFiles(directory=str(settings.public_root / "audio"), check_dir=False),
    name="audio",
)


@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": settings.app_name,
        "version": settings.version,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Checks the health of:
    - Database connection
    - FFmpeg availability

    Returns overall status and individual check results.
    """
    checks = {}
    healthy = True

    try:
        async with async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        healthy = False

    if await check_encoder_available(settings.ffmpeg_path, timeout=settings.encoder_check_timeout):
        checks["ffmpeg"] = {"status": "healthy"}
    else:
        checks["ffmpeg"] = {
            "status": "unhealthy",
            "error": "FFmpeg is not available on the server",
        }
        healthy = False

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": settings.version,
    }
