"""
Encoder command construction for song videos.

Builds the FFmpeg argument list for one render:
- Input 0 is the background (looped image, looped video, or a generated
  solid fill sized to the song duration)
- Input 1 is the staged audio
- Image and video backgrounds are scaled and cropped to fill the frame
- Each text layer becomes one drawtext stage in the -vf chain
- Output is H.264/AAC MP4 that stops with the audio (-shortest)

Background precedence:
    explicit custom background (image or video per backgroundType)
    > cover artwork (customAlbumArt, else the song's cover_url)
    > solid fill
A server-relative reference that does not exist on disk falls through to the
next tier with a warning instead of failing the render.
"""

import logging
import math
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..core.storage import (
    is_data_uri,
    is_remote_reference,
    resolve_public_path,
    write_data_uri,
)
from ..schemas.video_project import TextLayer, VisualConfig

logger = logging.getLogger(__name__)


# ============================================================================
# Render Settings
# ============================================================================


@dataclass
class RenderSettings:
    """
    Fixed output profile.

    Output: 1920x1080, H.264 (fast, CRF 23, tuned for still images),
    AAC 128k, faststart MP4.
    """

    width: int = 1920
    height: int = 1080
    video_codec: str = "libx264"
    preset: str = "fast"
    crf: int = 23
    pix_fmt: str = "yuv420p"
    tune: str = "stillimage"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    background_color: str = "#1a1a2e"


FONT_PATHS = {
    "win32": "C:\\Windows\\Fonts\\arial.ttf",
    "darwin": "/System/Library/Fonts/Helvetica.ttc",
    "linux": "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
}

_COLOR_RE = re.compile(r"^(#[0-9A-Fa-f]{3,8}|0x[0-9A-Fa-f]{6,8}|[A-Za-z]+)(@[0-9.]+)?$")


def default_font_path(platform: Optional[str] = None) -> str:
    """Font file used for text overlays on the given (or current) platform."""
    platform = platform or sys.platform
    return FONT_PATHS.get(platform, FONT_PATHS["linux"])


# ============================================================================
# Filter escaping
# ============================================================================


def escape_drawtext_text(value: str) -> str:
    """
    Escape user text for a single-quoted drawtext text='...' option.

    Backslashes, quotes, colons and percent signs are backslash-escaped and
    newlines become a literal "\\n".
    """
    text = "" if value is None else str(value)
    return (
        text.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace(":", "\\:")
        .replace("%", "\\%")
        .replace("\n", "\\n")
    )


def escape_filter_path(path: str) -> str:
    """
    Normalize a filesystem path for use inside a filter option.

    Backslashes become forward slashes and colons are escaped, so Windows
    drive letters survive the filtergraph parser.
    """
    return path.replace("\\", "/").replace(":", "\\:")


def _percent_to_pixels(percent: float, extent: int) -> int:
    # Half-up rounding
    return int(math.floor(percent / 100 * extent + 0.5))


# ============================================================================
# Background resolution
# ============================================================================


@dataclass
class Background:
    """Resolved background input. source is None for a solid fill."""

    kind: str  # "image", "video" or "color"
    source: Optional[str] = None


def resolve_media_reference(
    reference: str,
    public_root: Path,
    work_dir: Path,
    stem: str,
) -> Optional[str]:
    """
    Turn an image/video reference into something FFmpeg can open.

    Remote URLs are passed through, data URIs are decoded into work_dir, and
    server-relative paths are resolved under public_root.

    Returns:
        Input path or URL, or None when the reference cannot be used
    """
    if is_remote_reference(reference):
        return reference

    if is_data_uri(reference):
        try:
            return str(write_data_uri(reference, work_dir, stem))
        except ValueError as e:
            logger.warning(f"Ignoring background data URI: {e}")
            return None

    if reference.startswith("/"):
        try:
            path = resolve_public_path(reference, public_root)
        except ValueError:
            logger.warning(f"Ignoring background outside public root: {reference}")
            return None
        if path.is_file():
            return str(path)
        logger.warning(f"Background file not found: {reference} (looked for: {path})")
        return None

    logger.warning(f"Unsupported background reference: {reference[:100]}")
    return None


def resolve_background(
    config: VisualConfig,
    cover_url: Optional[str],
    public_root: Path,
    work_dir: Path,
) -> Background:
    """
    Pick the background input according to the precedence rules.

    Returns:
        The first usable candidate, or a solid fill
    """
    candidates = []
    if config.background_type == "image" and config.custom_image:
        candidates.append(("image", config.custom_image))
    elif config.background_type == "video" and config.video_url:
        candidates.append(("video", config.video_url))

    cover = config.custom_album_art or cover_url
    if cover:
        candidates.append(("image", cover))

    for index, (kind, reference) in enumerate(candidates):
        source = resolve_media_reference(
            reference, public_root, work_dir, stem=f"background_{index}"
        )
        if source is not None:
            return Background(kind=kind, source=source)

    return Background(kind="color")


# ============================================================================
# Command Builder
# ============================================================================


class EncoderCommandBuilder:
    """
    Builds the FFmpeg command for one song video.

    Key design:
    - Exactly two inputs: background (0) and audio (1)
    - Visual stages are a single linear -vf chain
    - Streams are mapped explicitly so a video background never
      contributes its own audio
    """

    def __init__(
        self,
        config: VisualConfig,
        background: Background,
        audio_path: str,
        duration: float,
        output_path: str,
        settings: Optional[RenderSettings] = None,
        font_path: Optional[str] = None,
        ffmpeg_path: str = "ffmpeg",
    ):
        """
        Args:
            config: Parsed visual configuration
            background: Resolved background input
            audio_path: Staged local audio file
            duration: Probed audio duration in seconds
            output_path: Private output path inside the working directory
            settings: Output profile (defaults to RenderSettings())
            font_path: Font for text overlays (platform default when None)
            ffmpeg_path: FFmpeg binary
        """
        self.config = config
        self.background = background
        self.audio_path = audio_path
        self.duration = duration
        self.output_path = output_path
        self.settings = settings or RenderSettings()
        self.font_path = font_path or default_font_path()
        self.ffmpeg_path = ffmpeg_path

    def build(self) -> List[str]:
        """
        Build complete FFmpeg command.

        Returns:
            List of command arguments, binary first
        """
        cmd = [self.ffmpeg_path, "-y"]

        cmd.extend(self._build_inputs())

        filter_chain = self._build_filter_chain()
        if filter_chain:
            cmd.extend(["-vf", filter_chain])

        cmd.extend(["-map", "0:v:0", "-map", "1:a:0"])
        cmd.extend(self._build_output_options())
        cmd.append(self.output_path)

        return cmd

    def _build_inputs(self) -> List[str]:
        s = self.settings
        bg = self.background

        if bg.kind == "image":
            inputs = ["-loop", "1", "-i", bg.source]
        elif bg.kind == "video":
            inputs = ["-stream_loop", "-1", "-i", bg.source]
        else:
            inputs = [
                "-f", "lavfi",
                "-i", f"color=c={s.background_color}:s={s.width}x{s.height}:d={self.duration:g}",
            ]

        inputs.extend(["-i", self.audio_path])
        return inputs

    def _build_filter_chain(self) -> str:
        s = self.settings
        filters = []

        if self.background.kind in ("image", "video"):
            filters.append(
                f"scale={s.width}:{s.height}:force_original_aspect_ratio=increase,"
                f"crop={s.width}:{s.height}"
            )

        for layer in self.config.text_layers:
            filters.append(self._build_drawtext(layer))

        return ",".join(filters)

    def _build_drawtext(self, layer: TextLayer) -> str:
        s = self.settings
        x = _percent_to_pixels(layer.x, s.width)
        y = _percent_to_pixels(layer.y, s.height)
        color = layer.color if _COLOR_RE.match(layer.color or "") else "#ffffff"

        parts = [
            f"text='{escape_drawtext_text(layer.text)}'",
            f"x={x}",
            f"y={y}",
            f"fontsize={layer.size or 48}",
            f"fontcolor={color}",
            f"fontfile='{escape_filter_path(self.font_path)}'",
        ]
        return f"drawtext={':'.join(parts)}"

    def _build_output_options(self) -> List[str]:
        s = self.settings
        return [
            "-c:v", s.video_codec,
            "-preset", s.preset,
            "-crf", str(s.crf),
            "-pix_fmt", s.pix_fmt,
            "-tune", s.tune,
            "-c:a", s.audio_codec,
            "-b:a", s.audio_bitrate,
            "-shortest",
            "-movflags", "+faststart",
        ]
