"""
Media probing with ffprobe.

Only the container duration is read; it sizes the generated background and
turns encoder timestamps into a progress ratio.
"""

import asyncio
import logging
import math
from pathlib import Path
from typing import Union

from ..core.exceptions import RenderError

logger = logging.getLogger(__name__)


class ProbeError(RenderError):
    """ffprobe failed, timed out, or returned something that is not a duration."""


def build_probe_command(path: Union[str, Path], ffprobe_path: str = "ffprobe") -> list[str]:
    return [
        ffprobe_path,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


async def probe_duration(
    path: Union[str, Path],
    ffprobe_path: str = "ffprobe",
    timeout: float = 10.0,
) -> float:
    """
    Read the duration of a media file in seconds.

    Args:
        path: Local file to probe
        ffprobe_path: ffprobe binary
        timeout: Seconds before the probe is killed

    Returns:
        Positive, finite duration in seconds

    Raises:
        ProbeError: On spawn failure, non-zero exit, timeout or an output
            that does not parse as a positive finite number
        asyncio.CancelledError: If the awaiting task is cancelled; ffprobe
            is killed and reaped first
    """
    cmd = build_probe_command(path, ffprobe_path)
    logger.debug(f"ffprobe command: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProbeError(f"ffprobe failed: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise ProbeError("ffprobe timeout")
    except asyncio.CancelledError:
        logger.info(f"Probe of {path} cancelled, killing ffprobe")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise

    if process.returncode != 0:
        error_text = stderr.decode("utf-8", errors="replace").strip()[-500:]
        raise ProbeError(f"ffprobe failed: {error_text or f'exit code {process.returncode}'}")

    output = stdout.decode("utf-8", errors="replace").strip()
    try:
        duration = float(output.splitlines()[0]) if output else float("nan")
    except ValueError:
        duration = float("nan")

    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError(f"Invalid duration value: {output!r}")

    logger.info(f"Probed {path}: duration={duration:.2f}s")
    return duration
