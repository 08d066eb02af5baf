"""
FFmpeg Runner

Runs FFmpeg as an asyncio subprocess with:
- Diagnostic (stderr) streaming, one callback per status line
- Progress marker parsing (time=HH:MM:SS.ff)
- Process group management for clean termination on timeout or cancel
- Bounded diagnostic tail in error reports

FFmpeg rewrites its status line in place with carriage returns, so stderr is
split on both "\\r" and "\\n" rather than read with readline().
"""

import asyncio
import codecs
import inspect
import logging
import os
import re
import signal
from collections import deque
from typing import Awaitable, Callable, List, Optional, Union

from ..core.exceptions import RenderError

logger = logging.getLogger(__name__)

# Lines of stderr kept for error reports
DIAGNOSTIC_TAIL_LINES = 30

# Characters of stderr kept in the error message
DIAGNOSTIC_TAIL_CHARS = 2000

_READ_CHUNK_SIZE = 4096

_LINE_SPLIT_RE = re.compile(r"[\r\n]")
_ELAPSED_RE = re.compile(r"time=\s*(-?)(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)")

DiagnosticCallback = Callable[[str], Union[None, Awaitable[None]]]


class EncoderError(RenderError):
    """Raised when FFmpeg cannot be started, times out, or exits non-zero."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        diagnostic_tail: str = "",
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail


def parse_elapsed_seconds(chunk: str) -> Optional[float]:
    """
    Extract the encoded timestamp from an FFmpeg status chunk.

    When the chunk holds several status lines the last marker wins.

    Args:
        chunk: One or more lines of FFmpeg stderr output

    Returns:
        Elapsed output time in seconds, or None when the chunk carries no
        usable marker (no marker, "time=N/A", negative timestamps)

    Example:
        >>> parse_elapsed_seconds("frame=  48 fps=0.0 q=28.0 size=0kB time=00:00:01.92 bitrate=0.2kbits/s")
        1.92
        >>> parse_elapsed_seconds("size=N/A time=N/A bitrate=N/A") is None
        True
    """
    matches = _ELAPSED_RE.findall(chunk)
    if not matches:
        return None

    sign, hours, minutes, seconds = matches[-1]
    if sign == "-":
        return None

    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


async def run_encoder(
    args: List[str],
    on_diagnostic_line: Optional[DiagnosticCallback] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Run an FFmpeg command to completion, streaming its diagnostics.

    The callback is invoked once per non-empty stderr line, in order, while
    the process runs. It may be a plain function or a coroutine function.
    Exceptions raised by the callback propagate after the process is killed.

    Args:
        args: Full command line, binary first
        on_diagnostic_line: Optional per-line callback
        timeout: Optional hard limit in seconds (unbounded when None)

    Raises:
        EncoderError: If the process cannot be spawned, exceeds the timeout,
            or exits with a non-zero code
        asyncio.CancelledError: If the awaiting task is cancelled; the
            process is killed first
    """
    logger.info(f"Starting FFmpeg (timeout={timeout})")
    logger.debug(f"FFmpeg command: {' '.join(args)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        logger.error(f"Failed to start FFmpeg: {e}")
        raise EncoderError(f"Failed to start FFmpeg: {e}")

    tail: deque = deque(maxlen=DIAGNOSTIC_TAIL_LINES)

    try:
        pump = _pump_diagnostics(process.stderr, tail, on_diagnostic_line)
        if timeout is not None:
            await asyncio.wait_for(pump, timeout=timeout)
        else:
            await pump
        return_code = await process.wait()

    except asyncio.TimeoutError:
        logger.warning(f"FFmpeg timeout after {timeout}s, killing process")
        await _kill_process_group(process)
        diagnostic_tail = _format_tail(tail)
        raise EncoderError(
            f"FFmpeg exceeded timeout of {timeout} seconds",
            exit_code=process.returncode,
            diagnostic_tail=diagnostic_tail,
        )

    except asyncio.CancelledError:
        logger.info("FFmpeg run cancelled, killing process")
        await _kill_process_group(process)
        raise

    except BaseException:
        await _kill_process_group(process)
        raise

    if return_code != 0:
        diagnostic_tail = _format_tail(tail)
        error_msg = f"FFmpeg failed with code {return_code}"
        if diagnostic_tail:
            error_msg += f": {diagnostic_tail}"
        logger.error(error_msg)
        raise EncoderError(error_msg, exit_code=return_code, diagnostic_tail=diagnostic_tail)

    logger.info("FFmpeg completed successfully")


async def _pump_diagnostics(
    stream: asyncio.StreamReader,
    tail: deque,
    on_line: Optional[DiagnosticCallback],
) -> None:
    """Read stderr in chunks and dispatch complete lines until EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        if not chunk:
            break

        buffer += decoder.decode(chunk)
        parts = _LINE_SPLIT_RE.split(buffer)
        buffer = parts.pop()
        for part in parts:
            await _dispatch_line(part, tail, on_line)

    buffer += decoder.decode(b"", final=True)
    await _dispatch_line(buffer, tail, on_line)


async def _dispatch_line(
    line: str,
    tail: deque,
    on_line: Optional[DiagnosticCallback],
) -> None:
    line = line.strip()
    if not line:
        return

    tail.append(line)
    if on_line is None:
        return

    result = on_line(line)
    if inspect.isawaitable(result):
        await result


def _format_tail(tail: deque) -> str:
    text = "\n".join(tail)
    return text[-DIAGNOSTIC_TAIL_CHARS:]


async def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """
    Kill FFmpeg and its process group, then reap it.

    Uses SIGKILL to ensure immediate termination.
    """
    if process.returncode is not None:
        return

    try:
        if os.name == "posix":
            pgid = os.getpgid(process.pid)
            logger.info(f"Killing FFmpeg process group {pgid}")
            os.killpg(pgid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        logger.debug("Process already terminated")
    except OSError as e:
        logger.warning(f"Error killing process group: {e}")
        try:
            process.kill()
        except ProcessLookupError:
            logger.debug("Process already terminated")

    await process.wait()


async def check_encoder_available(ffmpeg_path: str = "ffmpeg", timeout: float = 5.0) -> bool:
    """
    Check if FFmpeg is installed and runs.

    Runs `ffmpeg -version`; a spawn failure, non-zero exit or a run longer
    than timeout seconds all count as unavailable.

    Returns:
        True if FFmpeg is available, False otherwise
    """
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.warning(f"FFmpeg not available: {e}")
        return False

    try:
        return_code = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"FFmpeg availability check timed out after {timeout}s")
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        return False

    if return_code != 0:
        logger.warning(f"FFmpeg availability check exited with code {return_code}")
    return return_code == 0
