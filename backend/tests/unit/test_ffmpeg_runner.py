"""
Tests for the FFmpeg runner.

Tests cover:
- Progress marker parsing on literal FFmpeg status lines
- Line splitting on carriage returns and newlines
- Non-zero exit, spawn failure and timeout reporting
- Process termination on task cancellation
- Availability check
"""

import asyncio
import time

import pytest

from songvideo.tasks.ffmpeg_runner import (
    DIAGNOSTIC_TAIL_CHARS,
    EncoderError,
    check_encoder_available,
    parse_elapsed_seconds,
    run_encoder,
)
from tests.conftest import python_script


# =============================================================================
# parse_elapsed_seconds
# =============================================================================


class TestParseElapsedSeconds:
    """Tests for time=HH:MM:SS.ff extraction."""

    def test_typical_status_line(self):
        line = (
            "frame=  120 fps= 30 q=28.0 size=     256kB time=00:00:04.00 "
            "bitrate= 524.3kbits/s speed=1.01x"
        )
        assert parse_elapsed_seconds(line) == pytest.approx(4.0)

    def test_hours_minutes_and_fraction(self):
        line = "size=  102400kB time=01:02:03.50 bitrate=1000.0kbits/s"
        assert parse_elapsed_seconds(line) == pytest.approx(3723.5)

    def test_space_after_equals(self):
        assert parse_elapsed_seconds("time= 00:00:12.34 bitrate=N/A") == pytest.approx(12.34)

    def test_not_available(self):
        assert parse_elapsed_seconds("frame=    0 fps=0.0 q=0.0 size=N/A time=N/A bitrate=N/A") is None

    def test_negative_timestamp(self):
        assert parse_elapsed_seconds("size=       0kB time=-00:00:00.02 bitrate=N/A") is None

    def test_no_marker(self):
        assert parse_elapsed_seconds("Input #0, mp3, from 'audio.mp3':") is None
        assert parse_elapsed_seconds("  Duration: 00:03:15.20, start: 0.025057, bitrate: 320 kb/s") is None
        assert parse_elapsed_seconds("") is None

    def test_last_marker_wins(self):
        chunk = "time=00:00:01.00 bitrate=1k\rtime=00:00:02.50 bitrate=1k"
        assert parse_elapsed_seconds(chunk) == pytest.approx(2.5)


# =============================================================================
# run_encoder
# =============================================================================


class TestRunEncoder:
    """Tests for running an encoder process."""

    @pytest.mark.asyncio
    async def test_lines_split_on_carriage_return_and_newline(self):
        code = (
            "import sys\n"
            "sys.stderr.write('Input #0, mp3\\n')\n"
            "sys.stderr.write('frame=1 time=00:00:01.00\\rframe=2 time=00:00:02.00\\r')\n"
            "sys.stderr.write('\\nvideo:10kB audio:5kB\\n')\n"
        )
        lines = []

        await run_encoder(python_script(code), lines.append)

        assert lines == [
            "Input #0, mp3",
            "frame=1 time=00:00:01.00",
            "frame=2 time=00:00:02.00",
            "video:10kB audio:5kB",
        ]

    @pytest.mark.asyncio
    async def test_async_callback(self):
        code = "import sys; sys.stderr.write('time=00:00:03.00\\n')"
        seen = []

        async def on_line(line):
            await asyncio.sleep(0)
            seen.append(parse_elapsed_seconds(line))

        await run_encoder(python_script(code), on_line)

        assert seen == [pytest.approx(3.0)]

    @pytest.mark.asyncio
    async def test_trailing_line_without_terminator(self):
        code = "import sys; sys.stderr.write('last line')"
        lines = []

        await run_encoder(python_script(code), lines.append)

        assert lines == ["last line"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_tail(self):
        code = (
            "import sys\n"
            "sys.stderr.write('Unknown encoder libfoo\\n')\n"
            "sys.exit(3)\n"
        )

        with pytest.raises(EncoderError) as exc_info:
            await run_encoder(python_script(code))

        assert exc_info.value.exit_code == 3
        assert "Unknown encoder libfoo" in exc_info.value.diagnostic_tail
        assert "code 3" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_diagnostic_tail_is_bounded(self):
        code = (
            "import sys\n"
            "for i in range(500):\n"
            "    sys.stderr.write('x' * 100 + '\\n')\n"
            "sys.exit(1)\n"
        )

        with pytest.raises(EncoderError) as exc_info:
            await run_encoder(python_script(code))

        assert len(exc_info.value.diagnostic_tail) <= DIAGNOSTIC_TAIL_CHARS

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path):
        with pytest.raises(EncoderError) as exc_info:
            await run_encoder([str(tmp_path / "no-such-ffmpeg")])

        assert exc_info.value.exit_code is None
        assert "Failed to start FFmpeg" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        started = time.monotonic()

        with pytest.raises(EncoderError) as exc_info:
            await run_encoder(python_script("import time; time.sleep(30)"), timeout=0.5)

        assert "timeout" in exc_info.value.message
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self):
        task = asyncio.create_task(
            run_encoder(python_script("import time; time.sleep(30)"))
        )
        await asyncio.sleep(0.5)
        started = time.monotonic()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_callback_error_propagates(self):
        code = "import sys, time; sys.stderr.write('time=00:00:01.00\\n'); sys.stderr.flush(); time.sleep(30)"

        def on_line(line):
            raise RuntimeError("store unavailable")

        with pytest.raises(RuntimeError, match="store unavailable"):
            await asyncio.wait_for(run_encoder(python_script(code), on_line), timeout=10)


# =============================================================================
# check_encoder_available
# =============================================================================


class TestCheckEncoderAvailable:
    """Tests for the `ffmpeg -version` probe."""

    @pytest.mark.asyncio
    async def test_available(self, script_factory):
        ffmpeg = script_factory("ffmpeg", "echo 'ffmpeg version 6.1'")
        assert await check_encoder_available(ffmpeg) is True

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, script_factory):
        ffmpeg = script_factory("ffmpeg", "exit 1")
        assert await check_encoder_available(ffmpeg) is False

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        assert await check_encoder_available(str(tmp_path / "missing-ffmpeg")) is False

    @pytest.mark.asyncio
    async def test_hanging_binary_times_out(self, script_factory):
        ffmpeg = script_factory("ffmpeg", "exec sleep 30")
        started = time.monotonic()

        assert await check_encoder_available(ffmpeg, timeout=0.3) is False
        assert time.monotonic() - started < 10
