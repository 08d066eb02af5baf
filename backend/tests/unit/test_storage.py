"""
Unit tests for storage module.

Tests path handling for render working directories and public assets, data
URI staging, upload type validation and output promotion.
"""

import base64
import errno
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from songvideo.core.storage import (
    get_video_output_path,
    get_video_url,
    get_work_dir,
    promote_output,
    remove_work_dir,
    resolve_public_path,
    validate_project_id,
    validate_video_extension,
    write_data_uri,
)


class TestValidateProjectId:
    """Tests for project ID path-component validation."""

    def test_uuid(self):
        assert validate_project_id("550e8400-e29b-41d4-a716-446655440000") is True

    def test_short_token(self):
        assert validate_project_id("p1") is True

    @pytest.mark.parametrize("value", ["", "../p1", "p1/x", "p 1", "a" * 65, None])
    def test_rejected(self, value):
        assert validate_project_id(value) is False


class TestResolvePublicPath:
    """Tests for server-relative references under the public root."""

    def test_maps_under_root(self, tmp_path: Path):
        path = resolve_public_path("/audio/s1.mp3", tmp_path)
        assert path == (tmp_path / "audio" / "s1.mp3").resolve()

    def test_query_string_ignored(self, tmp_path: Path):
        path = resolve_public_path("/audio/s1.mp3?v=2", tmp_path)
        assert path.name == "s1.mp3"

    def test_traversal_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Path traversal"):
            resolve_public_path("/../secrets.txt", tmp_path / "public")

    def test_sibling_prefix_rejected(self, tmp_path: Path):
        """A sibling directory sharing the root's name prefix is still outside."""
        with pytest.raises(ValueError):
            resolve_public_path("/../public-other/x.mp3", tmp_path / "public")


class TestRenderPaths:
    """Tests for working directory and output naming."""

    def test_work_dir(self, tmp_path: Path):
        assert get_work_dir(tmp_path, "p1") == (tmp_path / "p1").resolve()

    def test_work_dir_rejects_unsafe_id(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Invalid project ID"):
            get_work_dir(tmp_path, "../etc")

    def test_output_path(self, tmp_path: Path):
        assert get_video_output_path(tmp_path, "p1") == (tmp_path / "videos" / "p1.mp4").resolve()

    def test_output_path_with_extension(self, tmp_path: Path):
        assert get_video_output_path(tmp_path, "p1", ".webm").name == "p1.webm"

    def test_video_url(self):
        assert get_video_url("p1") == "/videos/p1.mp4"
        assert get_video_url("p1", ".mov") == "/videos/p1.mov"


class TestValidateVideoExtension:

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("render.mp4", ".mp4"),
            ("render.WEBM", ".webm"),
            ("clip.mov", ".mov"),
            ("render.avi", None),
            ("render", None),
            ("", None),
        ],
    )
    def test_extensions(self, filename, expected):
        assert validate_video_extension(filename) == expected


class TestWriteDataUri:
    """Tests for decoding base64 data URIs into the working directory."""

    def test_audio(self, tmp_path: Path):
        payload = base64.b64encode(b"ID3audio").decode()

        path = write_data_uri(f"data:audio/mpeg;base64,{payload}", tmp_path / "work", "audio")

        assert path == tmp_path / "work" / "audio.mp3"
        assert path.read_bytes() == b"ID3audio"

    def test_unknown_media_type(self, tmp_path: Path):
        payload = base64.b64encode(b"raw").decode()

        path = write_data_uri(f"data:application/x-unknown-thing;base64,{payload}", tmp_path, "blob")

        assert path.read_bytes() == b"raw"

    def test_not_base64(self, tmp_path: Path):
        with pytest.raises(ValueError, match="expected base64"):
            write_data_uri("data:text/plain,hello", tmp_path, "x")

    def test_missing_payload_separator(self, tmp_path: Path):
        with pytest.raises(ValueError):
            write_data_uri("data:audio/mpeg;base64", tmp_path, "x")


class TestPromoteOutput:
    """Tests for moving a finished render into the public folder."""

    def test_rename(self, tmp_path: Path):
        source = tmp_path / "work" / "output.mp4"
        source.parent.mkdir()
        source.write_bytes(b"new video")
        destination = tmp_path / "public" / "videos" / "p1.mp4"

        promote_output(source, destination)

        assert destination.read_bytes() == b"new video"
        assert not source.exists()

    def test_replaces_existing(self, tmp_path: Path):
        source = tmp_path / "output.mp4"
        source.write_bytes(b"second render")
        destination = tmp_path / "videos" / "p1.mp4"
        destination.parent.mkdir()
        destination.write_bytes(b"first render")

        promote_output(source, destination)

        assert destination.read_bytes() == b"second render"

    def test_cross_device_fallback(self, tmp_path: Path):
        """When rename fails with EXDEV, copy to a sibling temp file and rename that."""
        source = tmp_path / "output.mp4"
        source.write_bytes(b"video bytes")
        destination = tmp_path / "videos" / "p1.mp4"
        real_replace = os.replace
        calls = []

        def fake_replace(src, dst):
            calls.append((Path(src), Path(dst)))
            if Path(src) == source:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        with patch("songvideo.core.storage.os.replace", side_effect=fake_replace):
            promote_output(source, destination)

        assert destination.read_bytes() == b"video bytes"
        assert not source.exists()
        assert calls[1][0].parent == destination.parent
        assert list(destination.parent.glob(".*.tmp")) == []

    def test_other_errors_propagate(self, tmp_path: Path):
        source = tmp_path / "output.mp4"
        source.write_bytes(b"x")

        with patch(
            "songvideo.core.storage.os.replace",
            side_effect=OSError(errno.EACCES, "Permission denied"),
        ):
            with pytest.raises(OSError):
                promote_output(source, tmp_path / "videos" / "p1.mp4")

        assert source.exists()


class TestRemoveWorkDir:

    def test_removes_tree(self, tmp_path: Path):
        work_dir = tmp_path / "p1"
        (work_dir / "nested").mkdir(parents=True)
        (work_dir / "nested" / "audio.mp3").write_bytes(b"x")

        remove_work_dir(work_dir)

        assert not work_dir.exists()

    def test_missing_dir_is_noop(self, tmp_path: Path):
        remove_work_dir(tmp_path / "never-created")

    def test_failure_is_logged_not_raised(self, tmp_path: Path, caplog):
        work_dir = tmp_path / "p1"
        work_dir.mkdir()

        with patch("songvideo.core.storage.shutil.rmtree", side_effect=OSError("busy")):
            remove_work_dir(work_dir)

        assert "Failed to remove working directory" in caplog.text
