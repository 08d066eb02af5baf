"""SongVideo: render generated songs into shareable MP4 videos."""

__version__ = "0.1.0"
