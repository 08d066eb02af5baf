"""Domain services."""

from .project_store import ProjectStateStore, clamp_progress

__all__ = ["ProjectStateStore", "clamp_progress"]
