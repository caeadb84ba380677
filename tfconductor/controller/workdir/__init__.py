"""Workspace working directories and their garbage collector."""

from tfconductor.controller.workdir.gc import GarbageCollector, is_uid
from tfconductor.controller.workdir.paths import WorkDirPaths

__all__ = ["GarbageCollector", "WorkDirPaths", "is_uid"]
