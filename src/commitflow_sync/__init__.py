"""
CommitFlow Sync - offline-first synchronization core for CommitFlow

A durable queue of optimistic mutations with retrying flushes, temporary to
canonical identifier reconciliation and a dead-letter store.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

__author__ = "CommitFlow Team"


def _read_version_from_pyproject() -> Optional[str]:
    """Read the version from pyproject.toml in the repository root.

    Returns None if the file is missing or has no version.
    """
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if not pyproject_path.exists():
        return None

    try:
        import re

        content = pyproject_path.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"", content, flags=re.MULTILINE)
        if m:
            return m.group(1)
    except OSError:
        pass

    return None


def _resolve_version() -> str:
    # Prefer installed package version metadata
    try:
        from importlib.metadata import PackageNotFoundError, version

        return version("commitflow-sync")
    except PackageNotFoundError:
        v = _read_version_from_pyproject()
        if v:
            return v
        return "0.0.0"


__version__ = _resolve_version()

from .config import SyncConfig  # noqa: E402
from .core import (  # noqa: E402
    EntityMirror,
    FileStorage,
    HttpRemoteApi,
    MemoryStorage,
    SyncEngine,
)

__all__ = [
    "__version__",
    "__author__",
    "SyncConfig",
    "SyncEngine",
    "EntityMirror",
    "HttpRemoteApi",
    "FileStorage",
    "MemoryStorage",
]
