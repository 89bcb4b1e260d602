"""
Filesystem access for the plugin loader.

Glob matching and file reads sit behind FileSource so the loader's parsing
logic can run against an in-memory double in tests.
"""

from pathlib import Path
from typing import Protocol


class FileSource(Protocol):
    def exists(self, path: Path) -> bool: ...

    def is_dir(self, path: Path) -> bool: ...

    def list_dirs(self, path: Path) -> list[Path]: ...

    def list_files_matching(self, root: Path, pattern: str) -> list[Path]: ...

    def read_text(self, path: Path) -> str: ...


class LocalFileSource:
    """FileSource backed by the real filesystem."""

    def exists(self, path: Path) -> bool:
        return path.exists()

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def list_dirs(self, path: Path) -> list[Path]:
        if not path.is_dir():
            return []
        return sorted(entry for entry in path.iterdir() if entry.is_dir())

    def list_files_matching(self, root: Path, pattern: str) -> list[Path]:
        """Files under root matching a glob pattern, sorted. Bad patterns match nothing."""
        try:
            return sorted(p for p in root.glob(pattern) if p.is_file())
        except (ValueError, NotImplementedError):
            return []

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")
