"""
Test doubles and plugin directory builders shared across the unit tests.
"""

import fnmatch
import json
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Union

# ---------------------------------------------------------------------------
# In-memory filesystem
# ---------------------------------------------------------------------------

def _match_parts(parts: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_parts(parts[i:], rest) for i in range(len(parts) + 1))
    return bool(parts) and fnmatch.fnmatchcase(parts[0], head) and _match_parts(parts[1:], rest)


class MemoryFileSource:
    """FileSource double: a dict of path → text plus a set of unreadable paths."""

    def __init__(self, files: Optional[dict[Union[str, Path], str]] = None):
        self.files: dict[Path, str] = {Path(p): text for p, text in (files or {}).items()}
        self.unreadable: set[Path] = set()

    def add(self, path: Union[str, Path], text: str) -> None:
        self.files[Path(path)] = text

    def _dirs(self) -> set[Path]:
        dirs: set[Path] = set()
        for path in self.files:
            dirs.update(path.parents)
        return dirs

    def exists(self, path: Path) -> bool:
        return path in self.files or path in self._dirs()

    def is_dir(self, path: Path) -> bool:
        return path in self._dirs()

    def list_dirs(self, path: Path) -> list[Path]:
        return sorted(d for d in self._dirs() if d.parent == path)

    def list_files_matching(self, root: Path, pattern: str) -> list[Path]:
        wanted = PurePosixPath(pattern).parts
        matched = []
        for path in self.files:
            try:
                relative = path.relative_to(root)
            except ValueError:
                continue
            if _match_parts(relative.parts, wanted):
                matched.append(path)
        return sorted(matched)

    def read_text(self, path: Path) -> str:
        if path in self.unreadable:
            raise PermissionError(f"Permission denied: '{path}'")
        if path not in self.files:
            raise FileNotFoundError(f"No such file: '{path}'")
        return self.files[path]


# ---------------------------------------------------------------------------
# Plugin fixtures
# ---------------------------------------------------------------------------

def write_plugin(
    plugins_dir: Path,
    dir_name: str,
    manifest: Optional[dict[str, Any]] = None,
    skills: Optional[dict[str, str]] = None,
    commands: Optional[dict[str, str]] = None,
    connectors: Union[dict[str, Any], str, None] = None,
    local_config: Optional[str] = None,
) -> Path:
    """Write a plugin directory. Skill keys ending in /SKILL.md create directory skills."""
    root = plugins_dir / dir_name
    (root / ".claude-plugin").mkdir(parents=True, exist_ok=True)
    data = {"name": dir_name.title(), "version": "1.0.0", "description": f"{dir_name} plugin"}
    if manifest is not None:
        data = manifest
    (root / ".claude-plugin" / "plugin.json").write_text(json.dumps(data))

    for name, text in (skills or {}).items():
        path = root / "skills" / (name if name.endswith(".md") else f"{name}.md")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)

    for name, text in (commands or {}).items():
        path = root / "commands" / f"{name}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)

    if connectors is not None:
        body = connectors if isinstance(connectors, str) else json.dumps(connectors)
        (root / ".mcp.json").write_text(body)

    if local_config is not None:
        (root / f"{dir_name}.local.md").write_text(local_config)

    return root


