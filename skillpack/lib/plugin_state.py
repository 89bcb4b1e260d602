"""
Persisted enabled/disabled flags, keyed by plugin id.

The registry reads the store once at construction (and on reload) and
writes it on every enable/disable call.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import yaml

logger = logging.getLogger(__name__)


class PluginStateStore(Protocol):
    def load(self) -> dict[str, bool]: ...

    def set_enabled(self, plugin_id: str, enabled: bool) -> None: ...


class MemoryStateStore:
    def __init__(self, initial: Optional[dict[str, bool]] = None):
        self.values: dict[str, bool] = dict(initial or {})

    def load(self) -> dict[str, bool]:
        return dict(self.values)

    def set_enabled(self, plugin_id: str, enabled: bool) -> None:
        self.values[plugin_id] = enabled


class YamlStateStore:
    """State store persisted as a YAML mapping ``{plugin_id: bool}``."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, bool]:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to read plugin state from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"plugin state file is not a mapping, ignoring: {self.path}")
            return {}
        return {str(k): bool(v) for k, v in data.items()}

    def set_enabled(self, plugin_id: str, enabled: bool) -> None:
        data = self.load()
        data[plugin_id] = enabled
        self._write(data)

    def _write(self, data: dict[str, bool]) -> None:
        """Atomically replace the state file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp", prefix=".state-")
        closed = False
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            closed = True
            os.replace(tmp_path, self.path)
        except Exception:
            if not closed:
                os.close(fd)
            if Path(tmp_path).exists():
                os.unlink(tmp_path)
            raise
