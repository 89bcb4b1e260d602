"""
Credential resolution for connector ${VAR} placeholders.

Lookup precedence is fixed:
1. The credential store ({home}/credentials.yaml, flat VAR: value mapping)
2. The process environment
3. Unresolved: the caller marks the connection unavailable

Security notes:
- Values are never logged; only key names appear in debug output
- Blocked vars prevent overriding PATH and interpreter internals
- mtime caching avoids re-reading the store on every merge
"""

import logging
import os
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol

import yaml

logger = logging.getLogger(__name__)

# Env vars that must never be supplied by the credential store.
_BLOCKED_ENV_VARS: frozenset[str] = frozenset({
    # Path / loader hijacking
    "PATH",
    "LD_PRELOAD",
    "LD_LIBRARY_PATH",
    # User identity
    "HOME",
    "USER",
    "SHELL",
    # Interpreter control
    "PYTHONPATH",
    "PYTHONSTARTUP",
    "PYTHONINSPECT",
    "NODE_OPTIONS",
})


class CredentialStore(Protocol):
    def get(self, var_name: str) -> Optional[str]: ...


class YamlCredentialStore:
    """Credential store backed by a flat YAML mapping file."""

    def __init__(self, path: Path):
        self.path = path
        self._cache: Optional[dict[str, str]] = None
        self._cache_mtime: float = 0.0

    def load(self) -> dict[str, str]:
        """Return all usable credentials; empty if the file is missing or unparsable."""
        if not self.path.exists():
            return {}

        mtime = self.path.stat().st_mtime
        if self._cache is not None and mtime == self._cache_mtime:
            return self._cache

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to read credentials from {self.path}: {e}")
            return self._cache or {}

        if not isinstance(data, dict):
            logger.warning(f"credentials file is not a mapping, ignoring: {self.path}")
            return {}

        result: dict[str, str] = {
            k: str(v)
            for k, v in data.items()
            if isinstance(k, str)
            and k
            and isinstance(v, (str, int, float))
            and k not in _BLOCKED_ENV_VARS
        }
        logger.debug(f"Loaded credential keys: {sorted(result)}")
        self._cache, self._cache_mtime = result, mtime
        return result

    def get(self, var_name: str) -> Optional[str]:
        return self.load().get(var_name)


class MemoryCredentialStore:
    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(values or {})

    def get(self, var_name: str) -> Optional[str]:
        return self._values.get(var_name)

    def set(self, var_name: str, value: str) -> None:
        self._values[var_name] = value


Resolver = Callable[[str], Optional[str]]


class EnvResolver:
    """Resolve a variable name through the credential store, then the environment."""

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.environ = environ if environ is not None else os.environ

    def __call__(self, var_name: str) -> Optional[str]:
        if self.store is not None:
            value = self.store.get(var_name)
            if value is not None:
                return value
        return self.environ.get(var_name)
