"""
Connection models.

A ConnectionRegistry is the merged view of every enabled plugin's connector
declarations, keyed by ``plugin_id:category``. Registries are immutable
snapshots; the merge engine publishes a new one on every change.
"""

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from skillpack.lib.typed_errors import ErrorCode
from skillpack.models.plugin import ConnectorDeclaration


def namespaced_key(plugin_id: str, category: str) -> str:
    return f"{plugin_id}:{category}"


class ConnectionState(str, Enum):
    UNRESOLVED = "unresolved"
    STARTING = "starting"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class ConnectionStatus(BaseModel):
    state: ConnectionState
    reason: Optional[str] = None
    code: Optional[ErrorCode] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def unresolved(cls) -> "ConnectionStatus":
        return cls(state=ConnectionState.UNRESOLVED)

    @classmethod
    def starting(cls) -> "ConnectionStatus":
        return cls(state=ConnectionState.STARTING)

    @classmethod
    def available(cls) -> "ConnectionStatus":
        return cls(state=ConnectionState.AVAILABLE)

    @classmethod
    def unavailable(
        cls, reason: str, code: ErrorCode = ErrorCode.CONNECTOR_START_FAILURE
    ) -> "ConnectionStatus":
        return cls(state=ConnectionState.UNAVAILABLE, reason=reason, code=code)

    @property
    def is_available(self) -> bool:
        return self.state == ConnectionState.AVAILABLE

    def __str__(self) -> str:
        if self.state == ConnectionState.UNAVAILABLE and self.reason:
            return f"unavailable ({self.reason})"
        return self.state.value


class ConnectionEntry(BaseModel):
    """One namespaced connection with its resolved declaration and live status."""

    key: str
    plugin_id: str
    category: str
    declaration: ConnectorDeclaration
    # Declaration with ${VAR} placeholders substituted; None while unresolvable
    resolved: Optional[ConnectorDeclaration] = None
    status: ConnectionStatus = Field(default_factory=ConnectionStatus.unresolved)
    transition: int = 0
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def tool_name(self) -> str:
        return self.declaration.tool_name or self.category

    @property
    def resolved_env(self) -> dict[str, str]:
        return dict(self.resolved.env) if self.resolved else {}


class ConnectionRegistry:
    """Read-only mapping of namespaced key → ConnectionEntry."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Optional[Mapping[str, ConnectionEntry]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    @property
    def entries(self) -> Mapping[str, ConnectionEntry]:
        return self._entries

    def get(self, key: str) -> Optional[ConnectionEntry]:
        return self._entries.get(key)

    def availability(self, key: str) -> ConnectionStatus:
        """Status for a key; undeclared keys are unresolved."""
        entry = self._entries.get(key)
        return entry.status if entry else ConnectionStatus.unresolved()

    def all_available(self) -> list[tuple[str, ConnectionStatus]]:
        return [(key, entry.status) for key, entry in self._entries.items()]

    def for_plugin(self, plugin_id: str) -> list[ConnectionEntry]:
        return [e for e in self._entries.values() if e.plugin_id == plugin_id]

    def tool_name(self, plugin_id: str, category: str) -> Optional[str]:
        """Tool name for an available connection, None otherwise."""
        entry = self._entries.get(namespaced_key(plugin_id, category))
        if entry is None or not entry.status.is_available:
            return None
        return entry.tool_name

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
