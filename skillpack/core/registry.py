"""
Plugin registry.

The registry owns the set of loaded plugins and their enabled flags. State
is published as immutable RegistrySnapshot objects: every mutation builds a
new snapshot and swaps the reference, so readers holding an older snapshot
never observe a half-applied change. Mutations (enable, disable, reload)
are serialized by a lock; reads never take it.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Optional

from skillpack.core.loader import discover_plugins
from skillpack.lib.file_source import FileSource
from skillpack.lib.plugin_state import MemoryStateStore, PluginStateStore
from skillpack.lib.typed_errors import ErrorCode, PluginNotFoundError
from skillpack.models.plugin import Command, ConnectorDeclaration, Plugin, PluginIssue, Skill

logger = logging.getLogger(__name__)


class RegistrySnapshot:
    """An immutable, internally consistent view of all plugins."""

    def __init__(self, plugins: Iterable[Plugin] = (), version: int = 0):
        ordered: list[Plugin] = []
        by_id: dict[str, Plugin] = {}
        warnings: list[PluginIssue] = []

        for plugin in plugins:
            if plugin.id in by_id:
                message = (
                    f"Duplicate plugin id '{plugin.id}' at {plugin.path}; "
                    f"keeping {by_id[plugin.id].path}"
                )
                logger.warning(message)
                warnings.append(PluginIssue(
                    code=ErrorCode.DUPLICATE_PLUGIN_ID, message=message, path=plugin.path
                ))
                continue
            by_id[plugin.id] = plugin
            ordered.append(plugin)

        commands: dict[str, Command] = {}
        for plugin in ordered:
            if not plugin.is_active:
                continue
            for command in plugin.commands:
                name = command.qualified_name
                if name in commands:
                    # First registered wins; never fail because of a duplicate
                    message = (
                        f"Duplicate command '{name}' in {command.path}; "
                        f"keeping {commands[name].path}"
                    )
                    logger.warning(message)
                    warnings.append(PluginIssue(
                        code=ErrorCode.DUPLICATE_FULLY_QUALIFIED_COMMAND,
                        message=message,
                        path=command.path,
                    ))
                    continue
                commands[name] = command

        self._plugins = tuple(ordered)
        self._by_id = MappingProxyType(by_id)
        self._commands = MappingProxyType(commands)
        self.warnings: tuple[PluginIssue, ...] = tuple(warnings)
        self.version = version

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._by_id

    def get_plugin(self, plugin_id: str) -> Optional[Plugin]:
        return self._by_id.get(plugin_id)

    def all_plugins(self) -> list[Plugin]:
        """All plugins in registration order."""
        return list(self._plugins)

    def enabled_plugins(self) -> list[Plugin]:
        """Enabled, healthy plugins in registration order."""
        return [p for p in self._plugins if p.is_active]

    def get_command_handler(self, qualified_name: str) -> Optional[Command]:
        """Exact ``plugin_id:command`` lookup over enabled plugins."""
        return self._commands.get(qualified_name)

    def all_commands(self) -> list[Command]:
        return list(self._commands.values())

    def get_active_skills(self) -> list[Skill]:
        return [skill for plugin in self.enabled_plugins() for skill in plugin.skills]

    def get_active_connector_sets(self) -> list[tuple[str, dict[str, ConnectorDeclaration]]]:
        return [(plugin.id, dict(plugin.connectors)) for plugin in self.enabled_plugins()]

    def replace(self, plugin: Plugin) -> "RegistrySnapshot":
        """New snapshot with one plugin record swapped, order preserved."""
        return RegistrySnapshot(
            [plugin if p.id == plugin.id else p for p in self._plugins],
            version=self.version + 1,
        )


class RegistryChangeKind(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    RELOADED = "reloaded"


@dataclass(frozen=True)
class RegistryChange:
    kind: RegistryChangeKind
    plugin_ids: tuple[str, ...]
    snapshot: RegistrySnapshot


RegistryListener = Callable[[RegistryChange], None]


class PluginRegistry:
    """Single owner of the published plugin snapshot."""

    def __init__(
        self,
        plugins_dir: Path,
        state_store: Optional[PluginStateStore] = None,
        files: Optional[FileSource] = None,
        default_enabled: bool = False,
    ):
        self.plugins_dir = plugins_dir
        self.state_store = state_store if state_store is not None else MemoryStateStore()
        self.files = files
        self.default_enabled = default_enabled
        self._lock = threading.RLock()
        self._listeners: list[RegistryListener] = []
        self._snapshot = self._load_snapshot(version=0)

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def get_plugin(self, plugin_id: str) -> Optional[Plugin]:
        return self._snapshot.get_plugin(plugin_id)

    def all_plugins(self) -> list[Plugin]:
        return self._snapshot.all_plugins()

    def enabled_plugins(self) -> list[Plugin]:
        return self._snapshot.enabled_plugins()

    def get_command_handler(self, qualified_name: str) -> Optional[Command]:
        return self._snapshot.get_command_handler(qualified_name)

    def get_active_skills(self) -> list[Skill]:
        return self._snapshot.get_active_skills()

    def get_active_connector_sets(self) -> list[tuple[str, dict[str, ConnectorDeclaration]]]:
        return self._snapshot.get_active_connector_sets()

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: RegistryChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Registry listener {listener!r} failed on {change.kind.value}: {e}")

    # ------------------------------------------------------------------
    # Mutations (serialized)
    # ------------------------------------------------------------------

    def enable(self, plugin_id: str) -> Plugin:
        return self._set_enabled(plugin_id, True)

    def disable(self, plugin_id: str) -> Plugin:
        return self._set_enabled(plugin_id, False)

    def _set_enabled(self, plugin_id: str, enabled: bool) -> Plugin:
        with self._lock:
            current = self._snapshot.get_plugin(plugin_id)
            if current is None:
                raise PluginNotFoundError(plugin_id)

            self.state_store.set_enabled(plugin_id, enabled)
            if current.enabled != enabled:
                self._snapshot = self._snapshot.replace(current.with_enabled(enabled))
                logger.info(f"Plugin '{plugin_id}' {'enabled' if enabled else 'disabled'}")

            kind = RegistryChangeKind.ENABLED if enabled else RegistryChangeKind.DISABLED
            self._notify(RegistryChange(kind, (plugin_id,), self._snapshot))
            return self._snapshot.get_plugin(plugin_id)

    def reload(self) -> RegistrySnapshot:
        """Re-discover plugins from disk and publish a fresh snapshot."""
        with self._lock:
            snapshot = self._load_snapshot(version=self._snapshot.version + 1)
            self._snapshot = snapshot
            logger.info(f"Registry reloaded: {len(snapshot)} plugins")
            self._notify(RegistryChange(
                RegistryChangeKind.RELOADED,
                tuple(p.id for p in snapshot.all_plugins()),
                snapshot,
            ))
            return snapshot

    def _load_snapshot(self, version: int) -> RegistrySnapshot:
        flags = self.state_store.load()
        plugins = [
            plugin.with_enabled(flags.get(plugin.id, self.default_enabled))
            for plugin in discover_plugins(self.plugins_dir, self.files)
        ]
        return RegistrySnapshot(plugins, version=version)
