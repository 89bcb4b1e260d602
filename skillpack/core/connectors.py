"""
Connector merge engine.

Merges every enabled plugin's connector declarations into one
ConnectionRegistry keyed by ``plugin_id:category``. Two plugins declaring the
same category get two entries; each plugin owns its own instance.

${VAR} placeholders are resolved through the injected resolver (credential
store, then process environment). A declaration that cannot be resolved is
marked unavailable with MissingCredential; resolution never raises.

Process management belongs to the tool runtime. This engine only requests
starts and applies the status notifications the runtime delivers. External
notifications carry a per-connection transition counter; anything not newer
than the last applied counter is discarded, so duplicates and out-of-order
deliveries are harmless.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from skillpack.core.placeholders import resolve_declaration
from skillpack.core.registry import RegistryChange
from skillpack.lib.credentials import EnvResolver, Resolver
from skillpack.lib.typed_errors import ErrorCode
from skillpack.models.connection import (
    ConnectionEntry,
    ConnectionRegistry,
    ConnectionState,
    ConnectionStatus,
    namespaced_key,
)
from skillpack.models.plugin import ConnectorDeclaration

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, ConnectionStatus, int], None]


class ToolRuntime(Protocol):
    """The external collaborator that actually runs tool servers."""

    async def start(self, key: str, declaration: ConnectorDeclaration) -> ConnectionStatus: ...

    def subscribe(self, callback: StatusCallback) -> None: ...


class ConnectorMergeEngine:
    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        tool_runtime: Optional[ToolRuntime] = None,
    ):
        self.resolver = resolver or EnvResolver()
        self.tool_runtime = tool_runtime
        self._lock = threading.Lock()
        self._connections = ConnectionRegistry()
        self._pending: set[asyncio.Task] = set()
        if tool_runtime is not None:
            tool_runtime.subscribe(self.apply_status)

    @property
    def connections(self) -> ConnectionRegistry:
        return self._connections

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(
        self, active_sets: Iterable[tuple[str, dict[str, ConnectorDeclaration]]]
    ) -> ConnectionRegistry:
        """Rebuild the connection registry from the enabled plugins' connector sets.

        Entries whose declaration and resolved values are unchanged keep their
        live status; everything else starts over as unresolved.
        """
        with self._lock:
            previous = self._connections
            entries: dict[str, ConnectionEntry] = {}

            for plugin_id, connectors in active_sets:
                for category, declaration in connectors.items():
                    key = namespaced_key(plugin_id, category)
                    entries[key] = self._merge_entry(
                        key, plugin_id, category, declaration, previous.get(key)
                    )

            removed = [key for key in previous if key not in entries]
            self._connections = ConnectionRegistry(entries)

        if removed:
            logger.info(f"Removed connections: {removed}")
        logger.debug(f"Merged {len(entries)} connections")
        return self._connections

    def _merge_entry(
        self,
        key: str,
        plugin_id: str,
        category: str,
        declaration: ConnectorDeclaration,
        previous: Optional[ConnectionEntry],
    ) -> ConnectionEntry:
        resolved, missing = resolve_declaration(declaration, self.resolver)

        if resolved is None:
            reason = f"missing credentials: {', '.join(missing)}"
            if (
                previous is not None
                and previous.declaration == declaration
                and previous.status.reason == reason
            ):
                return previous
            logger.warning(f"Connection '{key}' unavailable, {reason}")
            return ConnectionEntry(
                key=key,
                plugin_id=plugin_id,
                category=category,
                declaration=declaration,
                status=ConnectionStatus.unavailable(reason, ErrorCode.MISSING_CREDENTIAL),
                transition=previous.transition if previous else 0,
            )

        if (
            previous is not None
            and previous.declaration == declaration
            and previous.resolved == resolved
        ):
            return previous

        return ConnectionEntry(
            key=key,
            plugin_id=plugin_id,
            category=category,
            declaration=declaration,
            resolved=resolved,
            transition=previous.transition if previous else 0,
        )

    def on_registry_change(self, change: RegistryChange) -> None:
        """Registry listener: re-merge from the newly published snapshot."""
        self.merge(change.snapshot.get_active_connector_sets())

    # ------------------------------------------------------------------
    # Read contracts
    # ------------------------------------------------------------------

    def availability(self, key: str) -> ConnectionStatus:
        return self._connections.availability(key)

    def all_available(self) -> list[tuple[str, ConnectionStatus]]:
        return self._connections.all_available()

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _replace(self, key: str, entry: ConnectionEntry) -> None:
        # Caller holds the lock. Only this key changes.
        entries = dict(self._connections.entries)
        entries[key] = entry
        self._connections = ConnectionRegistry(entries)

    def apply_status(self, key: str, status: ConnectionStatus, transition: int) -> bool:
        """Apply a status notification from the tool runtime.

        Returns False when the notification is stale (counter not newer than
        the last applied one) or the key is not part of the registry.
        """
        with self._lock:
            entry = self._connections.get(key)
            if entry is None:
                logger.debug(f"Ignoring status for unknown connection '{key}'")
                return False
            if transition <= entry.transition:
                logger.debug(
                    f"Discarding stale status for '{key}' "
                    f"(transition {transition} <= {entry.transition})"
                )
                return False
            self._replace(key, entry.model_copy(update={
                "status": status,
                "transition": transition,
                "updated_at": datetime.now(timezone.utc),
            }))

        if status.state == ConnectionState.UNAVAILABLE:
            logger.warning(f"Connection '{key}' unavailable: {status.reason}")
        else:
            logger.info(f"Connection '{key}' is {status.state.value}")
        return True

    def _set_local_status(self, key: str, status: ConnectionStatus, since: int) -> None:
        """Record a status observed directly, unless a notification superseded it."""
        with self._lock:
            entry = self._connections.get(key)
            if entry is None or entry.transition != since:
                return
            self._replace(key, entry.model_copy(update={
                "status": status,
                "updated_at": datetime.now(timezone.utc),
            }))

    async def start_connection(self, key: str) -> ConnectionStatus:
        """Ask the tool runtime to start one connection and record the outcome."""
        entry = self._connections.get(key)
        if entry is None:
            return ConnectionStatus.unresolved()
        if entry.resolved is None or self.tool_runtime is None:
            return entry.status
        if entry.status.state in (ConnectionState.STARTING, ConnectionState.AVAILABLE):
            return entry.status

        since = entry.transition
        self._set_local_status(key, ConnectionStatus.starting(), since)
        try:
            status = await self.tool_runtime.start(key, entry.resolved)
        except Exception as e:
            logger.warning(f"Failed to start connection '{key}': {e}")
            status = ConnectionStatus.unavailable(str(e) or type(e).__name__)
        self._set_local_status(key, status, since)
        return self.availability(key)

    async def start_plugin_connections(self, plugin_id: str) -> dict[str, ConnectionStatus]:
        """Start every startable connection owned by one plugin."""
        keys = [e.key for e in self._connections.for_plugin(plugin_id)]
        results = await asyncio.gather(*(self.start_connection(key) for key in keys))
        return dict(zip(keys, results))

    def schedule_plugin_start(self, plugin_id: str) -> Optional[asyncio.Task]:
        """Fire-and-forget start for a plugin's connections. Callers never wait on it."""
        if self.tool_runtime is None:
            return None
        task = asyncio.get_running_loop().create_task(self.start_plugin_connections(plugin_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task
