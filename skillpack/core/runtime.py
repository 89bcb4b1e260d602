"""
Runtime wiring.

PluginRuntime owns one instance of each component and connects them:

    Settings → state store, credential store
             → PluginRegistry → ConnectorMergeEngine (re-merges on change)
                              → ContextAssembler (cache dropped on change)
                              → CommandDispatcher

Callers that need a different boundary (tool runtime, model client,
in-memory stores) pass it in; everything else comes from Settings.
"""

import logging
from typing import Optional

from skillpack.config import Settings
from skillpack.core.commands import (
    CommandDispatcher,
    CommandInvocation,
    InputProvider,
    ModelClient,
    SuggestionGroup,
)
from skillpack.core.connectors import ConnectorMergeEngine, ToolRuntime
from skillpack.core.context_assembler import AssembledContext, ContextAssembler
from skillpack.core.registry import PluginRegistry, RegistrySnapshot
from skillpack.lib.credentials import EnvResolver, Resolver, YamlCredentialStore
from skillpack.lib.file_source import FileSource
from skillpack.lib.plugin_state import PluginStateStore, YamlStateStore
from skillpack.models.connection import ConnectionRegistry, ConnectionStatus
from skillpack.models.plugin import Plugin

logger = logging.getLogger(__name__)


class PluginRuntime:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        state_store: Optional[PluginStateStore] = None,
        resolver: Optional[Resolver] = None,
        tool_runtime: Optional[ToolRuntime] = None,
        model_client: Optional[ModelClient] = None,
        files: Optional[FileSource] = None,
    ):
        self.settings = settings or Settings()

        self.registry = PluginRegistry(
            self.settings.plugins_path,
            state_store=state_store or YamlStateStore(self.settings.state_path),
            files=files,
        )
        self.connectors = ConnectorMergeEngine(
            resolver=resolver or EnvResolver(YamlCredentialStore(self.settings.credentials_path)),
            tool_runtime=tool_runtime,
        )
        self.assembler = ContextAssembler(default_budget=self.settings.token_budget)
        self.dispatcher = CommandDispatcher(
            self.registry,
            self.assembler,
            self.connectors,
            model_client=model_client,
            prefix=self.settings.command_prefix,
        )

        # Connections first so the assembler never caches against a stale registry
        self.registry.subscribe(self.connectors.on_registry_change)
        self.registry.subscribe(self.assembler.invalidate)
        self.connectors.merge(self.registry.get_active_connector_sets())

        logger.info(
            f"Plugin runtime ready: {len(self.registry.snapshot)} plugins, "
            f"{len(self.registry.enabled_plugins())} enabled, "
            f"{len(self.connectors.connections)} connections"
        )

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self.registry.snapshot

    @property
    def connections(self) -> ConnectionRegistry:
        return self.connectors.connections

    # --- Registry ---

    def enable(self, plugin_id: str) -> Plugin:
        return self.registry.enable(plugin_id)

    def disable(self, plugin_id: str) -> Plugin:
        return self.registry.disable(plugin_id)

    def reload(self) -> RegistrySnapshot:
        return self.registry.reload()

    # --- Context and commands ---

    def build_context(
        self, conversation_hint: str = "", token_budget: Optional[int] = None
    ) -> AssembledContext:
        return self.assembler.build(
            self.registry.enabled_plugins(),
            self.connectors.connections,
            conversation_hint=conversation_hint,
            token_budget=token_budget,
        )

    def begin_command(self, text: str) -> CommandInvocation:
        return self.dispatcher.begin(text)

    async def dispatch(
        self,
        text: str,
        provider: Optional[InputProvider] = None,
        conversation_hint: str = "",
        token_budget: Optional[int] = None,
    ) -> CommandInvocation:
        return await self.dispatcher.run(
            text,
            provider=provider,
            conversation_hint=conversation_hint,
            token_budget=token_budget,
        )

    def autocomplete(self, text: str) -> list[SuggestionGroup]:
        return self.dispatcher.autocomplete(text)

    def apply_status(self, key: str, status: ConnectionStatus, transition: int) -> bool:
        """Forward a tool-runtime status notification to the merge engine."""
        return self.connectors.apply_status(key, status, transition)
