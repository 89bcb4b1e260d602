"""Typed records for plugins, commands and connections."""

from skillpack.models.connection import (
    ConnectionEntry,
    ConnectionRegistry,
    ConnectionState,
    ConnectionStatus,
    namespaced_key,
)
from skillpack.models.plugin import (
    Command,
    ConnectorConfigFile,
    ConnectorDeclaration,
    InputSlot,
    Plugin,
    PluginIssue,
    PluginManifest,
    PluginStatus,
    Skill,
)

__all__ = [
    "Command",
    "ConnectionEntry",
    "ConnectionRegistry",
    "ConnectionState",
    "ConnectionStatus",
    "ConnectorConfigFile",
    "ConnectorDeclaration",
    "InputSlot",
    "Plugin",
    "PluginIssue",
    "PluginManifest",
    "PluginStatus",
    "Skill",
    "namespaced_key",
]
