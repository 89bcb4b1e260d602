"""
Plugin models.

Plugins use the .claude-plugin directory layout:
  {id}/.claude-plugin/plugin.json  manifest
  {id}/skills/                     skill files (SKILL.md or *.md)
  {id}/commands/                   command templates
  {id}/.mcp.json                   connector declarations
  {id}/{id}.local.md               user-editable local configuration

All records are frozen. State changes (enable/disable, reload) replace the
whole Plugin record instead of patching it.
"""

import os
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from skillpack.lib.typed_errors import ErrorCode

DEFAULT_SKILL_PATTERNS = ("skills/**/SKILL.md", "skills/*.md")
DEFAULT_COMMAND_PATTERNS = ("commands/*.md",)
DEFAULT_CONNECTOR_PATH = ".mcp.json"


class PluginStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class PluginIssue(BaseModel):
    """A contained, user-explainable problem recorded against a plugin."""

    code: ErrorCode
    message: str
    path: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return self.message


def _as_patterns(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ValueError("glob patterns must be a string or a list of strings")


class PluginManifest(BaseModel):
    """Contents of .claude-plugin/plugin.json."""

    name: str
    version: str
    description: str
    author: Optional[str] = None
    skills: tuple[str, ...] = DEFAULT_SKILL_PATTERNS
    commands: tuple[str, ...] = DEFAULT_COMMAND_PATTERNS
    connectors: Optional[str] = DEFAULT_CONNECTOR_PATH

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("author", mode="before")
    @classmethod
    def _author_name(cls, value: Any) -> Any:
        # Claude plugin manifests use {"name": ..., "email": ...}
        if isinstance(value, dict):
            return value.get("name")
        return value

    @field_validator("skills", "commands", mode="before")
    @classmethod
    def _patterns(cls, value: Any) -> tuple[str, ...]:
        return _as_patterns(value)


class InputSlot(BaseModel):
    """A named input a command template expects from the user."""

    name: str
    description: str = ""
    required: bool = True

    model_config = ConfigDict(frozen=True)


class Skill(BaseModel):
    name: str
    content: str
    plugin_id: str
    path: str
    description: str = ""

    model_config = ConfigDict(frozen=True)


class Command(BaseModel):
    """A user-invocable prompt template, addressed as ``plugin_id:name``."""

    name: str
    content: str
    plugin_id: str
    path: str
    description: str = ""
    argument_hint: Optional[str] = None
    inputs: tuple[InputSlot, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def qualified_name(self) -> str:
        return f"{self.plugin_id}:{self.name}"

    @property
    def required_inputs(self) -> tuple[InputSlot, ...]:
        return tuple(slot for slot in self.inputs if slot.required)


class ConnectorDeclaration(BaseModel):
    """A single external tool connection, as declared in the connector file.

    ``name`` is the human tool name ("Slack") used when rendering
    ``~~category`` placeholders.
    """

    type: str = "stdio"
    command: Optional[str] = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    name: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _infer_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            data = dict(data)
            data["type"] = "http" if data.get("url") and not data.get("command") else "stdio"
        return data

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        kind = value.strip().lower()
        if kind not in ("stdio", "http", "sse"):
            raise ValueError(f"unsupported connector type '{value}' (expected stdio or http)")
        return kind

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _required_fields(self) -> "ConnectorDeclaration":
        if self.type == "stdio" and not (self.command or "").strip():
            raise ValueError("connector type 'stdio' requires a non-empty 'command'")
        if self.type in ("http", "sse") and not (self.url or "").strip():
            raise ValueError(f"connector type '{self.type}' requires a non-empty 'url'")
        return self

    @property
    def tool_name(self) -> Optional[str]:
        if self.name:
            return self.name
        if self.command:
            return os.path.basename(self.command.split()[0])
        return None


class ConnectorConfigFile(BaseModel):
    """Top-level shape of the connector file: {"mcpServers": {category: {...}}}."""

    servers: dict[str, dict[str, Any]] = Field(
        validation_alias=AliasChoices("mcpServers", "connections"),
    )

    model_config = ConfigDict(extra="ignore")


def compute_status(enabled: bool, broken: bool = False) -> PluginStatus:
    """A broken plugin stays in error regardless of its enabled flag."""
    if broken:
        return PluginStatus.ERROR
    return PluginStatus.ACTIVE if enabled else PluginStatus.INACTIVE


class Plugin(BaseModel):
    """A loaded plugin with its parsed contents."""

    id: str  # Normalized directory name
    name: str
    version: str = "0.0.0"
    description: str = ""
    author: Optional[str] = None
    path: str
    enabled: bool = False
    skills: tuple[Skill, ...] = ()
    commands: tuple[Command, ...] = ()
    connectors: dict[str, ConnectorDeclaration] = Field(default_factory=dict)
    local_config: Optional[str] = None
    status: PluginStatus = PluginStatus.INACTIVE
    errors: tuple[PluginIssue, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def has_content(self) -> bool:
        return bool(self.skills or self.commands)

    @property
    def is_active(self) -> bool:
        return self.enabled and self.status == PluginStatus.ACTIVE

    def with_enabled(self, enabled: bool) -> "Plugin":
        """Return a copy with the enabled flag (and derived status) replaced."""
        return self.model_copy(
            update={
                "enabled": enabled,
                "status": compute_status(enabled, self.status == PluginStatus.ERROR),
            }
        )
