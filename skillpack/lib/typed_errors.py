"""
Typed errors for plugin loading, connector resolution and command dispatch.

Two kinds of failure exist:
- Contained problems (a broken skill file, a bad connector entry) are
  recorded as PluginIssue records on the plugin and never raised.
- Caller-facing problems (unknown plugin id, bad command syntax) are raised
  as SkillpackError subclasses so the caller can surface them.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class ErrorCode(str, Enum):
    """Error codes for programmatic handling."""

    # Loading
    MISSING_MANIFEST = "missing_manifest"
    MALFORMED_MANIFEST = "malformed_manifest"
    FILE_READ_ERROR = "file_read_error"
    MALFORMED_CONNECTOR_CONFIG = "malformed_connector_config"

    # Connectors
    MISSING_CREDENTIAL = "missing_credential"
    CONNECTOR_START_FAILURE = "connector_start_failure"

    # Commands
    UNKNOWN_COMMAND = "unknown_command"
    BAD_SYNTAX = "bad_syntax"
    DUPLICATE_FULLY_QUALIFIED_COMMAND = "duplicate_fully_qualified_command"

    # Registry
    NOT_FOUND = "not_found"
    DUPLICATE_PLUGIN_ID = "duplicate_plugin_id"

    # Invocation
    MISSING_INPUT = "missing_input"
    CANCELLED = "cancelled"


class SkillpackError(Exception):
    """Base class for errors surfaced to callers."""

    code: ErrorCode = ErrorCode.NOT_FOUND

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class LoadError(SkillpackError):
    """A plugin directory could not be loaded at all."""

    def __init__(self, message: str, path: Union[str, Path, None] = None):
        super().__init__(message)
        self.path = str(path) if path is not None else None


class MissingManifestError(LoadError):
    code = ErrorCode.MISSING_MANIFEST


class MalformedManifestError(LoadError):
    code = ErrorCode.MALFORMED_MANIFEST


class PluginNotFoundError(SkillpackError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin '{plugin_id}' not found")
        self.plugin_id = plugin_id


class CommandError(SkillpackError):
    """Base for command dispatch rejections."""


class BadSyntaxError(CommandError):
    code = ErrorCode.BAD_SYNTAX


class UnknownCommandError(CommandError):
    code = ErrorCode.UNKNOWN_COMMAND

    def __init__(self, qualified_name: str):
        super().__init__(f"Unknown command '{qualified_name}'")
        self.qualified_name = qualified_name


class MissingInputError(CommandError):
    code = ErrorCode.MISSING_INPUT

    def __init__(self, qualified_name: str, slots: list[str]):
        super().__init__(
            f"Command '{qualified_name}' needs inputs: {', '.join(slots)}"
        )
        self.qualified_name = qualified_name
        self.slots = slots


class InvocationCancelled(SkillpackError):
    code = ErrorCode.CANCELLED

    def __init__(self, qualified_name: str):
        super().__init__(f"Invocation of '{qualified_name}' was cancelled")
        self.qualified_name = qualified_name
