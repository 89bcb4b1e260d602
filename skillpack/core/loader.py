"""
Plugin loading and discovery.

A plugin is any immediate subdirectory of the plugins root that contains
.claude-plugin/plugin.json. The manifest names the plugin and declares glob
patterns for skill files, command files and the connector config:

    {
      "name": "Legal",
      "version": "1.0.0",
      "description": "Contract review and NDA triage",
      "skills": ["skills/**/SKILL.md"],
      "commands": "commands/*.md",
      "connectors": ".mcp.json"
    }

Per-file problems are recorded on the plugin and never abort the load;
only a missing or malformed manifest prevents a plugin from loading.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import frontmatter
import yaml
from pydantic import ValidationError

from skillpack.core.placeholders import find_slot_tokens
from skillpack.lib.file_source import FileSource, LocalFileSource
from skillpack.lib.text import first_line, normalize_plugin_id
from skillpack.lib.typed_errors import ErrorCode, MalformedManifestError, MissingManifestError
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
    compute_status,
)

logger = logging.getLogger(__name__)

MANIFEST_PATH = Path(".claude-plugin") / "plugin.json"


def local_config_filename(plugin_id: str) -> str:
    return f"{plugin_id}.local.md"


def discover_plugins(plugins_dir: Path, files: Optional[FileSource] = None) -> list[Plugin]:
    """Load every plugin directory under plugins_dir, in sorted directory order.

    Directories without a manifest are not plugins and are skipped silently.
    A malformed manifest yields an error-status plugin carrying the issue.
    """
    files = files or LocalFileSource()
    plugins: list[Plugin] = []

    if not files.is_dir(plugins_dir):
        logger.debug(f"Plugins directory does not exist: {plugins_dir}")
        return plugins

    for entry in files.list_dirs(plugins_dir):
        if not files.exists(entry / MANIFEST_PATH):
            logger.debug(f"Skipping non-plugin directory: {entry}")
            continue
        try:
            plugins.append(load_plugin(entry, files))
        except MalformedManifestError as e:
            logger.warning(f"Invalid plugin manifest at {entry}: {e}")
            plugins.append(_broken_plugin(entry, e))

    logger.info(f"Discovered {len(plugins)} plugins in {plugins_dir}")
    return plugins


def load_plugin(plugin_path: Path, files: Optional[FileSource] = None) -> Plugin:
    """Load a single plugin directory.

    Raises:
        MissingManifestError: no .claude-plugin/plugin.json
        MalformedManifestError: manifest unreadable or missing required fields
    """
    files = files or LocalFileSource()
    manifest = _read_manifest(plugin_path, files)
    plugin_id = normalize_plugin_id(plugin_path.name)
    errors: list[PluginIssue] = []

    skills = _load_skills(plugin_path, plugin_id, manifest, files, errors)
    commands = _load_commands(plugin_path, plugin_id, manifest, files, errors)
    # Error status only when content files failed and none of them parsed
    broken = bool(errors) and not (skills or commands)
    connectors = _load_connectors(plugin_path, manifest, files, errors)
    local_config = _load_local_config(plugin_path, plugin_id, files, errors)

    issues = tuple(errors)
    plugin = Plugin(
        id=plugin_id,
        name=manifest.name or plugin_path.name,
        version=manifest.version,
        description=manifest.description,
        author=manifest.author,
        path=str(plugin_path),
        skills=tuple(skills),
        commands=tuple(commands),
        connectors=connectors,
        local_config=local_config,
        status=compute_status(False, broken),
        errors=issues,
    )
    logger.debug(
        f"Loaded plugin '{plugin_id}': {len(skills)} skills, {len(commands)} commands, "
        f"{len(connectors)} connectors, {len(issues)} issues"
    )
    return plugin


def _read_manifest(plugin_path: Path, files: FileSource) -> PluginManifest:
    manifest_path = plugin_path / MANIFEST_PATH
    if not files.exists(manifest_path):
        raise MissingManifestError(f"Plugin manifest not found at {manifest_path}", manifest_path)

    try:
        data = json.loads(files.read_text(manifest_path))
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedManifestError(
            f"Failed to read plugin manifest at {manifest_path}: {e}", manifest_path
        ) from e
    except json.JSONDecodeError as e:
        raise MalformedManifestError(
            f"Invalid JSON in plugin manifest at {manifest_path}: {e}", manifest_path
        ) from e

    if not isinstance(data, dict):
        raise MalformedManifestError(
            f"Plugin manifest at {manifest_path} must be a JSON object", manifest_path
        )

    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedManifestError(
            f"Invalid plugin manifest at {manifest_path} ({fields})", manifest_path
        ) from e


def _broken_plugin(plugin_path: Path, error: MalformedManifestError) -> Plugin:
    return Plugin(
        id=normalize_plugin_id(plugin_path.name),
        name=plugin_path.name,
        path=str(plugin_path),
        status=PluginStatus.ERROR,
        errors=(PluginIssue(code=error.code, message=error.message, path=error.path),),
    )


# ---------------------------------------------------------------------------
# Markdown files
# ---------------------------------------------------------------------------

def _matched_files(
    plugin_path: Path, patterns: tuple[str, ...], files: FileSource
) -> list[Path]:
    """Union of all pattern matches, first-match order, without duplicates."""
    seen: set[Path] = set()
    matched: list[Path] = []
    for pattern in patterns:
        for path in files.list_files_matching(plugin_path, pattern):
            if path not in seen:
                seen.add(path)
                matched.append(path)
    return matched


def _read_markdown(
    path: Path, kind: str, files: FileSource, errors: list[PluginIssue]
) -> Optional[tuple[dict[str, Any], str]]:
    """Read a markdown file and split its front matter. None on read failure."""
    try:
        raw = files.read_text(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed reading {kind} file {path}: {e}")
        errors.append(PluginIssue(
            code=ErrorCode.FILE_READ_ERROR,
            message=f"Failed reading {kind} file '{path.name}': {e}",
            path=str(path),
        ))
        return None

    try:
        post = frontmatter.loads(raw)
    except yaml.YAMLError as e:
        logger.warning(f"Invalid front matter in {path}, using raw text: {e}")
        return {}, raw

    return dict(post.metadata), post.content


def _skill_name(path: Path) -> str:
    # skills/contract-review/SKILL.md is keyed by its directory
    if path.name.lower() == "skill.md":
        return path.parent.name
    return path.stem


def _load_skills(
    plugin_path: Path,
    plugin_id: str,
    manifest: PluginManifest,
    files: FileSource,
    errors: list[PluginIssue],
) -> list[Skill]:
    skills: list[Skill] = []
    for path in _matched_files(plugin_path, manifest.skills, files):
        parsed = _read_markdown(path, "skill", files, errors)
        if parsed is None:
            continue
        metadata, body = parsed
        skills.append(Skill(
            name=_skill_name(path),
            content=body,
            plugin_id=plugin_id,
            path=str(path),
            description=str(metadata.get("description") or ""),
        ))
    return skills


def _parse_inputs(metadata: dict[str, Any], body: str) -> tuple[InputSlot, ...]:
    """Declared `inputs` front matter first, then undeclared {{slot}} tokens."""
    slots: list[InputSlot] = []
    declared = metadata.get("inputs") or []
    if isinstance(declared, list):
        for item in declared:
            if isinstance(item, str):
                slots.append(InputSlot(name=item))
            elif isinstance(item, dict) and item.get("name"):
                slots.append(InputSlot(
                    name=str(item["name"]),
                    description=str(item.get("description") or ""),
                    required=bool(item.get("required", True)),
                ))

    names = {slot.name for slot in slots}
    for token in find_slot_tokens(body):
        if token not in names:
            slots.append(InputSlot(name=token))
            names.add(token)
    return tuple(slots)


def _load_commands(
    plugin_path: Path,
    plugin_id: str,
    manifest: PluginManifest,
    files: FileSource,
    errors: list[PluginIssue],
) -> list[Command]:
    commands: list[Command] = []
    for path in _matched_files(plugin_path, manifest.commands, files):
        parsed = _read_markdown(path, "command", files, errors)
        if parsed is None:
            continue
        metadata, body = parsed
        hint = metadata.get("argument-hint") or metadata.get("argument_hint")
        commands.append(Command(
            name=path.stem,
            content=body,
            plugin_id=plugin_id,
            path=str(path),
            description=str(metadata.get("description") or first_line(body)),
            argument_hint=str(hint) if hint else None,
            inputs=_parse_inputs(metadata, body),
        ))
    return commands


# ---------------------------------------------------------------------------
# Connectors and local configuration
# ---------------------------------------------------------------------------

def _load_connectors(
    plugin_path: Path,
    manifest: PluginManifest,
    files: FileSource,
    errors: list[PluginIssue],
) -> dict[str, ConnectorDeclaration]:
    if not manifest.connectors:
        return {}
    path = plugin_path / manifest.connectors
    if not files.exists(path):
        return {}

    def malformed(message: str) -> None:
        logger.warning(message)
        errors.append(PluginIssue(
            code=ErrorCode.MALFORMED_CONNECTOR_CONFIG, message=message, path=str(path)
        ))

    try:
        raw = files.read_text(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed reading connector config {path}: {e}")
        errors.append(PluginIssue(
            code=ErrorCode.FILE_READ_ERROR,
            message=f"Failed reading connector config '{path.name}': {e}",
            path=str(path),
        ))
        return {}

    try:
        config = ConnectorConfigFile.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        malformed(f"Invalid JSON in connector config '{path.name}': {e}")
        return {}
    except ValidationError:
        malformed(f"Connector config '{path.name}' must contain an 'mcpServers' object")
        return {}

    connectors: dict[str, ConnectorDeclaration] = {}
    for category, entry in config.servers.items():
        try:
            connectors[category] = ConnectorDeclaration.model_validate(entry)
        except ValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            malformed(f"Connector '{category}' in '{path.name}' is invalid: {reason}")
    return connectors


def _load_local_config(
    plugin_path: Path, plugin_id: str, files: FileSource, errors: list[PluginIssue]
) -> Optional[str]:
    path = plugin_path / local_config_filename(plugin_id)
    if not files.exists(path):
        return None
    try:
        return files.read_text(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed reading local config {path}: {e}")
        errors.append(PluginIssue(
            code=ErrorCode.FILE_READ_ERROR,
            message=f"Failed reading local config '{path.name}': {e}",
            path=str(path),
        ))
        return None
