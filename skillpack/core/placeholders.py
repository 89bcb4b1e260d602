"""
Placeholder substitution.

Three placeholder kinds exist, all resolved at read time over immutable text:
- ``${VAR_NAME}`` in connector declarations, resolved through a credential resolver
- ``~~category`` in skill text, rendered to the tool name of an available connection
- ``{{slot}}`` in command templates, filled with user-supplied inputs

Every function here is pure: stored Skill/Command content is never mutated.
"""

import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from skillpack.lib.credentials import Resolver
from skillpack.models.connection import ConnectionEntry, ConnectionRegistry
from skillpack.models.plugin import ConnectorDeclaration

NOT_CONFIGURED = "[not configured]"

ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")
SLOT_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")
ARGUMENTS_TOKEN = "$ARGUMENTS"
_TEMPLATE_PATTERN = re.compile(re.escape(ARGUMENTS_TOKEN) + "|" + SLOT_PATTERN.pattern)
_GENERIC_CATEGORY = r"[A-Za-z0-9][A-Za-z0-9_-]*"


# ---------------------------------------------------------------------------
# ${VAR} resolution
# ---------------------------------------------------------------------------

def resolve_env_placeholders(value: str, resolver: Resolver, missing: list[str]) -> str:
    """Substitute ${VAR} tokens; unresolved names are appended to ``missing``."""

    def replace(match: re.Match) -> str:
        var_name = match.group(1).strip()
        resolved = resolver(var_name)
        if resolved is None:
            missing.append(var_name)
            return match.group(0)
        return resolved

    return ENV_PATTERN.sub(replace, value)


def resolve_declaration(
    declaration: ConnectorDeclaration, resolver: Resolver
) -> tuple[Optional[ConnectorDeclaration], list[str]]:
    """
    Resolve every ${VAR} in a declaration.

    Returns the resolved copy and an empty list, or None and the sorted,
    de-duplicated names of the variables that could not be resolved.
    """
    missing: list[str] = []
    command = (
        resolve_env_placeholders(declaration.command, resolver, missing)
        if declaration.command else declaration.command
    )
    url = (
        resolve_env_placeholders(declaration.url, resolver, missing)
        if declaration.url else declaration.url
    )
    args = tuple(resolve_env_placeholders(a, resolver, missing) for a in declaration.args)
    env = {k: resolve_env_placeholders(v, resolver, missing) for k, v in declaration.env.items()}

    if missing:
        return None, sorted(set(missing))

    return declaration.model_copy(
        update={"command": command, "url": url, "args": args, "env": env}
    ), []


# ---------------------------------------------------------------------------
# ~~category rendering
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RenderedText:
    text: str
    unresolved: tuple[str, ...] = field(default_factory=tuple)


def _category_pattern(known: list[str]) -> re.Pattern:
    # Markdown strikethrough (~~text~~) is matched first and left untouched
    strike = r"(?P<strike>~~[^~\n]+?~~)(?![A-Za-z0-9_])"
    generic = r"(?P<generic>" + _GENERIC_CATEGORY + r")"
    if not known:
        return re.compile(strike + r"|~~" + generic)
    # Longest declared names first so "cloud storage" wins over "cloud"
    declared = "|".join(re.escape(c) for c in sorted(known, key=len, reverse=True))
    return re.compile(
        strike + r"|~~(?:(?P<declared>" + declared + r")(?![A-Za-z0-9_-])|" + generic + r")",
        re.IGNORECASE,
    )


def render_categories(
    template: str, plugin_id: str, connections: ConnectionRegistry
) -> RenderedText:
    """
    Render ``~~category`` placeholders for one plugin's text.

    Available connections are replaced by their tool name; anything else
    (undeclared, unresolved, starting, unavailable) becomes NOT_CONFIGURED
    and is reported once in ``unresolved``.
    """
    if "~~" not in template:
        return RenderedText(template)

    entries: dict[str, ConnectionEntry] = {
        entry.category.lower(): entry for entry in connections.for_plugin(plugin_id)
    }
    unresolved: list[str] = []

    def replace(match: re.Match) -> str:
        if match.group("strike"):
            return match.group("strike")
        groups = match.groupdict()
        category = groups.get("declared") or groups["generic"]
        entry = entries.get(category.lower())
        if entry is not None and entry.status.is_available:
            return entry.tool_name
        name = entry.category if entry is not None else category.lower()
        if name not in unresolved:
            unresolved.append(name)
        return NOT_CONFIGURED

    text = _category_pattern(list(entries)).sub(replace, template)
    return RenderedText(text, tuple(unresolved))


# ---------------------------------------------------------------------------
# {{slot}} substitution
# ---------------------------------------------------------------------------

def find_slot_tokens(template: str) -> list[str]:
    """Slot names in order of first appearance."""
    names: list[str] = []
    for match in SLOT_PATTERN.finditer(template):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def substitute_slots(
    template: str, values: Mapping[str, str], arguments: Optional[str] = None
) -> str:
    """
    Replace ``{{name}}`` tokens that have a supplied value; leave others intact.

    When ``arguments`` is given, ``$ARGUMENTS`` is replaced in the same pass,
    so supplied values are never themselves scanned for placeholders.
    """

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name is None:
            return arguments
        return values[name] if name in values else match.group(0)

    if arguments is None:
        return SLOT_PATTERN.sub(replace, template)
    return _TEMPLATE_PATTERN.sub(replace, template)
