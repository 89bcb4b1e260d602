"""
Context assembly.

Builds the plugin block of the system prompt for one turn, within a token
budget. Section order is fixed:

1. Local configuration of every enabled plugin, verbatim and never cut
2. Degradation notes for ``~~category`` placeholders with no available tool
3. Per-plugin listings (commands, connections, issues)
4. Skills, in rank order

Content units (listings and skills) are atomic. They are considered in rank
order: skills of the plugin most relevant to the conversation hint, skills
referenced by name in the command being invoked, plugin listings, then all
remaining skills in registration order. The first unit that does not fit
stops the scan and marks the result truncated, so a smaller budget always
yields a prefix of what a larger budget would include. A truncated result
ends with TRUNCATION_MARKER when the marker fits.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from skillpack.core.placeholders import render_categories
from skillpack.core.registry import RegistryChange
from skillpack.lib.text import estimate_tokens, keywords
from skillpack.models.connection import ConnectionRegistry
from skillpack.models.plugin import Command, Plugin, Skill

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 2_000

LOCAL_CONFIG_HEADER = "## Local Configuration"
DEGRADATION_HEADER = "## Unavailable Tools"
PLUGINS_HEADER = "## Plugins"
SKILLS_HEADER = "## Skills"
TRUNCATION_MARKER = "[Plugin context truncated: lower-priority skills omitted.]"


@dataclass(frozen=True)
class AssembledContext:
    text: str
    included_plugin_ids: tuple[str, ...]
    truncated: bool
    estimated_tokens: int = 0
    degradation_notes: tuple[str, ...] = ()
    included_skills: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Unit:
    kind: str  # "listing" | "skill"
    plugin_id: str
    name: str
    text: str


@dataclass
class _RankedSkill:
    skill: Skill
    rendered: str
    position: int
    score: int = 0


@dataclass
class _Assembly:
    local: list[tuple[str, str]] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    units: list[_Unit] = field(default_factory=list)


def relevance_score(hint_words: set[str], skill: Skill) -> int:
    """Keyword overlap between a hint and a skill; name matches count double."""
    if not hint_words:
        return 0
    name_words = keywords(skill.name.replace("-", " "))
    content_words = keywords(skill.content) | keywords(skill.description)
    return 2 * len(hint_words & name_words) + len(hint_words & content_words)


def render_listing(plugin: Plugin, connections: ConnectionRegistry) -> str:
    """Compact per-plugin listing of commands, connections and load issues."""
    lines = [f"### {plugin.name} (`{plugin.id}`) v{plugin.version}"]
    if plugin.description:
        lines.append(plugin.description)

    lines.append("Commands:")
    if plugin.commands:
        for command in plugin.commands:
            lines.append(f"- /{command.qualified_name}: {command.description}")
    else:
        lines.append("- none")

    entries = connections.for_plugin(plugin.id)
    if entries:
        lines.append("Connections:")
        for entry in entries:
            lines.append(f"- `{entry.key}` ({entry.tool_name}): {entry.status}")

    if plugin.errors:
        lines.append("Issues:")
        for issue in plugin.errors:
            lines.append(f"- {issue}")

    return "\n".join(lines)


def render_skill(skill: Skill, rendered_content: str) -> str:
    lines = [f"### Skill: {skill.plugin_id}/{skill.name}"]
    if skill.description:
        lines.append(f"Description: {skill.description}")
    lines.append("")
    lines.append(rendered_content.strip())
    return "\n".join(lines)


class ContextAssembler:
    """Deterministic, budgeted assembly of plugin context."""

    def __init__(self, default_budget: int = DEFAULT_TOKEN_BUDGET):
        self.default_budget = default_budget
        # (key, result) pair, only ever replaced as a whole
        self._cache: Optional[tuple[tuple, AssembledContext]] = None

    def invalidate(self, change: Optional[RegistryChange] = None) -> None:
        """Drop the cached result. Usable directly as a registry listener."""
        self._cache = None

    @staticmethod
    def _same_inputs(key: tuple, cached_key: tuple) -> bool:
        plugins, connections, hint, budget, command = key
        cached_plugins, cached_connections, cached_hint, cached_budget, cached_command = cached_key
        return (
            len(plugins) == len(cached_plugins)
            and all(a is b for a, b in zip(plugins, cached_plugins))
            and connections is cached_connections
            and hint == cached_hint
            and budget == cached_budget
            and command is cached_command
        )

    def build(
        self,
        enabled_plugins: Sequence[Plugin],
        connections: ConnectionRegistry,
        conversation_hint: str = "",
        token_budget: Optional[int] = None,
        invoked_command: Optional[Command] = None,
    ) -> AssembledContext:
        budget = self.default_budget if token_budget is None else token_budget
        plugins = [p for p in enabled_plugins if p.is_active]

        # Snapshots are immutable, so identical objects mean identical output
        cache_key = (tuple(plugins), connections, conversation_hint, budget, invoked_command)
        cached = self._cache
        if cached is not None and self._same_inputs(cache_key, cached[0]):
            return cached[1]

        assembly = self._prepare(plugins, connections, conversation_hint, invoked_command)

        included: list[_Unit] = []
        truncated = False
        skipped_candidate = ""
        for unit in assembly.units:
            candidate = self._render(assembly, included + [unit])
            if estimate_tokens(candidate) > budget:
                logger.debug(
                    f"Context budget {budget} reached at {unit.kind} "
                    f"'{unit.plugin_id}/{unit.name}'"
                )
                truncated = True
                skipped_candidate = candidate
                break
            included.append(unit)

        text = self._render(assembly, included)
        if truncated:
            text = self._with_truncation_marker(text, skipped_candidate, budget)
        tokens = estimate_tokens(text)
        if tokens > budget:
            # Local configuration alone can exceed the budget; it is never cut
            truncated = True

        contributing = {pid for pid, _ in assembly.local} | {u.plugin_id for u in included}
        result = AssembledContext(
            text=text,
            included_plugin_ids=tuple(p.id for p in plugins if p.id in contributing),
            truncated=truncated,
            estimated_tokens=tokens,
            degradation_notes=tuple(assembly.notes),
            included_skills=tuple(
                f"{u.plugin_id}/{u.name}" for u in included if u.kind == "skill"
            ),
        )

        self._cache = (cache_key, result)
        return result

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _prepare(
        self,
        plugins: list[Plugin],
        connections: ConnectionRegistry,
        conversation_hint: str,
        invoked_command: Optional[Command],
    ) -> _Assembly:
        assembly = _Assembly()
        hint_words = keywords(conversation_hint)

        ranked: dict[str, list[_RankedSkill]] = {}
        position = 0
        for plugin in plugins:
            if plugin.local_config and plugin.local_config.strip():
                assembly.local.append((plugin.id, plugin.local_config))

            plugin_skills: list[_RankedSkill] = []
            unresolved: list[str] = []
            for skill in plugin.skills:
                rendered = render_categories(skill.content, plugin.id, connections)
                for category in rendered.unresolved:
                    if category not in unresolved:
                        unresolved.append(category)
                plugin_skills.append(_RankedSkill(
                    skill=skill,
                    rendered=rendered.text,
                    position=position,
                    score=relevance_score(hint_words, skill),
                ))
                position += 1
            ranked[plugin.id] = plugin_skills

            for category in unresolved:
                assembly.notes.append(self._degradation_note(plugin, category, connections))

        taken: set[int] = set()
        tier_a = self._most_relevant(plugins, ranked)
        tier_b = self._command_skills(invoked_command, ranked)

        for tier in (tier_a, tier_b):
            for item in tier:
                if item.position not in taken:
                    taken.add(item.position)
                    assembly.units.append(self._skill_unit(item))

        for plugin in plugins:
            assembly.units.append(_Unit(
                kind="listing",
                plugin_id=plugin.id,
                name=plugin.id,
                text=render_listing(plugin, connections),
            ))

        for plugin in plugins:
            for item in ranked[plugin.id]:
                if item.position not in taken:
                    taken.add(item.position)
                    assembly.units.append(self._skill_unit(item))

        return assembly

    @staticmethod
    def _most_relevant(
        plugins: list[Plugin], ranked: dict[str, list[_RankedSkill]]
    ) -> list[_RankedSkill]:
        best_id, best_score = None, 0
        for plugin in plugins:  # registration order breaks ties
            score = sum(item.score for item in ranked[plugin.id])
            if score > best_score:
                best_id, best_score = plugin.id, score
        if best_id is None:
            return []
        return sorted(ranked[best_id], key=lambda item: (-item.score, item.position))

    @staticmethod
    def _command_skills(
        command: Optional[Command], ranked: dict[str, list[_RankedSkill]]
    ) -> list[_RankedSkill]:
        if command is None or command.plugin_id not in ranked:
            return []
        text = command.content.lower()
        return [item for item in ranked[command.plugin_id] if item.skill.name.lower() in text]

    @staticmethod
    def _skill_unit(item: _RankedSkill) -> _Unit:
        return _Unit(
            kind="skill",
            plugin_id=item.skill.plugin_id,
            name=item.skill.name,
            text=render_skill(item.skill, item.rendered),
        )

    @staticmethod
    def _degradation_note(plugin: Plugin, category: str, connections: ConnectionRegistry) -> str:
        entry = connections.get(f"{plugin.id}:{category}")
        if entry is None:
            detail = "no connector is declared"
        else:
            detail = f"connector is {entry.status}"
        return (
            f"{plugin.name} (`{plugin.id}`): no tool available for `~~{category}` "
            f"({detail}). Do not claim access to it; suggest manual steps instead."
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @staticmethod
    def _with_truncation_marker(text: str, skipped_candidate: str, budget: int) -> str:
        """
        Append the truncation marker when it fits the budget and is no longer
        than the unit it stands in for, so text never grows as the budget shrinks.
        """
        marked = f"{text}\n\n{TRUNCATION_MARKER}" if text else TRUNCATION_MARKER
        if len(marked) > len(skipped_candidate) or estimate_tokens(marked) > budget:
            return text
        return marked

    @staticmethod
    def _render(assembly: _Assembly, units: list[_Unit]) -> str:
        sections: list[str] = []

        if assembly.local:
            parts = [LOCAL_CONFIG_HEADER]
            for plugin_id, local_config in assembly.local:
                parts.append(f"### {plugin_id}.local.md\n{local_config}")
            sections.append("\n\n".join(parts))

        if assembly.notes:
            sections.append(
                DEGRADATION_HEADER + "\n" + "\n".join(f"- {note}" for note in assembly.notes)
            )

        listings = [u.text for u in units if u.kind == "listing"]
        if listings:
            sections.append("\n\n".join([PLUGINS_HEADER] + listings))

        skills = [u.text for u in units if u.kind == "skill"]
        if skills:
            sections.append("\n\n".join([SKILLS_HEADER] + skills))

        return "\n\n".join(sections)
