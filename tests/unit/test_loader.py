"""
Tests for plugin loading and discovery.

Tests cover:
- Manifest validation (missing, malformed, missing required fields)
- Skill and command parsing with front matter
- Per-file failures contained in the plugin's error list
- Connector file validation per category
- Local configuration
"""

import json
from pathlib import Path

import pytest

from skillpack.core.loader import discover_plugins, load_plugin
from skillpack.lib.typed_errors import ErrorCode, MalformedManifestError, MissingManifestError
from skillpack.models.plugin import PluginStatus

from tests.fakes import MemoryFileSource


class TestManifest:
    """Tests for manifest handling."""

    def test_missing_manifest_raises(self, tmp_path):
        """A directory without .claude-plugin/plugin.json is not a plugin."""
        (tmp_path / "notes").mkdir()
        with pytest.raises(MissingManifestError) as exc:
            load_plugin(tmp_path / "notes")
        assert exc.value.code == ErrorCode.MISSING_MANIFEST

    def test_invalid_json_raises(self, make_plugin):
        root = make_plugin("broken")
        (root / ".claude-plugin" / "plugin.json").write_text("{not json")
        with pytest.raises(MalformedManifestError) as exc:
            load_plugin(root)
        assert exc.value.code == ErrorCode.MALFORMED_MANIFEST

    def test_missing_required_field_raises(self, make_plugin):
        root = make_plugin("partial", manifest={"name": "Partial", "version": "1.0.0"})
        with pytest.raises(MalformedManifestError) as exc:
            load_plugin(root)
        assert "description" in exc.value.message

    def test_non_object_manifest_raises(self, make_plugin):
        root = make_plugin("listy")
        (root / ".claude-plugin" / "plugin.json").write_text("[1, 2]")
        with pytest.raises(MalformedManifestError):
            load_plugin(root)

    def test_author_object_is_flattened(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        assert plugin.author == "Legal Ops"

    def test_id_is_normalized_directory_name(self, make_plugin):
        root = make_plugin("Legal_Tools", skills={"a": "# A\n"})
        plugin = load_plugin(root)
        assert plugin.id == "legal-tools"

    def test_loaded_plugin_starts_inactive(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        assert plugin.enabled is False
        assert plugin.status == PluginStatus.INACTIVE


class TestSkillsAndCommands:
    """Tests for markdown parsing."""

    def test_directory_skills_keyed_by_directory(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        names = [s.name for s in plugin.skills]
        assert names == ["contract-review", "nda-triage"]

    def test_skill_front_matter_is_stripped(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        skill = plugin.skills[0]
        assert skill.description == "Review commercial contracts clause by clause"
        assert "---" not in skill.content
        assert skill.content.lstrip().startswith("# Contract Review")

    def test_flat_skill_file_keyed_by_stem(self, finance_plugin):
        plugin = load_plugin(finance_plugin)
        assert [s.name for s in plugin.skills] == ["reconciliation"]

    def test_command_description_from_front_matter(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        review = next(c for c in plugin.commands if c.name == "review-contract")
        assert review.description == "Review a contract against the playbook"
        assert review.argument_hint == "<contract text>"
        assert review.qualified_name == "legal:review-contract"

    def test_command_description_falls_back_to_first_line(self, finance_plugin):
        plugin = load_plugin(finance_plugin)
        reconcile = next(c for c in plugin.commands if c.name == "reconcile")
        assert reconcile.description == "Reconcile accounts for a period"

    def test_declared_inputs_and_body_slots(self, legal_plugin, finance_plugin):
        triage = next(c for c in load_plugin(legal_plugin).commands if c.name == "triage-nda")
        assert [(s.name, s.required) for s in triage.inputs] == [
            ("nda_text", True),
            ("counterparty", False),
        ]

        reconcile = next(c for c in load_plugin(finance_plugin).commands if c.name == "reconcile")
        assert [s.name for s in reconcile.inputs] == ["period"]
        assert reconcile.required_inputs[0].name == "period"

    def test_custom_glob_patterns(self, make_plugin):
        root = make_plugin(
            "custom",
            manifest={
                "name": "Custom",
                "version": "1.0.0",
                "description": "Custom layout",
                "skills": "knowledge/*.md",
                "commands": ["prompts/*.md"],
            },
        )
        (root / "knowledge").mkdir()
        (root / "knowledge" / "pricing.md").write_text("# Pricing\n")
        (root / "prompts").mkdir()
        (root / "prompts" / "quote.md").write_text("# Quote a price\n")

        plugin = load_plugin(root)
        assert [s.name for s in plugin.skills] == ["pricing"]
        assert [c.name for c in plugin.commands] == ["quote"]

    def test_invalid_front_matter_falls_back_to_raw_text(self, make_plugin):
        root = make_plugin("odd", skills={"weird": "---\nkey: [unclosed\n---\nBody\n"})
        plugin = load_plugin(root)
        assert len(plugin.skills) == 1
        assert "Body" in plugin.skills[0].content


class TestContainedErrors:
    """Per-file failures never abort the load."""

    def test_one_unreadable_skill_of_three(self):
        """N skill files with one unreadable yields N-1 skills and exactly one issue."""
        root = Path("/plugins/legal")
        files = MemoryFileSource({
            root / ".claude-plugin" / "plugin.json": json.dumps(
                {"name": "Legal", "version": "1.0.0", "description": "Legal"}
            ),
            root / "skills" / "a.md": "# A\n",
            root / "skills" / "b.md": "# B\n",
            root / "skills" / "c.md": "# C\n",
        })
        files.unreadable.add(root / "skills" / "b.md")

        plugin = load_plugin(root, files).with_enabled(True)

        assert [s.name for s in plugin.skills] == ["a", "c"]
        assert len(plugin.errors) == 1
        assert plugin.errors[0].code == ErrorCode.FILE_READ_ERROR
        assert plugin.status == PluginStatus.ACTIVE
        assert plugin.is_active

    def test_unreadable_connector_file_keeps_plugin_active(self):
        root = Path("/plugins/legal")
        files = MemoryFileSource({
            root / ".claude-plugin" / "plugin.json": json.dumps(
                {"name": "Legal", "version": "1.0.0", "description": "Legal"}
            ),
            root / "skills" / "a.md": "# A\n",
            root / ".mcp.json": '{"mcpServers": {}}',
        })
        files.unreadable.add(root / ".mcp.json")

        plugin = load_plugin(root, files).with_enabled(True)

        assert plugin.connectors == {}
        assert [e.code for e in plugin.errors] == [ErrorCode.FILE_READ_ERROR]
        assert plugin.status == PluginStatus.ACTIVE
        assert plugin.is_active

    def test_all_content_unreadable_is_error(self):
        root = Path("/plugins/empty")
        files = MemoryFileSource({
            root / ".claude-plugin" / "plugin.json": json.dumps(
                {"name": "Empty", "version": "1.0.0", "description": "Empty"}
            ),
            root / "skills" / "only.md": "# Only\n",
        })
        files.unreadable.add(root / "skills" / "only.md")

        plugin = load_plugin(root, files)

        assert plugin.status == PluginStatus.ERROR
        assert plugin.with_enabled(True).status == PluginStatus.ERROR
        assert not plugin.with_enabled(True).is_active

    def test_plugin_without_content_is_not_error(self, make_plugin):
        root = make_plugin("bare")
        plugin = load_plugin(root).with_enabled(True)
        assert plugin.status == PluginStatus.ACTIVE
        assert plugin.errors == ()


class TestConnectors:
    """Tests for connector file parsing."""

    def test_declarations_loaded(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        chat = plugin.connectors["chat"]
        assert chat.type == "stdio"
        assert chat.command == "npx"
        assert chat.tool_name == "Slack"
        assert chat.env == {"SLACK_BOT_TOKEN": "${SLACK_BOT_TOKEN}"}

    def test_connections_alias_and_http_inference(self, make_plugin):
        root = make_plugin(
            "web",
            skills={"a": "# A\n"},
            connectors={"connections": {"crm": {"url": "https://crm.example.com/mcp"}}},
        )
        plugin = load_plugin(root)
        assert plugin.connectors["crm"].type == "http"
        assert plugin.connectors["crm"].tool_name is None

    def test_invalid_json_keeps_plugin_active(self, make_plugin):
        root = make_plugin("noisy", skills={"a": "# A\n"}, connectors="{oops")
        plugin = load_plugin(root).with_enabled(True)

        assert plugin.connectors == {}
        assert plugin.status == PluginStatus.ACTIVE
        assert [e.code for e in plugin.errors] == [ErrorCode.MALFORMED_CONNECTOR_CONFIG]

    def test_bad_entry_skips_only_that_category(self, make_plugin):
        root = make_plugin(
            "mixed",
            skills={"a": "# A\n"},
            connectors={"mcpServers": {
                "chat": {"command": "slack-mcp"},
                "email": {"type": "stdio"},
                "drive": {"type": "ftp", "url": "ftp://x"},
            }},
        )
        plugin = load_plugin(root)

        assert list(plugin.connectors) == ["chat"]
        assert len(plugin.errors) == 2
        assert all(e.code == ErrorCode.MALFORMED_CONNECTOR_CONFIG for e in plugin.errors)
        assert "email" in plugin.errors[0].message

    def test_missing_connector_file_is_fine(self, finance_plugin):
        plugin = load_plugin(finance_plugin)
        assert plugin.connectors == {}
        assert plugin.errors == ()


class TestLocalConfig:
    def test_local_config_read_verbatim(self, legal_plugin):
        plugin = load_plugin(legal_plugin)
        assert plugin.local_config == "# Legal settings\n\nJurisdiction: Delaware\n"

    def test_no_local_config(self, finance_plugin):
        assert load_plugin(finance_plugin).local_config is None


class TestDiscovery:
    """Tests for discover_plugins."""

    def test_skips_directories_without_manifest(self, plugins_dir, legal_plugin):
        (plugins_dir / "scratch").mkdir()
        (plugins_dir / "readme.txt").write_text("not a plugin")

        plugins = discover_plugins(plugins_dir)

        assert [p.id for p in plugins] == ["legal"]

    def test_sorted_directory_order(self, plugins_dir, legal_plugin, finance_plugin):
        plugins = discover_plugins(plugins_dir)
        assert [p.id for p in plugins] == ["finance", "legal"]

    def test_malformed_manifest_yields_error_plugin(self, plugins_dir, make_plugin, legal_plugin):
        root = make_plugin("broken")
        (root / ".claude-plugin" / "plugin.json").write_text("{")

        plugins = {p.id: p for p in discover_plugins(plugins_dir)}

        assert plugins["broken"].status == PluginStatus.ERROR
        assert plugins["broken"].errors[0].code == ErrorCode.MALFORMED_MANIFEST
        assert plugins["legal"].status == PluginStatus.INACTIVE

    def test_missing_plugins_dir(self, tmp_path):
        assert discover_plugins(tmp_path / "nope") == []

    def test_in_memory_file_source(self):
        files = MemoryFileSource({
            "/p/alpha/.claude-plugin/plugin.json": json.dumps(
                {"name": "Alpha", "version": "1.0.0", "description": "A"}
            ),
            "/p/alpha/commands/go.md": "# Go somewhere\n",
            "/p/beta/notes.md": "not a plugin",
        })
        plugins = discover_plugins(Path("/p"), files)
        assert [p.id for p in plugins] == ["alpha"]
        assert plugins[0].commands[0].description == "Go somewhere"
