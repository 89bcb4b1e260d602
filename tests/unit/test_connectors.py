"""
Tests for the connector merge engine.

Tests cover:
- Namespaced merge across plugins
- Credential precedence (store > environment > missing)
- Idempotent, counter-ordered status application
- Tool runtime start requests
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from skillpack.core.connectors import ConnectorMergeEngine
from skillpack.core.registry import PluginRegistry
from skillpack.lib.credentials import EnvResolver, MemoryCredentialStore, YamlCredentialStore
from skillpack.lib.plugin_state import MemoryStateStore
from skillpack.lib.typed_errors import ErrorCode
from skillpack.models.connection import ConnectionState, ConnectionStatus
from skillpack.models.plugin import ConnectorDeclaration


SLACK = ConnectorDeclaration(
    name="Slack", command="slack-mcp", env={"SLACK_BOT_TOKEN": "${SLACK_BOT_TOKEN}"}
)
DRIVE = ConnectorDeclaration(name="Drive", url="https://drive.example.com/mcp")


class FakeToolRuntime:
    """Records start requests and returns a configurable status."""

    def __init__(self, status: ConnectionStatus = None, error: Exception = None):
        self.status = status or ConnectionStatus.available()
        self.error = error
        self.started: list[tuple[str, ConnectorDeclaration]] = []
        self.callbacks = []

    async def start(self, key, declaration):
        self.started.append((key, declaration))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.status

    def subscribe(self, callback):
        self.callbacks.append(callback)


def _resolver(store=None, environ=None):
    return EnvResolver(MemoryCredentialStore(store or {}), environ=environ or {})


class TestMerge:
    def test_same_category_in_two_plugins_gets_two_entries(self):
        engine = ConnectorMergeEngine(_resolver({"SLACK_BOT_TOKEN": "x"}))
        registry = engine.merge([("legal", {"chat": SLACK}), ("sales", {"chat": SLACK})])

        assert sorted(registry) == ["legal:chat", "sales:chat"]
        assert registry.get("legal:chat").plugin_id == "legal"

    def test_store_takes_precedence_over_environment(self):
        engine = ConnectorMergeEngine(
            _resolver({"SLACK_BOT_TOKEN": "from-store"}, {"SLACK_BOT_TOKEN": "from-env"})
        )
        entry = engine.merge([("legal", {"chat": SLACK})]).get("legal:chat")
        assert entry.resolved_env == {"SLACK_BOT_TOKEN": "from-store"}

    def test_environment_used_when_store_missing(self):
        engine = ConnectorMergeEngine(_resolver({}, {"SLACK_BOT_TOKEN": "from-env"}))
        entry = engine.merge([("legal", {"chat": SLACK})]).get("legal:chat")
        assert entry.resolved_env == {"SLACK_BOT_TOKEN": "from-env"}
        assert entry.status.state == ConnectionState.UNRESOLVED

    def test_missing_credential_marks_unavailable(self):
        engine = ConnectorMergeEngine(_resolver())
        engine.merge([("legal", {"chat": SLACK})])

        status = engine.availability("legal:chat")

        assert status.state == ConnectionState.UNAVAILABLE
        assert status.code == ErrorCode.MISSING_CREDENTIAL
        assert "SLACK_BOT_TOKEN" in status.reason

    def test_undeclared_key_is_unresolved(self):
        engine = ConnectorMergeEngine(_resolver())
        assert engine.availability("legal:email").state == ConnectionState.UNRESOLVED

    def test_unchanged_entries_keep_status_across_merges(self):
        engine = ConnectorMergeEngine(_resolver())
        engine.merge([("ops", {"drive": DRIVE})])
        engine.apply_status("ops:drive", ConnectionStatus.available(), 1)

        engine.merge([("ops", {"drive": DRIVE}), ("legal", {"chat": SLACK})])

        assert engine.availability("ops:drive").is_available

    def test_removed_plugin_connections_disappear(self):
        engine = ConnectorMergeEngine(_resolver())
        engine.merge([("ops", {"drive": DRIVE})])
        registry = engine.merge([])
        assert len(registry) == 0

    def test_yaml_credential_store(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        path.write_text("SLACK_BOT_TOKEN: xoxb-1\nPATH: /evil\n")
        store = YamlCredentialStore(path)

        assert store.get("SLACK_BOT_TOKEN") == "xoxb-1"
        assert store.get("PATH") is None

        engine = ConnectorMergeEngine(EnvResolver(store, environ={}))
        entry = engine.merge([("legal", {"chat": SLACK})]).get("legal:chat")
        assert entry.resolved is not None


class TestStatusApplication:
    @pytest.fixture
    def engine(self):
        engine = ConnectorMergeEngine(_resolver())
        engine.merge([("ops", {"drive": DRIVE})])
        return engine

    def test_newer_counter_applies(self, engine):
        assert engine.apply_status("ops:drive", ConnectionStatus.available(), 1) is True
        assert engine.availability("ops:drive").is_available

    def test_lower_counter_discarded(self, engine):
        engine.apply_status("ops:drive", ConnectionStatus.unavailable("crashed"), 5)
        assert engine.apply_status("ops:drive", ConnectionStatus.available(), 3) is False
        assert engine.availability("ops:drive").reason == "crashed"

    def test_duplicate_notification_is_idempotent(self, engine):
        engine.apply_status("ops:drive", ConnectionStatus.available(), 2)
        before = engine.connections

        assert engine.apply_status("ops:drive", ConnectionStatus.available(), 2) is False
        assert engine.connections is before

    def test_out_of_order_delivery_converges(self, engine):
        notifications = [
            (3, ConnectionStatus.unavailable("exit 1")),
            (1, ConnectionStatus.starting()),
            (2, ConnectionStatus.available()),
        ]
        for counter, status in notifications:
            engine.apply_status("ops:drive", status, counter)

        assert engine.availability("ops:drive").state == ConnectionState.UNAVAILABLE
        assert engine.connections.get("ops:drive").transition == 3

    def test_unknown_key_ignored(self, engine):
        assert engine.apply_status("ops:email", ConnectionStatus.available(), 1) is False

    def test_all_available_lists_every_entry(self, engine):
        assert engine.all_available() == [("ops:drive", ConnectionStatus.unresolved())]


class TestToolRuntime:
    def test_subscribes_to_runtime_notifications(self):
        runtime = FakeToolRuntime()
        engine = ConnectorMergeEngine(_resolver(), tool_runtime=runtime)
        assert runtime.callbacks == [engine.apply_status]

    @pytest.mark.asyncio
    async def test_start_connection_records_result(self):
        runtime = FakeToolRuntime()
        engine = ConnectorMergeEngine(_resolver(), tool_runtime=runtime)
        engine.merge([("ops", {"drive": DRIVE})])

        status = await engine.start_connection("ops:drive")

        assert status.is_available
        assert runtime.started[0][0] == "ops:drive"

    @pytest.mark.asyncio
    async def test_start_failure_becomes_unavailable(self):
        runtime = FakeToolRuntime(error=RuntimeError("spawn failed"))
        engine = ConnectorMergeEngine(_resolver(), tool_runtime=runtime)
        engine.merge([("ops", {"drive": DRIVE})])

        status = await engine.start_connection("ops:drive")

        assert status.state == ConnectionState.UNAVAILABLE
        assert status.code == ErrorCode.CONNECTOR_START_FAILURE
        assert status.reason == "spawn failed"

    @pytest.mark.asyncio
    async def test_unresolvable_connection_is_never_started(self):
        runtime = FakeToolRuntime()
        engine = ConnectorMergeEngine(_resolver(), tool_runtime=runtime)
        engine.merge([("legal", {"chat": SLACK})])

        status = await engine.start_connection("legal:chat")

        assert status.code == ErrorCode.MISSING_CREDENTIAL
        assert runtime.started == []

    @pytest.mark.asyncio
    async def test_notification_during_start_wins(self):
        engine = ConnectorMergeEngine(_resolver())

        class SlowRuntime(FakeToolRuntime):
            async def start(self, key, declaration):
                # The runtime reports a crash before start() returns
                engine.apply_status(key, ConnectionStatus.unavailable("crashed"), 1)
                return ConnectionStatus.available()

        engine.tool_runtime = SlowRuntime()
        engine.merge([("ops", {"drive": DRIVE})])

        status = await engine.start_connection("ops:drive")

        assert status.reason == "crashed"

    @pytest.mark.asyncio
    async def test_schedule_plugin_start_runs_in_background(self):
        runtime = FakeToolRuntime()
        engine = ConnectorMergeEngine(_resolver(), tool_runtime=runtime)
        engine.merge([("ops", {"drive": DRIVE}), ("legal", {"chat": SLACK})])

        task = engine.schedule_plugin_start("ops")
        await task

        assert [key for key, _ in runtime.started] == ["ops:drive"]

    def test_schedule_without_runtime_is_noop(self):
        engine = ConnectorMergeEngine(_resolver())
        assert engine.schedule_plugin_start("ops") is None


class TestRegistryIntegration:
    def test_merge_follows_enable_and_disable(self, plugins_dir, legal_plugin):
        registry = PluginRegistry(plugins_dir, MemoryStateStore())
        engine = ConnectorMergeEngine(_resolver({"SLACK_BOT_TOKEN": "x"}))
        registry.subscribe(engine.on_registry_change)

        registry.enable("legal")
        assert "legal:chat" in engine.connections

        registry.disable("legal")
        assert "legal:chat" not in engine.connections

    def test_listener_receives_snapshot_not_registry(self):
        engine = ConnectorMergeEngine(_resolver())
        change = MagicMock()
        change.snapshot.get_active_connector_sets.return_value = [("ops", {"drive": DRIVE})]

        engine.on_registry_change(change)

        assert "ops:drive" in engine.connections
