"""
skillpack CLI.

Usage:
    skillpack list                        # Plugins with status and issues
    skillpack enable ID                   # Enable a plugin (persisted)
    skillpack disable ID                  # Disable a plugin (persisted)
    skillpack reload                      # Re-discover plugins from disk
    skillpack commands [PREFIX]           # Autocomplete commands
    skillpack connectors                  # Merged connections and status
    skillpack context [--hint H] [--budget N]
                                          # Print the assembled plugin context
    skillpack render /plugin:cmd [ARGS] [--input k=v ...]
                                          # Print a built command payload
    skillpack config show                 # Show current config
    skillpack config set KEY VALUE        # Set a config value
    skillpack config get KEY              # Get a config value
"""

import argparse
import json
import logging
import os
import sys

from skillpack.config import (
    CONFIG_KEYS,
    Settings,
    get_config_path,
    load_yaml_config,
    save_yaml_config,
)
from skillpack.core.runtime import PluginRuntime
from skillpack.lib.typed_errors import SkillpackError


# --- Helpers ---


def _runtime(settings: Settings) -> PluginRuntime:
    return PluginRuntime(settings)


def _parse_inputs(pairs: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            print(f"Error: --input expects KEY=VALUE, got '{pair}'")
            sys.exit(2)
        values[key] = value
    return values


# --- Plugin commands ---


def cmd_list(args: argparse.Namespace, settings: Settings) -> None:
    """List discovered plugins (offline)."""
    runtime = _runtime(settings)
    plugins = runtime.snapshot.all_plugins()
    if not plugins:
        print(f"No plugins found in {settings.plugins_path}")
        return

    id_width = max(len(p.id) for p in plugins)
    ver_width = max(len(p.version) for p in plugins)
    for p in plugins:
        print(
            f"  {p.id:<{id_width}}  "
            f"v{p.version:<{ver_width}}  "
            f"{p.status.value:<8}  "
            f"{len(p.skills)} skills, {len(p.commands)} commands, "
            f"{len(p.connectors)} connectors"
        )
        for issue in p.errors:
            print(f"      ! {issue}")

    for warning in runtime.snapshot.warnings:
        print(f"  warning: {warning}")


def cmd_enable(args: argparse.Namespace, settings: Settings) -> None:
    plugin = _runtime(settings).enable(args.id)
    print(f"Enabled {plugin.id} ({plugin.status.value})")


def cmd_disable(args: argparse.Namespace, settings: Settings) -> None:
    plugin = _runtime(settings).disable(args.id)
    print(f"Disabled {plugin.id}")


def cmd_reload(args: argparse.Namespace, settings: Settings) -> None:
    snapshot = _runtime(settings).reload()
    print(f"Reloaded {len(snapshot)} plugins ({len(snapshot.enabled_plugins())} enabled)")


def cmd_commands(args: argparse.Namespace, settings: Settings) -> None:
    """Autocomplete commands of enabled plugins."""
    groups = _runtime(settings).autocomplete(args.prefix or "")
    if not groups:
        print("No matching commands.")
        return
    for group in groups:
        print(f"\n{group.plugin_name} ({group.plugin_id})")
        for s in group.suggestions:
            hint = f" {s.argument_hint}" if s.argument_hint else ""
            print(f"  {settings.command_prefix}{s.qualified_name}{hint}  {s.description}")


def cmd_connectors(args: argparse.Namespace, settings: Settings) -> None:
    """Show merged connections for enabled plugins."""
    connections = _runtime(settings).connections
    if not len(connections):
        print("No connections declared by enabled plugins.")
        return
    for entry in connections.entries.values():
        print(f"  {entry.key:<30} {entry.tool_name:<20} {entry.status}")


def cmd_context(args: argparse.Namespace, settings: Settings) -> None:
    """Print the assembled plugin context."""
    context = _runtime(settings).build_context(
        conversation_hint=args.hint or "", token_budget=args.budget
    )
    print(context.text)
    print(
        f"\n--- {context.estimated_tokens} tokens, "
        f"truncated={context.truncated}, plugins={', '.join(context.included_plugin_ids)}",
        file=sys.stderr,
    )


def cmd_render(args: argparse.Namespace, settings: Settings) -> None:
    """Build a command payload without dispatching it."""
    runtime = _runtime(settings)
    text = " ".join([args.command_text] + list(args.args or []))
    invocation = runtime.begin_command(text)
    invocation.supply(_parse_inputs(args.input or []))
    if invocation.missing_required:
        print(f"Missing inputs: {', '.join(invocation.missing_required)}")
        for slot in invocation.pending_slots:
            flag = "required" if slot.required else "optional"
            print(f"  --input {slot.name}=...  ({flag}) {slot.description}")
        sys.exit(1)

    payload = invocation.build(conversation_hint=args.hint or "", token_budget=args.budget)
    if args.json:
        print(json.dumps(payload.as_dict(), indent=2))
    else:
        print("=== System context ===")
        print(payload.system_context)
        print("\n=== User turn ===")
        print(payload.user_turn)


# --- Config commands ---


def cmd_config(args: argparse.Namespace, settings: Settings) -> None:
    """Config management: show, set, get."""
    action = getattr(args, "action", None)

    if action == "show":
        _config_show(settings)
    elif action == "set":
        _config_set(settings, args.key, args.value)
    elif action == "get":
        _config_get(settings, args.key)
    else:
        print("Usage: skillpack config {show|set|get}")


def _config_show(settings: Settings) -> None:
    """Show current config with effective values."""
    print(f"\nConfig: {get_config_path(settings.home_path)}")
    print("-" * 40)
    print(f"  home: {settings.home_path}")
    print(f"  plugins_dir: {settings.plugins_path}")
    print(f"  state_file: {settings.state_path}")
    print(f"  credentials_file: {settings.credentials_path}")
    print(f"  token_budget: {settings.token_budget}")
    print(f"  command_prefix: {settings.command_prefix}")
    print(f"  log_level: {settings.log_level}")


def _config_set(settings: Settings, key: str, value: str) -> None:
    """Set a config value."""
    if key not in CONFIG_KEYS:
        print(f"Unknown key: {key}")
        print(f"Valid keys: {', '.join(sorted(CONFIG_KEYS))}")
        sys.exit(1)

    config = load_yaml_config(settings.home_path)

    if key == "token_budget":
        try:
            value = int(value)
        except ValueError:
            print(f"Error: token_budget must be an integer, got '{value}'")
            sys.exit(1)

    config[key] = value
    save_yaml_config(settings.home_path, config)
    print(f"Set {key} = {value}")


def _config_get(settings: Settings, key: str) -> None:
    """Get a single config value."""
    env_val = os.environ.get(f"SKILLPACK_{key.upper()}")
    if env_val:
        print(env_val)
        return

    config = load_yaml_config(settings.home_path)
    if key in config:
        print(config[key])
    else:
        print(f"Key '{key}' not set in config.yaml")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="skillpack",
        description="skillpack: plugin skills, commands and connectors for model sessions",
    )
    subparsers = parser.add_subparsers(dest="command")

    # plugins
    subparsers.add_parser("list", help="List plugins")
    enable_parser = subparsers.add_parser("enable", help="Enable a plugin")
    enable_parser.add_argument("id", help="Plugin id")
    disable_parser = subparsers.add_parser("disable", help="Disable a plugin")
    disable_parser.add_argument("id", help="Plugin id")
    subparsers.add_parser("reload", help="Re-discover plugins from disk")

    # commands
    commands_parser = subparsers.add_parser("commands", help="List or autocomplete commands")
    commands_parser.add_argument("prefix", nargs="?", help="Partial command, e.g. /legal:")

    subparsers.add_parser("connectors", help="Show merged connections")

    # context
    context_parser = subparsers.add_parser("context", help="Print the assembled context")
    context_parser.add_argument("--hint", help="Conversation hint for skill ranking")
    context_parser.add_argument("--budget", type=int, help="Token budget")

    # render
    render_parser = subparsers.add_parser("render", help="Build a command payload")
    render_parser.add_argument(
        "command_text", metavar="COMMAND", help="Command, e.g. /legal:triage-nda"
    )
    render_parser.add_argument("args", nargs="*", help="Inline arguments")
    render_parser.add_argument(
        "--input", "-i", action="append",
        help="Slot value as KEY=VALUE (repeatable)",
    )
    render_parser.add_argument("--hint", help="Conversation hint for skill ranking")
    render_parser.add_argument("--budget", type=int, help="Token budget")
    render_parser.add_argument("--json", action="store_true", help="Print the payload as JSON")

    # config subcommand
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_sub = config_parser.add_subparsers(dest="action")
    config_sub.add_parser("show", help="Show current config")
    config_set_parser = config_sub.add_parser("set", help="Set a config value")
    config_set_parser.add_argument("key", help="Config key")
    config_set_parser.add_argument("value", help="Config value")
    config_get_parser = config_sub.add_parser("get", help="Get a config value")
    config_get_parser.add_argument("key", help="Config key")

    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )

    handlers = {
        "list": cmd_list,
        "enable": cmd_enable,
        "disable": cmd_disable,
        "reload": cmd_reload,
        "commands": cmd_commands,
        "connectors": cmd_connectors,
        "context": cmd_context,
        "render": cmd_render,
        "config": cmd_config,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return

    try:
        handler(args, settings)
    except SkillpackError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
