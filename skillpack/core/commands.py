"""
Command dispatch.

A command is invoked as ``/plugin_id:command_name [inline text]``. Each
invocation is a small state machine:

    PARSED → INPUTS_COLLECTED → BUILT → DISPATCHED
                 ↘ ABANDONED (caller cancelled)

Syntax errors and unknown commands are raised (BadSyntaxError,
UnknownCommandError) before an invocation exists. Nothing outside the
invocation changes until it reaches BUILT; connector starts for the
owning plugin are only requested at dispatch.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from skillpack.core.connectors import ConnectorMergeEngine
from skillpack.core.context_assembler import AssembledContext, ContextAssembler
from skillpack.core.placeholders import ARGUMENTS_TOKEN, render_categories, substitute_slots
from skillpack.core.registry import PluginRegistry, RegistrySnapshot
from skillpack.lib.text import fuzzy_score
from skillpack.lib.typed_errors import (
    BadSyntaxError,
    InvocationCancelled,
    MissingInputError,
    UnknownCommandError,
)
from skillpack.models.plugin import Command, Plugin

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"

_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedCommand:
    plugin_id: str
    command_name: str
    raw_args: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.plugin_id}:{self.command_name}"


def is_command_input(text: str, prefix: str = COMMAND_PREFIX) -> bool:
    """True when user input is addressed to the command dispatcher."""
    return text.lstrip().startswith(prefix)


def parse_command(text: str, prefix: str = COMMAND_PREFIX) -> ParsedCommand:
    """
    Split ``/plugin:command rest of line`` into its parts.

    Raises:
        BadSyntaxError: missing prefix, missing colon or an invalid name
    """
    stripped = text.strip()
    if not stripped.startswith(prefix):
        raise BadSyntaxError(f"Commands must start with '{prefix}'")

    parts = stripped[len(prefix):].split(None, 1)
    if not parts:
        raise BadSyntaxError(f"Expected {prefix}plugin:command")

    head = parts[0]
    raw_args = parts[1].strip() if len(parts) > 1 else ""
    plugin_id, sep, command_name = head.partition(":")
    if (
        not sep
        or not _NAME_PATTERN.fullmatch(plugin_id)
        or not _NAME_PATTERN.fullmatch(command_name)
    ):
        raise BadSyntaxError(f"Expected {prefix}plugin:command, got '{prefix}{head}'")

    return ParsedCommand(plugin_id=plugin_id.lower(), command_name=command_name, raw_args=raw_args)


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------

class InvocationState(str, Enum):
    PARSED = "parsed"
    INPUTS_COLLECTED = "inputs_collected"
    BUILT = "built"
    DISPATCHED = "dispatched"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class SlotRequest:
    """One input the caller is asked to supply."""

    name: str
    description: str = ""
    required: bool = True


@dataclass(frozen=True)
class CommandPayload:
    """What is handed to the model: system context plus the user turn."""

    system_context: str
    user_turn: str
    context: AssembledContext
    command: Command

    def as_dict(self) -> dict[str, str]:
        return {"systemContext": self.system_context, "userTurn": self.user_turn}


class ModelClient(Protocol):
    async def invoke(self, payload: CommandPayload) -> Any: ...


# Returns slot values, or None to cancel the invocation
InputProvider = Callable[[list[SlotRequest]], Awaitable[Optional[Mapping[str, str]]]]


class CommandInvocation:
    """A single command invocation, bound to the snapshot it was looked up in."""

    def __init__(
        self,
        parsed: ParsedCommand,
        command: Command,
        plugin: Plugin,
        snapshot: RegistrySnapshot,
        assembler: ContextAssembler,
        connectors: ConnectorMergeEngine,
        model_client: Optional[ModelClient] = None,
        token_budget: Optional[int] = None,
    ):
        self.parsed = parsed
        self.command = command
        self.plugin = plugin
        self.snapshot = snapshot
        self.assembler = assembler
        self.connectors = connectors
        self.model_client = model_client
        self.token_budget = token_budget

        self.state = InvocationState.PARSED
        self.values: dict[str, str] = {}
        self.payload: Optional[CommandPayload] = None
        self.response: Any = None
        self._inline_consumed = False
        self._assign_inline(parsed.raw_args)

    @property
    def qualified_name(self) -> str:
        return self.command.qualified_name

    def _assign_inline(self, raw_args: str) -> None:
        # $ARGUMENTS takes the inline text; otherwise the first declared slot does
        if not raw_args:
            self._inline_consumed = True
            return
        if ARGUMENTS_TOKEN in self.command.content:
            return
        for slot in self.command.inputs:
            if slot.name not in self.values:
                self.values[slot.name] = raw_args
                self._inline_consumed = True
                return

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def pending_slots(self) -> list[SlotRequest]:
        """Every declared slot that has no value yet, required or not."""
        return [
            SlotRequest(name=slot.name, description=slot.description, required=slot.required)
            for slot in self.command.inputs
            if slot.name not in self.values
        ]

    @property
    def missing_required(self) -> list[str]:
        return [slot.name for slot in self.command.required_inputs if slot.name not in self.values]

    def supply(self, values: Mapping[str, str]) -> "CommandInvocation":
        """Record slot values. Names the command does not declare are ignored."""
        self._require(InvocationState.PARSED)
        declared = {slot.name for slot in self.command.inputs}
        for name, value in values.items():
            if name not in declared:
                logger.debug(f"Ignoring undeclared input '{name}' for {self.qualified_name}")
                continue
            if value is None:
                continue
            self.values[name] = str(value)
        return self

    async def collect(self, provider: Optional[InputProvider] = None) -> InvocationState:
        """
        Suspend until every required slot has a value.

        The provider is awaited with the outstanding slot requests. Returning
        None, or a round that supplies nothing new, abandons the invocation.

        Raises:
            MissingInputError: required slots are missing and there is no provider
        """
        self._require(InvocationState.PARSED)

        while self.missing_required:
            if provider is None:
                raise MissingInputError(self.qualified_name, self.missing_required)

            outstanding = len(self.missing_required)
            try:
                supplied = await provider(self.pending_slots)
            except asyncio.CancelledError:
                self.cancel()
                raise

            if supplied is None:
                self.cancel()
                return self.state
            self.supply(supplied)
            if len(self.missing_required) >= outstanding:
                logger.info(f"No new inputs supplied for {self.qualified_name}, abandoning")
                self.cancel()
                return self.state

        self.state = InvocationState.INPUTS_COLLECTED
        return self.state

    def cancel(self) -> bool:
        """Abandon the invocation. Only possible before dispatch."""
        if self.state in (InvocationState.DISPATCHED, InvocationState.ABANDONED):
            return False
        self.state = InvocationState.ABANDONED
        self.payload = None
        logger.info(f"Invocation of {self.qualified_name} abandoned")
        return True

    # ------------------------------------------------------------------
    # Build and dispatch
    # ------------------------------------------------------------------

    def build(
        self, conversation_hint: str = "", token_budget: Optional[int] = None
    ) -> CommandPayload:
        """Substitute inputs into the template and assemble the system context."""
        if self.state == InvocationState.PARSED and not self.missing_required:
            self.state = InvocationState.INPUTS_COLLECTED
        if self.state == InvocationState.PARSED:
            raise MissingInputError(self.qualified_name, self.missing_required)
        self._require(InvocationState.INPUTS_COLLECTED)

        connections = self.connectors.connections
        template = render_categories(self.command.content, self.plugin.id, connections).text

        # Unfilled optional slots render empty rather than as raw tokens
        values = {slot.name: "" for slot in self.command.inputs}
        values.update(self.values)
        arguments = self.parsed.raw_args if ARGUMENTS_TOKEN in template else None
        user_turn = substitute_slots(template, values, arguments).strip()
        if not self._inline_consumed and arguments is None:
            user_turn = f"{user_turn}\n\n{self.parsed.raw_args}" if user_turn else self.parsed.raw_args

        context = self.assembler.build(
            self.snapshot.enabled_plugins(),
            connections,
            conversation_hint=conversation_hint or user_turn,
            token_budget=token_budget if token_budget is not None else self.token_budget,
            invoked_command=self.command,
        )

        self.payload = CommandPayload(
            system_context=context.text,
            user_turn=user_turn,
            context=context,
            command=self.command,
        )
        self.state = InvocationState.BUILT
        logger.debug(
            f"Built {self.qualified_name}: {context.estimated_tokens} context tokens, "
            f"truncated={context.truncated}"
        )
        return self.payload

    async def dispatch(self, model_client: Optional[ModelClient] = None) -> Any:
        """Hand the built payload to the model client and return its response."""
        self._require(InvocationState.BUILT)

        self.connectors.schedule_plugin_start(self.plugin.id)
        client = model_client or self.model_client
        self.state = InvocationState.DISPATCHED
        logger.info(f"Dispatched {self.qualified_name}")
        if client is None:
            return None
        self.response = await client.invoke(self.payload)
        return self.response

    def _require(self, expected: InvocationState) -> None:
        if self.state == InvocationState.ABANDONED:
            raise InvocationCancelled(self.qualified_name)
        if self.state != expected:
            raise RuntimeError(
                f"Invocation of {self.qualified_name} is {self.state.value}, "
                f"expected {expected.value}"
            )


# ---------------------------------------------------------------------------
# Autocomplete
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandSuggestion:
    qualified_name: str
    description: str
    argument_hint: Optional[str] = None
    score: int = 0


@dataclass(frozen=True)
class SuggestionGroup:
    plugin_id: str
    plugin_name: str
    suggestions: tuple[CommandSuggestion, ...] = field(default_factory=tuple)

    @property
    def names(self) -> list[str]:
        return [s.qualified_name for s in self.suggestions]


def _best(*scores: Optional[int]) -> Optional[int]:
    matched = [s for s in scores if s is not None]
    return min(matched) if matched else None


def _plugin_prefix_match(query: str, plugin: Plugin) -> bool:
    query = query.lower()
    return plugin.id.startswith(query) or plugin.name.lower().startswith(query)


def autocomplete(
    snapshot: RegistrySnapshot, text: str, prefix: str = COMMAND_PREFIX
) -> list[SuggestionGroup]:
    """
    Suggest commands of enabled plugins for partial input, grouped by plugin.

    ``/legal:`` lists every command of plugin "legal". Without a colon the
    query is matched fuzzily against command names, plugin ids and plugin
    display names. Groups are ordered by their best match, then by
    registration order.
    """
    query = text.strip()
    if query.startswith(prefix):
        query = query[len(prefix):]

    plugin_query: Optional[str] = None
    if ":" in query:
        plugin_query, _, query = query.partition(":")

    ranked: list[tuple[int, int, SuggestionGroup]] = []
    for position, plugin in enumerate(snapshot.enabled_plugins()):
        if plugin_query is not None and not _plugin_prefix_match(plugin_query, plugin):
            continue

        suggestions: list[CommandSuggestion] = []
        for command in plugin.commands:
            # Duplicates of an earlier plugin's command are not dispatchable
            if snapshot.get_command_handler(command.qualified_name) is not command:
                continue
            if plugin_query is not None:
                score = fuzzy_score(query, command.name)
            else:
                score = _best(
                    fuzzy_score(query, command.name),
                    fuzzy_score(query, command.qualified_name),
                    fuzzy_score(query, plugin.id),
                    fuzzy_score(query, plugin.name),
                )
            if score is None:
                continue
            suggestions.append(CommandSuggestion(
                qualified_name=command.qualified_name,
                description=command.description,
                argument_hint=command.argument_hint,
                score=score,
            ))

        if suggestions:
            suggestions.sort(key=lambda s: s.score)
            group = SuggestionGroup(plugin.id, plugin.name, tuple(suggestions))
            ranked.append((suggestions[0].score, position, group))

    ranked.sort(key=lambda item: (item[0], item[1]))
    return [group for _, _, group in ranked]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class CommandDispatcher:
    """Entry point for slash-command input."""

    def __init__(
        self,
        registry: PluginRegistry,
        assembler: ContextAssembler,
        connectors: ConnectorMergeEngine,
        model_client: Optional[ModelClient] = None,
        prefix: str = COMMAND_PREFIX,
        token_budget: Optional[int] = None,
    ):
        self.registry = registry
        self.assembler = assembler
        self.connectors = connectors
        self.model_client = model_client
        self.prefix = prefix
        self.token_budget = token_budget

    def is_command(self, text: str) -> bool:
        return is_command_input(text, self.prefix)

    def parse(self, text: str) -> ParsedCommand:
        return parse_command(text, self.prefix)

    def begin(self, text: str) -> CommandInvocation:
        """
        Parse and look up a command against the current snapshot.

        Raises:
            BadSyntaxError: input is not ``/plugin:command``
            UnknownCommandError: no enabled plugin provides the command
        """
        parsed = self.parse(text)
        snapshot = self.registry.snapshot
        command = snapshot.get_command_handler(parsed.qualified_name)
        if command is None:
            logger.info(f"Unknown command: {parsed.qualified_name}")
            raise UnknownCommandError(parsed.qualified_name)

        return CommandInvocation(
            parsed=parsed,
            command=command,
            plugin=snapshot.get_plugin(command.plugin_id),
            snapshot=snapshot,
            assembler=self.assembler,
            connectors=self.connectors,
            model_client=self.model_client,
            token_budget=self.token_budget,
        )

    async def run(
        self,
        text: str,
        provider: Optional[InputProvider] = None,
        conversation_hint: str = "",
        token_budget: Optional[int] = None,
    ) -> CommandInvocation:
        """Drive one invocation from parsing to dispatch.

        An abandoned invocation is returned in the ABANDONED state without
        building or dispatching anything.
        """
        invocation = self.begin(text)
        if await invocation.collect(provider) == InvocationState.ABANDONED:
            return invocation
        invocation.build(conversation_hint=conversation_hint, token_budget=token_budget)
        await invocation.dispatch()
        return invocation

    def autocomplete(self, text: str) -> list[SuggestionGroup]:
        return autocomplete(self.registry.snapshot, text, self.prefix)
