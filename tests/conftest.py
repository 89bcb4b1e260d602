"""
Pytest configuration and fixtures.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import pytest

from tests.fakes import MemoryFileSource, write_plugin

# Set test environment
os.environ["SKILLPACK_HOME"] = tempfile.mkdtemp(prefix="skillpack-test-")
os.environ["SKILLPACK_LOG_LEVEL"] = "WARNING"


LEGAL_SKILLS = {
    "contract-review/SKILL.md": (
        "---\n"
        "description: Review commercial contracts clause by clause\n"
        "---\n"
        "# Contract Review\n\n"
        "Check indemnity, liability caps and termination clauses.\n"
        "Share the summary with the team in ~~chat.\n"
    ),
    "nda-triage/SKILL.md": (
        "---\n"
        "description: Triage incoming NDAs\n"
        "---\n"
        "# NDA Triage\n\n"
        "Classify the NDA as standard, needs review or reject.\n"
    ),
}

LEGAL_COMMANDS = {
    "review-contract": (
        "---\n"
        "description: Review a contract against the playbook\n"
        "argument-hint: <contract text>\n"
        "---\n"
        "Review this contract using the contract-review skill:\n\n$ARGUMENTS\n"
    ),
    "triage-nda": (
        "---\n"
        "description: Triage an NDA\n"
        "inputs:\n"
        "  - name: nda_text\n"
        "    description: Full text of the NDA\n"
        "  - name: counterparty\n"
        "    required: false\n"
        "---\n"
        "Triage the following NDA from {{counterparty}} using nda-triage.\n\n"
        "{{nda_text}}\n"
    ),
}

LEGAL_CONNECTORS = {
    "mcpServers": {
        "chat": {
            "name": "Slack",
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-slack"],
            "env": {"SLACK_BOT_TOKEN": "${SLACK_BOT_TOKEN}"},
        },
    },
}

FINANCE_SKILLS = {
    "reconciliation": (
        "# Reconciliation\n\nMatch ledger entries against bank statements.\n"
    ),
}

FINANCE_COMMANDS = {
    "reconcile": "# Reconcile accounts for a period\n\nReconcile {{period}}.\n",
    "close-books": "# Close the books\n\nRun month-end close.\n",
}


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def make_plugin(plugins_dir: Path) -> Callable[..., Path]:
    def _make(dir_name: str, **kwargs: Any) -> Path:
        return write_plugin(plugins_dir, dir_name, **kwargs)

    return _make


@pytest.fixture
def legal_plugin(make_plugin) -> Path:
    return make_plugin(
        "legal",
        manifest={
            "name": "Legal",
            "version": "1.2.0",
            "description": "Contract review and NDA triage",
            "author": {"name": "Legal Ops"},
        },
        skills=LEGAL_SKILLS,
        commands=LEGAL_COMMANDS,
        connectors=LEGAL_CONNECTORS,
        local_config="# Legal settings\n\nJurisdiction: Delaware\n",
    )


@pytest.fixture
def finance_plugin(make_plugin) -> Path:
    return make_plugin(
        "finance",
        manifest={"name": "Finance", "version": "0.3.0", "description": "Month-end close"},
        skills=FINANCE_SKILLS,
        commands=FINANCE_COMMANDS,
    )


@pytest.fixture
def memory_files() -> MemoryFileSource:
    return MemoryFileSource()
