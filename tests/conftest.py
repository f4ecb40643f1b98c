"""
Pytest configuration and fixtures for Toolgate tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

from toolgate.schema import InvocationRule, RuleAction, RuleOperator, ToolPolicy
from toolgate.store import GateDB


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir: Path) -> Generator[GateDB, None, None]:
    """Create a database instance in a temporary directory."""
    database = GateDB(temp_dir / "toolgate.db")
    yield database
    database.close()


def _make_policy(
    *rules: tuple[str, str, Any, str] | tuple[str, str, Any, str, str],
    tool_name: str = "fs.read",
    name: str = "test-policy",
    agent_id: str | None = None,
    allow_untrusted: bool = False,
) -> ToolPolicy:
    """
    Build an in-memory policy from (argument, operator, value, action[, reason]) tuples.

    Rules get positions in the order given.
    """
    policy = ToolPolicy(
        name=name,
        tool_name=tool_name,
        agent_id=agent_id,
        allow_usage_when_untrusted_data_is_present=allow_untrusted,
    )
    built = []
    for position, spec in enumerate(rules):
        argument, operator, value, action = spec[:4]
        reason = spec[4] if len(spec) > 4 else None
        built.append(
            InvocationRule(
                tool_policy_id=policy.id,
                argument_name=argument,
                operator=RuleOperator(operator),
                value=value,
                action=RuleAction(action),
                reason=reason,
                position=position,
            )
        )
    return policy.model_copy(update={"rules": tuple(built)})


@pytest.fixture
def make_policy():
    """Factory building in-memory policies; see _make_policy."""
    return _make_policy


@pytest.fixture
def sample_policy_yaml() -> str:
    """Return a policy document covering the common rule shapes."""
    return """
version: "1.0"
policies:
  - name: protect-etc
    tool: fs.read
    rules:
      - argument: path
        operator: matches_regex
        value: "^/etc/"
        action: deny
        reason: restricted path
  - name: confirm-large-writes
    tool: "fs.*"
    agent: agent-1
    rules:
      - argument: size
        operator: greater_than
        value: 1000
        action: require_confirmation
        reason: large write
"""
