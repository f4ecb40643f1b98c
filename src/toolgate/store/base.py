"""
Storage boundaries used by the mediator.

The mediator only depends on these protocols; GateDB implements both on
top of SQLite, and tests can substitute their own.
"""

from typing import Any, Protocol

from toolgate.schema import (
    DefectiveRule,
    InvocationOutcome,
    InvocationRecord,
    InvocationState,
    InvocationVerdict,
    ToolPolicy,
)


class RuleStore(Protocol):
    """Read side of the rule store as seen by mediation."""

    @property
    def version(self) -> int:
        """Counter bumped by every policy or rule write."""
        ...

    def policies_for(self, tool_name: str, agent_id: str | None = None) -> list[ToolPolicy]:
        """Policies applicable to a tool call, each with its ordered rules."""
        ...


class AuditSink(Protocol):
    """Append/update-only record of invocation attempts."""

    def append_record(self, record: InvocationRecord) -> None:
        ...

    def update_record_outcome(
        self,
        record_id: str,
        state: InvocationState,
        outcome: InvocationOutcome | None = None,
        verdict: InvocationVerdict | None = None,
        reason: str | None = None,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        ...

    def report_defective_rule(self, record_id: str, defect: DefectiveRule) -> None:
        ...
