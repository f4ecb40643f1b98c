"""
Schema definitions for Toolgate.

This module defines the Pydantic models used throughout Toolgate:
- ToolPolicy/InvocationRule: What an administrator configured
- InvocationRequest/InvocationVerdict: One attempt and its resolved action
- InvocationRecord: The durable audit entry of an attempt
- PolicyDocument: YAML format for declaring policies in bulk

Operators and actions are closed enums. An unknown operator or action string
fails model validation, so bad rules are rejected when they are loaded and
never reach the evaluator.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def generate_id() -> str:
    """Generate a unique ID for policies, rules and records."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class RuleOperator(str, Enum):
    """Comparison operators a rule can apply to one argument."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"

    @property
    def is_existence_check(self) -> bool:
        return self in (RuleOperator.EXISTS, RuleOperator.NOT_EXISTS)

    @property
    def is_numeric(self) -> bool:
        return self in (RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN)


class RuleAction(str, Enum):
    """
    What happens when a rule matches.

    Ordered by restrictiveness: DENY beats REQUIRE_CONFIRMATION beats ALLOW.
    """

    ALLOW = "allow"
    REQUIRE_CONFIRMATION = "require_confirmation"
    DENY = "deny"

    @property
    def severity(self) -> int:
        return _ACTION_SEVERITY[self]


_ACTION_SEVERITY = {
    RuleAction.ALLOW: 0,
    RuleAction.REQUIRE_CONFIRMATION: 1,
    RuleAction.DENY: 2,
}


class DefaultVerdict(str, Enum):
    """Verdict used when no rule matched."""

    ALLOW = "allow"
    DENY = "deny"


class InvocationState(str, Enum):
    """Mediation state machine of one invocation attempt."""

    RECEIVED = "received"
    PENDING_CONFIRMATION = "pending_confirmation"
    ALLOWED = "allowed"
    COMPLETED = "completed"
    FAILED = "failed"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InvocationState.COMPLETED,
            InvocationState.FAILED,
            InvocationState.DENIED,
        )


class InvocationOutcome(str, Enum):
    """Audit-facing outcome of an invocation attempt."""

    EXECUTED_SUCCESS = "executed_success"
    EXECUTED_ERROR = "executed_error"
    BLOCKED = "blocked"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    REJECTED_BY_HUMAN = "rejected_by_human"


class ConfirmationStatus(str, Enum):
    """How a confirmation request was resolved."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


# =============================================================================
# Policy Models
# =============================================================================


def _coerce_operand(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


class InvocationRule(BaseModel):
    """
    One argument-level predicate plus the action to take when it matches.

    Attributes:
        argument_name: Argument the rule inspects. Dotted paths descend into
            nested mappings and ``[*]`` fans out over a list.
        operator: Comparison operator
        value: Comparison operand, always stored as a string
        action: Action taken when the rule matches
        reason: Explanation surfaced to the caller when the rule fires
        position: Creation order inside the parent policy
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=generate_id)
    tool_policy_id: str = Field(..., min_length=1)
    argument_name: str = Field(..., min_length=1)
    operator: RuleOperator
    value: str = ""
    action: RuleAction
    reason: str | None = None
    position: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        """Operands are stored as strings whatever YAML or JSON gave us."""
        return _coerce_operand(v)


class ToolPolicy(BaseModel):
    """
    A named, ordered collection of rules scoped to a tool or tool class.

    Attributes:
        name: Unique policy name
        tool_name: Tool name or fnmatch pattern (e.g. "fs.*")
        agent_id: Agent the policy is scoped to; None means every agent
        allow_usage_when_untrusted_data_is_present: Whether the tool may run
            while the agent's context carries untrusted data
        rules: Rules in creation order
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=generate_id)
    name: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    agent_id: str | None = None
    allow_usage_when_untrusted_data_is_present: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    rules: tuple[InvocationRule, ...] = ()


# =============================================================================
# Runtime Models
# =============================================================================


class InvocationRequest(BaseModel):
    """
    A single attempt by an agent to call a tool.

    Never mutated after creation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    agent_id: str | None = None
    session_id: str | None = None
    context_is_trusted: bool = True


class DefectiveRule(BaseModel):
    """A rule skipped during resolution because it could not be evaluated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str
    tool_policy_id: str
    error: str
    error_code: int


class InvocationVerdict(BaseModel):
    """
    The single resolved action for one invocation attempt.

    Attributes:
        action: Resolved action
        reason: Reason of the winning rule, or a default reason
        rule_id: Winning rule (None when the default applied)
        policy_id: Policy of the winning rule
        defective_rules: Rules that were skipped with a configuration error
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: RuleAction
    reason: str
    rule_id: str | None = None
    policy_id: str | None = None
    defective_rules: tuple[DefectiveRule, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.action == RuleAction.ALLOW

    @property
    def is_default(self) -> bool:
        return self.rule_id is None


class InvocationRecord(BaseModel):
    """
    Durable audit entry of one invocation attempt.

    Created when the attempt is received and updated on every transition.
    """

    model_config = ConfigDict(extra="forbid")

    record_id: str = Field(default_factory=generate_id)
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    agent_id: str | None = None
    session_id: str | None = None
    state: InvocationState = InvocationState.RECEIVED
    outcome: InvocationOutcome | None = None
    verdict: InvocationVerdict | None = None
    reason: str | None = None
    output: Any | None = None
    error: str | None = None
    input_hash: str = ""
    output_hash: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_request(cls, request: InvocationRequest) -> "InvocationRecord":
        return cls(
            tool_name=request.tool_name,
            arguments=dict(request.arguments),
            agent_id=request.agent_id,
            session_id=request.session_id,
        )


# =============================================================================
# Policy Documents
# =============================================================================


class RuleSpec(BaseModel):
    """A rule as written in a policy document."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    argument_name: str = Field(..., alias="argument", min_length=1)
    operator: RuleOperator
    value: str = ""
    action: RuleAction
    reason: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        return _coerce_operand(v)


class PolicySpec(BaseModel):
    """A policy as written in a policy document."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    tool_name: str = Field(..., alias="tool", min_length=1)
    agent_id: str | None = Field(default=None, alias="agent")
    allow_usage_when_untrusted_data_is_present: bool = False
    rules: list[RuleSpec] = Field(default_factory=list)


class PolicyDocument(BaseModel):
    """
    A YAML file declaring policies.

    Example:
        policies:
          - name: protect-etc
            tool: fs.read
            rules:
              - argument: path
                operator: matches_regex
                value: "^/etc/"
                action: deny
                reason: restricted path
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "1.0"
    policies: list[PolicySpec] = Field(default_factory=list)


def load_policy_document(path: Path | str) -> PolicyDocument:
    """
    Load a policy document from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return PolicyDocument.model_validate(data or {})


def load_policy_document_from_string(content: str) -> PolicyDocument:
    """Load a policy document from a YAML string."""
    data = yaml.safe_load(content)
    return PolicyDocument.model_validate(data or {})
