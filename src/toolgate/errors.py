"""
Exception hierarchy for Toolgate.

All Toolgate exceptions inherit from ToolgateError, allowing callers to catch
all Toolgate-specific exceptions with a single except clause.

Exception Categories:
    - ConfigurationError: A rule is malformed (bad regex, non-numeric operand)
    - PolicyDeniedError: Tool invocation blocked by a verdict or a human
    - ProviderError: The forwarded tool call itself failed
    - StoreUnavailableError: Rule store or audit sink could not be reached

Handling:
    - ConfigurationError raised while resolving is recovered locally: the rule
      is skipped and reported, the remaining rules are still evaluated.
    - StoreUnavailableError always fails the mediation attempt closed.
    - ProviderError is recorded as Failed, never as Denied.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Configuration errors: 1xxx
ERROR_CONFIG_INVALID_RULE = 1001
ERROR_CONFIG_INVALID_REGEX = 1002
ERROR_CONFIG_INVALID_OPERAND = 1003
ERROR_CONFIG_RULE_LIMIT = 1004

# Policy errors: 2xxx
ERROR_POLICY_DENIED = 2001
ERROR_POLICY_CONFIRMATION_TIMEOUT = 2002
ERROR_POLICY_CONFIRMATION_REJECTED = 2003

# Provider errors: 3xxx
ERROR_TOOL_NOT_FOUND = 3001
ERROR_TOOL_EXECUTION_FAILED = 3002
ERROR_TOOL_TIMEOUT = 3003

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003
ERROR_STORAGE_NOT_FOUND = 5004


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class ToolgateError(Exception):
    """
    Base exception for all Toolgate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(ToolgateError):
    """
    Raised when a rule cannot be evaluated because it is malformed.

    Inside the resolver this never becomes a denial: the rule is logged,
    reported as defective and skipped.

    Attributes:
        rule_id: ID of the offending rule, if known
        operator: Operator of the offending rule
        rule_value: Operand of the offending rule
    """

    rule_id: str | None = None
    operator: str = ""
    rule_value: str = ""

    def __post_init__(self) -> None:
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID_RULE
        self.context.update({
            "rule_id": self.rule_id,
            "operator": self.operator,
            "rule_value": self.rule_value,
        })


@dataclass
class InvalidRegexError(ConfigurationError):
    """Raised when a matches_regex operand does not compile."""

    pattern_error: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Invalid regular expression {self.rule_value!r}: {self.pattern_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID_REGEX
        if not self.suggestion:
            self.suggestion = "Fix the pattern; it is compiled with Python's re module"
        super().__post_init__()
        self.context["pattern_error"] = self.pattern_error


@dataclass
class InvalidOperandError(ConfigurationError):
    """Raised when a numeric operator gets a non-numeric operand."""

    observed_value: Any = None

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"Operator {self.operator} needs numbers, "
                f"got rule value {self.rule_value!r} and argument {self.observed_value!r}"
            )
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID_OPERAND
        super().__post_init__()
        self.context["observed_value"] = self.observed_value


@dataclass
class RuleValidationError(ConfigurationError):
    """Raised when a rule is rejected before it reaches the store."""

    field_name: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Invalid rule field: {self.field_name}"
        super().__post_init__()
        self.context["field_name"] = self.field_name


@dataclass
class RuleLimitExceededError(ConfigurationError):
    """Raised when a policy would hold more rules than allowed."""

    policy_id: str = ""
    max_rules: int = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Policy {self.policy_id} already holds {self.max_rules} rules"
        if self.code == 0:
            self.code = ERROR_CONFIG_RULE_LIMIT
        if not self.suggestion:
            self.suggestion = "Split the rules across policies or raise max_rules_per_policy"
        super().__post_init__()
        self.context.update({
            "policy_id": self.policy_id,
            "max_rules": self.max_rules,
        })


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyDeniedError(ToolgateError):
    """
    Raised when a tool invocation is blocked.

    Attributes:
        tool: Name of the tool that was blocked
        tool_args: Arguments that were provided
        reason: Why the invocation was denied
        rule_id: Which rule caused the denial (None for defaults)
        record_id: Audit record of the attempt
    """

    tool: str = ""
    tool_args: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    rule_id: str | None = None
    record_id: str | None = None

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Policy denied {self.tool}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_POLICY_DENIED
        self.context.update({
            "tool": self.tool,
            "tool_args": self.tool_args,
            "reason": self.reason,
            "rule_id": self.rule_id,
            "record_id": self.record_id,
        })


@dataclass
class ConfirmationTimeoutError(PolicyDeniedError):
    """Raised when nobody answered a confirmation request in time."""

    timeout_seconds: float = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Confirmation for {self.tool} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_POLICY_CONFIRMATION_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Answer pending confirmations sooner or raise confirmation_timeout_seconds"
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


# =============================================================================
# Provider Errors
# =============================================================================


@dataclass
class ProviderError(ToolgateError):
    """
    Base class for failures of the forwarded tool call.

    These happen after the policy allowed the invocation and are
    the provider's failure, not a policy failure.

    Attributes:
        tool: Name of the tool that failed
        tool_args: Arguments that were provided
    """

    tool: str = ""
    tool_args: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.code == 0:
            self.code = ERROR_TOOL_EXECUTION_FAILED
        self.context.update({
            "tool": self.tool,
            "tool_args": self.tool_args,
        })


@dataclass
class ToolNotFoundError(ProviderError):
    """Raised when no provider knows the tool."""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool not found: {self.tool}"
        if self.code == 0:
            self.code = ERROR_TOOL_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Check tool name spelling or register the tool"
        super().__post_init__()


@dataclass
class ToolExecutionError(ProviderError):
    """Raised when a tool fails during execution."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool {self.tool} failed: {self.underlying_error}"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class ToolTimeoutError(ProviderError):
    """Raised when a forwarded call exceeds its timeout."""

    timeout_seconds: float = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool {self.tool} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_TOOL_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Increase provider_timeout_seconds or check the provider"
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StoreUnavailableError(ToolgateError):
    """
    Base class for rule store and audit sink failures.

    Mediation fails closed on these: nothing is forwarded.

    Attributes:
        operation: The operation that failed (e.g., "append_record")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Store unavailable during {self.operation}"
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StoreUnavailableError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StoreUnavailableError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StoreUnavailableError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class NotFoundError(ToolgateError):
    """Raised when a policy, rule or record ID does not exist."""

    entity: str = ""
    entity_id: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"{self.entity} not found: {self.entity_id}"
        if self.code == 0:
            self.code = ERROR_STORAGE_NOT_FOUND
        self.context.update({
            "entity": self.entity,
            "entity_id": self.entity_id,
        })
