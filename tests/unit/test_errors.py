"""
Unit tests for error hierarchy.

Tests cover:
- Base ToolgateError behavior
- Configuration errors with rule context
- Policy denials and confirmation timeouts
- Provider and storage errors
- Error serialization
"""

import pytest

from toolgate.errors import (
    ERROR_CONFIG_INVALID_OPERAND,
    ERROR_CONFIG_INVALID_REGEX,
    ERROR_CONFIG_RULE_LIMIT,
    ERROR_POLICY_CONFIRMATION_TIMEOUT,
    ERROR_POLICY_DENIED,
    ERROR_STORAGE_CONNECTION,
    ERROR_STORAGE_NOT_FOUND,
    ERROR_TOOL_EXECUTION_FAILED,
    ERROR_TOOL_NOT_FOUND,
    ERROR_TOOL_TIMEOUT,
    ConfigurationError,
    ConfirmationTimeoutError,
    InvalidOperandError,
    InvalidRegexError,
    NotFoundError,
    PolicyDeniedError,
    ProviderError,
    RuleLimitExceededError,
    RuleValidationError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
    StoreUnavailableError,
    ToolExecutionError,
    ToolgateError,
    ToolNotFoundError,
    ToolTimeoutError,
)


class TestToolgateError:
    """Tests for base ToolgateError."""

    def test_basic_error(self) -> None:
        err = ToolgateError(message="Something went wrong", code=9999)
        assert err.message == "Something went wrong"
        assert err.code == 9999
        assert err.suggestion is None
        assert err.context == {}

    def test_str_format(self) -> None:
        err = ToolgateError(message="Failed", code=1, suggestion="Try again")
        assert str(err) == "[E1] Failed\nSuggestion: Try again"

    def test_to_dict(self) -> None:
        err = ToolgateError(message="Failed", code=42, context={"k": "v"})
        assert err.to_dict() == {
            "error_type": "ToolgateError",
            "message": "Failed",
            "code": 42,
            "suggestion": None,
            "context": {"k": "v"},
        }

    def test_can_be_raised(self) -> None:
        with pytest.raises(ToolgateError) as exc_info:
            raise ToolgateError(message="boom", code=1)
        assert exc_info.value.message == "boom"


class TestConfigurationErrors:
    """Tests for rule configuration errors."""

    def test_invalid_regex(self) -> None:
        err = InvalidRegexError(rule_id="r1", operator="matches_regex", rule_value="(", pattern_error="missing )")

        assert isinstance(err, ConfigurationError)
        assert err.code == ERROR_CONFIG_INVALID_REGEX
        assert "(" in err.message
        assert err.context["rule_id"] == "r1"
        assert err.context["pattern_error"] == "missing )"

    def test_invalid_operand(self) -> None:
        err = InvalidOperandError(operator="greater_than", rule_value="100", observed_value="abc")

        assert err.code == ERROR_CONFIG_INVALID_OPERAND
        assert "greater_than" in err.message
        assert err.context["observed_value"] == "abc"

    def test_rule_limit(self) -> None:
        err = RuleLimitExceededError(policy_id="p1", max_rules=200)

        assert err.code == ERROR_CONFIG_RULE_LIMIT
        assert err.suggestion is not None
        assert err.context["max_rules"] == 200

    def test_rule_validation(self) -> None:
        err = RuleValidationError(field_name="operator")
        assert isinstance(err, ConfigurationError)
        assert "operator" in err.message


class TestPolicyErrors:
    """Tests for denials."""

    def test_policy_denied(self) -> None:
        err = PolicyDeniedError(tool="fs.read", tool_args={"path": "/etc"}, reason="restricted path", rule_id="r1")

        assert err.code == ERROR_POLICY_DENIED
        assert err.message == "Policy denied fs.read: restricted path"
        assert err.context["rule_id"] == "r1"
        assert err.context["tool_args"] == {"path": "/etc"}

    def test_confirmation_timeout_is_a_denial(self) -> None:
        err = ConfirmationTimeoutError(tool="mail.send", reason="confirmation timed out", timeout_seconds=5)

        assert isinstance(err, PolicyDeniedError)
        assert err.code == ERROR_POLICY_CONFIRMATION_TIMEOUT
        assert "5" in err.message
        assert err.context["timeout_seconds"] == 5


class TestProviderErrors:
    """Tests for forwarded-call failures."""

    def test_base_code(self) -> None:
        assert ProviderError(tool="t").code == ERROR_TOOL_EXECUTION_FAILED

    def test_not_found(self) -> None:
        err = ToolNotFoundError(tool="nope")
        assert isinstance(err, ProviderError)
        assert err.code == ERROR_TOOL_NOT_FOUND
        assert err.message == "Tool not found: nope"

    def test_execution_error(self) -> None:
        err = ToolExecutionError(tool="fs.read", underlying_error="disk on fire")
        assert err.code == ERROR_TOOL_EXECUTION_FAILED
        assert "disk on fire" in err.message

    def test_timeout(self) -> None:
        err = ToolTimeoutError(tool="http.get", timeout_seconds=30)
        assert err.code == ERROR_TOOL_TIMEOUT
        assert err.context["timeout_seconds"] == 30

    def test_provider_errors_are_not_denials(self) -> None:
        assert not isinstance(ToolExecutionError(tool="t"), PolicyDeniedError)


class TestStorageErrors:
    """Tests for store availability errors."""

    def test_connection(self) -> None:
        err = StorageConnectionError(db_path="/nope/x.db")
        assert isinstance(err, StoreUnavailableError)
        assert err.code == ERROR_STORAGE_CONNECTION
        assert err.context["db_path"] == "/nope/x.db"

    def test_read_and_write(self) -> None:
        write = StorageWriteError(operation="append_record", underlying_error="disk full")
        read = StorageReadError(operation="policies_for", underlying_error="locked")

        assert isinstance(write, StoreUnavailableError)
        assert isinstance(read, StoreUnavailableError)
        assert write.context["operation"] == "append_record"
        assert "locked" in read.message

    def test_not_found(self) -> None:
        err = NotFoundError(entity="Policy", entity_id="p1")
        assert err.code == ERROR_STORAGE_NOT_FOUND
        assert err.message == "Policy not found: p1"
