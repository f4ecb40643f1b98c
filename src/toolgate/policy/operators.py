"""
Operator evaluation for invocation rules.

Every operator is a pure function of (rule value, observed value). A missing
argument is passed as the MISSING sentinel: only the existence checks are
defined over absence, every other operator treats it as non-matching.

Argument lookup supports nested paths:
    "path"              -> arguments["path"]
    "options.mode"      -> arguments["options"]["mode"]
    "files[*].path"     -> [f["path"] for f in arguments["files"]]

A fanned-out lookup never matches when it produced no values. Otherwise the
operator is applied to each value: by default the rule matches when any value
matches, and with match_all (used for allow rules) only when every value does.
Negated operators are applied per value the same way. The existence checks
look at whether anything was found.
"""

import json
import math
import re
from functools import lru_cache
from typing import Any, Callable

from toolgate.errors import InvalidOperandError, InvalidRegexError
from toolgate.schema import RuleOperator


class _Missing:
    """Sentinel for an argument absent from the invocation."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class FanOut(tuple):
    """Values collected through a ``[*]`` wildcard path segment."""


# =============================================================================
# Value normalization
# =============================================================================


def stringify(value: Any) -> str:
    """
    Canonical string form of an observed argument value.

    Strings are used as-is; everything else is rendered as JSON so that
    True becomes "true" and None becomes "null".
    """
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


def parse_number(value: Any) -> float | None:
    """Parse a finite number, or return None. Booleans are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """
    Compile a rule's regular expression.

    Raises:
        InvalidRegexError: If the pattern does not compile
    """
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidRegexError(
            operator=RuleOperator.MATCHES_REGEX.value,
            rule_value=pattern,
            pattern_error=str(e),
        ) from e


def validate_operand(operator: RuleOperator, rule_value: str) -> None:
    """
    Check a rule operand before the rule is stored.

    Raises:
        InvalidRegexError: matches_regex with a pattern that doesn't compile
        InvalidOperandError: numeric operator with a non-numeric operand
    """
    if operator == RuleOperator.MATCHES_REGEX:
        compile_pattern(rule_value)
    elif operator.is_numeric and parse_number(rule_value) is None:
        raise InvalidOperandError(
            operator=operator.value,
            rule_value=rule_value,
            message=f"Operator {operator.value} needs a numeric value, got {rule_value!r}",
        )


# =============================================================================
# Argument lookup
# =============================================================================

_SEGMENT = re.compile(r"([^.\[\]]+)(\[\*\])?")


def lookup_argument(arguments: dict[str, Any], argument_name: str) -> Any:
    """
    Resolve an argument name against an invocation's argument map.

    Returns the value, a FanOut of values for wildcard paths, or MISSING.
    A key literally present in the map wins over path interpretation.
    """
    if argument_name in arguments:
        return arguments[argument_name]
    if "." not in argument_name and "[*]" not in argument_name:
        return MISSING

    current: list[Any] = [arguments]
    fanned_out = False
    for part in argument_name.split("."):
        match = _SEGMENT.fullmatch(part)
        if match is None:
            return MISSING
        key, wildcard = match.groups()

        found: list[Any] = []
        for node in current:
            if isinstance(node, dict) and key in node:
                found.append(node[key])
        if wildcard:
            fanned_out = True
            expanded: list[Any] = []
            for node in found:
                if isinstance(node, list):
                    expanded.extend(node)
            found = expanded
        current = found
        if not current and not fanned_out:
            return MISSING

    if fanned_out:
        return FanOut(current)
    return current[0] if current else MISSING


# =============================================================================
# Operators
# =============================================================================


def _equals(rule_value: str, observed: Any) -> bool:
    left = parse_number(observed)
    right = parse_number(rule_value)
    if left is not None and right is not None:
        return left == right
    return stringify(observed) == rule_value


def _contains(rule_value: str, observed: Any) -> bool:
    return rule_value in stringify(observed)


def _starts_with(rule_value: str, observed: Any) -> bool:
    return stringify(observed).startswith(rule_value)


def _ends_with(rule_value: str, observed: Any) -> bool:
    return stringify(observed).endswith(rule_value)


def _matches_regex(rule_value: str, observed: Any) -> bool:
    return compile_pattern(rule_value).search(stringify(observed)) is not None


def _numeric(operator: RuleOperator) -> Callable[[str, Any], bool]:
    def compare(rule_value: str, observed: Any) -> bool:
        left = parse_number(observed)
        right = parse_number(rule_value)
        if left is None or right is None:
            raise InvalidOperandError(
                operator=operator.value,
                rule_value=rule_value,
                observed_value=observed,
            )
        if operator == RuleOperator.GREATER_THAN:
            return left > right
        return left < right

    return compare


_POSITIVE: dict[RuleOperator, Callable[[str, Any], bool]] = {
    RuleOperator.EQUALS: _equals,
    RuleOperator.CONTAINS: _contains,
    RuleOperator.STARTS_WITH: _starts_with,
    RuleOperator.ENDS_WITH: _ends_with,
    RuleOperator.MATCHES_REGEX: _matches_regex,
    RuleOperator.GREATER_THAN: _numeric(RuleOperator.GREATER_THAN),
    RuleOperator.LESS_THAN: _numeric(RuleOperator.LESS_THAN),
}

_NEGATED: dict[RuleOperator, RuleOperator] = {
    RuleOperator.NOT_EQUALS: RuleOperator.EQUALS,
    RuleOperator.NOT_CONTAINS: RuleOperator.CONTAINS,
}


def _is_present(observed: Any) -> bool:
    if observed is MISSING:
        return False
    if isinstance(observed, FanOut):
        return len(observed) > 0
    return True


def _check_for(operator: RuleOperator) -> Callable[[str, Any], bool]:
    if operator in _NEGATED:
        positive = _POSITIVE[_NEGATED[operator]]
        return lambda rule_value, observed: not positive(rule_value, observed)
    return _POSITIVE[operator]


def evaluate(
    operator: RuleOperator,
    rule_value: str,
    observed: Any,
    match_all: bool = False,
) -> bool:
    """
    Evaluate one operator against one observed argument value.

    Args:
        operator: The rule's operator
        rule_value: The rule's operand as stored
        observed: The argument value, a FanOut, or MISSING
        match_all: Require every fanned-out value to match instead of any

    Returns:
        True if the rule's predicate matches

    Raises:
        InvalidRegexError: matches_regex with an invalid pattern
        InvalidOperandError: numeric operator with a non-numeric side
    """
    operator = RuleOperator(operator)

    if operator == RuleOperator.EXISTS:
        return _is_present(observed)
    if operator == RuleOperator.NOT_EXISTS:
        return not _is_present(observed)

    if not _is_present(observed):
        return False

    check = _check_for(operator)
    if isinstance(observed, FanOut):
        quantifier = all if match_all else any
        return quantifier(check(rule_value, item) for item in observed)
    return check(rule_value, observed)
