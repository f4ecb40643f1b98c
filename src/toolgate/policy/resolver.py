"""
Policy Resolver for Toolgate.

The resolver turns one invocation attempt and the policies that apply to it
into a single verdict.

How it works:
    1. Snapshot the rules of every applicable policy (immutable tuple)
    2. Evaluate each rule against the argument it names
    3. Keep the most restrictive matching action:
       deny > require_confirmation > allow
    4. Among matches with that action, the first in store order supplies
       the reason
    5. If nothing matched, fall back to the configured default verdict

A rule that cannot be evaluated (invalid regex, non-numeric operand for a
numeric operator) is logged, reported in the verdict's defective_rules and
skipped. It never aborts evaluation of the remaining rules and never turns
into a denial by itself.

The resolver holds no mutable state and is safe to call concurrently.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from toolgate.errors import ConfigurationError
from toolgate.policy.operators import evaluate, lookup_argument
from toolgate.schema import (
    DefaultVerdict,
    DefectiveRule,
    InvocationRequest,
    InvocationRule,
    InvocationVerdict,
    RuleAction,
    ToolPolicy,
)

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "no policy restriction matched"
DEFAULT_DENY_REASON = "no policy restriction matched; default verdict is deny"
UNTRUSTED_CONTEXT_REASON = "tool invocation blocked: context contains untrusted data"


@dataclass(frozen=True)
class _Match:
    """A rule (or synthetic check) that matched, in evaluation order."""

    order: int
    action: RuleAction
    reason: str
    rule_id: str | None
    policy_id: str | None


class PolicyResolver:
    """
    Resolves invocation attempts into verdicts.

    Usage:
        resolver = PolicyResolver()
        verdict = resolver.resolve("fs.read", {"path": "/etc/passwd"}, policies)
        if verdict.action == RuleAction.DENY:
            ...

    Attributes:
        default_verdict: Verdict used when no rule matched
    """

    def __init__(self, default_verdict: DefaultVerdict = DefaultVerdict.ALLOW) -> None:
        self.default_verdict = DefaultVerdict(default_verdict)

    def resolve(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        policies: Iterable[ToolPolicy],
        context_is_trusted: bool = True,
    ) -> InvocationVerdict:
        """
        Resolve one invocation attempt.

        Args:
            tool_name: The tool being called
            arguments: The full argument map of this attempt
            policies: Every policy applicable to the tool and caller
            context_is_trusted: False when the agent's context carries
                untrusted data

        Returns:
            InvocationVerdict with the winning action and reason
        """
        snapshot = tuple(policies)
        rules = tuple(
            (policy, rule)
            for policy in snapshot
            for rule in sorted(policy.rules, key=lambda r: r.position)
        )

        matches: list[_Match] = []
        defective: list[DefectiveRule] = []

        if not context_is_trusted and snapshot:
            if not any(p.allow_usage_when_untrusted_data_is_present for p in snapshot):
                matches.append(
                    _Match(
                        order=-1,
                        action=RuleAction.DENY,
                        reason=UNTRUSTED_CONTEXT_REASON,
                        rule_id=None,
                        policy_id=None,
                    )
                )

        for order, (policy, rule) in enumerate(rules):
            try:
                matched = self._rule_matches(rule, arguments)
            except ConfigurationError as e:
                logger.warning(
                    "Skipping defective rule %s of policy %s for %s: %s",
                    rule.id,
                    policy.name,
                    tool_name,
                    e.message,
                )
                defective.append(
                    DefectiveRule(
                        rule_id=rule.id,
                        tool_policy_id=rule.tool_policy_id,
                        error=e.message,
                        error_code=e.code,
                    )
                )
                continue

            if matched:
                matches.append(
                    _Match(
                        order=order,
                        action=rule.action,
                        reason=rule.reason or _describe(rule),
                        rule_id=rule.id,
                        policy_id=policy.id,
                    )
                )

        if not matches:
            return self._default(tuple(defective))

        winner = max(matches, key=lambda m: (m.action.severity, -m.order))
        return InvocationVerdict(
            action=winner.action,
            reason=winner.reason,
            rule_id=winner.rule_id,
            policy_id=winner.policy_id,
            defective_rules=tuple(defective),
        )

    def resolve_request(
        self,
        request: InvocationRequest,
        policies: Iterable[ToolPolicy],
    ) -> InvocationVerdict:
        """Resolve an InvocationRequest."""
        return self.resolve(
            request.tool_name,
            request.arguments,
            policies,
            context_is_trusted=request.context_is_trusted,
        )

    def _rule_matches(self, rule: InvocationRule, arguments: dict[str, Any]) -> bool:
        observed = lookup_argument(arguments, rule.argument_name)
        # Allow rules must hold for every fanned-out value, restrictive ones for any
        match_all = rule.action == RuleAction.ALLOW
        return evaluate(rule.operator, rule.value, observed, match_all=match_all)

    def _default(self, defective: tuple[DefectiveRule, ...]) -> InvocationVerdict:
        if self.default_verdict == DefaultVerdict.DENY:
            return InvocationVerdict(
                action=RuleAction.DENY,
                reason=DEFAULT_DENY_REASON,
                defective_rules=defective,
            )
        return InvocationVerdict(
            action=RuleAction.ALLOW,
            reason=NO_MATCH_REASON,
            defective_rules=defective,
        )


def _describe(rule: InvocationRule) -> str:
    """Fallback reason for rules configured without one."""
    if rule.operator.is_existence_check:
        return f"{rule.action.value}: argument '{rule.argument_name}' {rule.operator.value}"
    return f"{rule.action.value}: {rule.argument_name} {rule.operator.value} {rule.value!r}"
