"""
Invocation Mediator for Toolgate.

The mediator sits between an agent and its tool providers. Every attempted
tool call goes through mediate(), which resolves a verdict, then forwards,
blocks or holds the call for human confirmation, and records what happened.

Mediation Flow:
    1. Append an InvocationRecord in state Received
    2. Load applicable policies (versioned snapshot) and resolve a verdict
    3. Branch on the verdict:
        a. deny: record Denied/Blocked, never forward
        b. require_confirmation: record PendingConfirmation and suspend
           until approved (forward), rejected or timed out (Denied)
        c. allow: record Allowed and forward
    4. Forward exactly once, bounded by provider_timeout_seconds
    5. Record Completed or Failed with the output or error

Design Principles:
    - Fail-closed: if the rule store or audit sink is unavailable, the
      attempt raises StoreUnavailableError and nothing is forwarded
    - One record per attempt, updated on every transition
    - A provider failure is Failed, never Denied
    - Every attempt ends terminal, even when cancelled or aborted by an
      unexpected error
    - Concurrent attempts share no mutable evaluation state
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from toolgate.confirmation import ConfirmationBroker, LoggingNotifier
from toolgate.config import GateConfig
from toolgate.errors import (
    ERROR_POLICY_CONFIRMATION_REJECTED,
    ConfirmationTimeoutError,
    PolicyDeniedError,
    ProviderError,
    StoreUnavailableError,
    ToolExecutionError,
    ToolTimeoutError,
)
from toolgate.policy import PolicyResolver, PolicySnapshotCache
from toolgate.schema import (
    ConfirmationStatus,
    InvocationOutcome,
    InvocationRecord,
    InvocationRequest,
    InvocationState,
    InvocationVerdict,
    RuleAction,
)
from toolgate.store import AuditSink, RuleStore, compute_hash
from toolgate.tools.base import ToolContext, ToolProvider

logger = logging.getLogger(__name__)

CONFIRMATION_REJECTED_REASON = "confirmation rejected"
CONFIRMATION_TIMEOUT_REASON = "confirmation timed out"
STORE_UNAVAILABLE_REASON = "rule store unavailable; invocation blocked"
CANCELLED_REASON = "invocation cancelled"
ABORTED_REASON = "invocation aborted by an internal error"


@dataclass
class MediationResult:
    """
    Outcome of one mediated invocation attempt.

    Attributes:
        record_id: Audit record of the attempt
        tool_name: Tool that was requested
        arguments: Arguments that were requested
        state: Terminal state (completed, failed or denied)
        outcome: Audit-facing outcome
        verdict: Resolved verdict
        reason: Why the attempt ended this way
        output: Provider output data when completed
        error: Error message when failed
        confirmation: How a confirmation request was resolved, if one was made
        provider_error: The provider failure when failed
        confirmation_timeout_seconds: Timeout that applied to the confirmation
    """

    record_id: str
    tool_name: str
    arguments: dict[str, Any]
    state: InvocationState
    outcome: InvocationOutcome
    verdict: InvocationVerdict
    reason: str
    output: Any = None
    error: str | None = None
    confirmation: ConfirmationStatus | None = None
    provider_error: ProviderError | None = None
    confirmation_timeout_seconds: float = 0

    @property
    def completed(self) -> bool:
        return self.state == InvocationState.COMPLETED

    @property
    def denied(self) -> bool:
        return self.state == InvocationState.DENIED

    @property
    def failed(self) -> bool:
        return self.state == InvocationState.FAILED

    def raise_for_status(self) -> "MediationResult":
        """
        Raise if the attempt did not complete.

        Raises:
            ConfirmationTimeoutError: Nobody confirmed in time
            PolicyDeniedError: Denied by policy or rejected by a human
            ProviderError: The forwarded call failed

        Returns:
            self, when the attempt completed
        """
        if self.state == InvocationState.DENIED:
            if self.confirmation == ConfirmationStatus.TIMED_OUT:
                raise ConfirmationTimeoutError(
                    tool=self.tool_name,
                    tool_args=self.arguments,
                    reason=self.reason,
                    rule_id=self.verdict.rule_id,
                    record_id=self.record_id,
                    timeout_seconds=self.confirmation_timeout_seconds,
                )
            if self.confirmation == ConfirmationStatus.REJECTED:
                raise PolicyDeniedError(
                    tool=self.tool_name,
                    tool_args=self.arguments,
                    reason=self.reason,
                    rule_id=self.verdict.rule_id,
                    record_id=self.record_id,
                    code=ERROR_POLICY_CONFIRMATION_REJECTED,
                )
            raise PolicyDeniedError(
                tool=self.tool_name,
                tool_args=self.arguments,
                reason=self.reason,
                rule_id=self.verdict.rule_id,
                record_id=self.record_id,
            )
        if self.state == InvocationState.FAILED:
            if self.provider_error is not None:
                raise self.provider_error
            raise ToolExecutionError(
                tool=self.tool_name,
                tool_args=self.arguments,
                underlying_error=self.error or "unknown failure",
            )
        return self


class InvocationMediator:
    """
    Mediates tool invocations between agents and providers.

    Usage:
        db = GateDB("toolgate.db")
        mediator = InvocationMediator(rules=db, audit=db, provider=registry)
        result = await mediator.mediate(
            InvocationRequest(tool_name="fs.read", arguments={"path": "/etc/passwd"})
        )
        result.raise_for_status()

    Attributes:
        rules: Rule store policies are read from
        audit: Audit sink every attempt is recorded in
        provider: Where allowed invocations are forwarded
        broker: Holds invocations that need human confirmation
        config: Timeouts and default verdict
    """

    def __init__(
        self,
        rules: RuleStore,
        audit: AuditSink,
        provider: ToolProvider,
        broker: ConfirmationBroker | None = None,
        config: GateConfig | None = None,
        snapshots: PolicySnapshotCache | None = None,
    ) -> None:
        self.rules = rules
        self.audit = audit
        self.provider = provider
        self.broker = broker if broker is not None else ConfirmationBroker(notifier=LoggingNotifier())
        self.config = config or GateConfig()
        self.resolver = PolicyResolver(self.config.default_verdict_for_unconfigured_tools)
        self.snapshots = snapshots if snapshots is not None else PolicySnapshotCache(rules)

    async def invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        agent_id: str | None = None,
        session_id: str | None = None,
        context_is_trusted: bool = True,
    ) -> MediationResult:
        """Build an InvocationRequest and mediate it."""
        return await self.mediate(
            InvocationRequest(
                tool_name=tool_name,
                arguments=arguments or {},
                agent_id=agent_id,
                session_id=session_id,
                context_is_trusted=context_is_trusted,
            )
        )

    async def mediate(self, request: InvocationRequest) -> MediationResult:
        """
        Mediate one invocation attempt.

        Returns:
            MediationResult in a terminal state

        Raises:
            StoreUnavailableError: If the rule store or audit sink failed;
                nothing was forwarded unless the failure happened while
                recording the provider's outcome, in which case the error's
                context carries tool_executed=True and the provider output
            Exception: Anything else that escapes mediation, after the
                record is moved to Denied (or Failed once Allowed)
        """
        record = InvocationRecord.from_request(request)
        record.input_hash = compute_hash(request.arguments)
        try:
            self.audit.append_record(record)
        except StoreUnavailableError as e:
            logger.error("Cannot record invocation of %s, blocking it: %s", request.tool_name, e.message)
            raise

        state = InvocationState.RECEIVED
        try:
            verdict = self._resolve(record.record_id, request)
            self._report_defects(record.record_id, verdict)

            if verdict.action == RuleAction.DENY:
                return self._deny(record.record_id, request, verdict, verdict.reason, InvocationOutcome.BLOCKED)

            confirmation = None
            if verdict.action == RuleAction.REQUIRE_CONFIRMATION:
                state = InvocationState.PENDING_CONFIRMATION
                confirmation = await self._confirm(record.record_id, request, verdict)
                if confirmation == ConfirmationStatus.REJECTED:
                    return self._deny(
                        record.record_id,
                        request,
                        verdict,
                        CONFIRMATION_REJECTED_REASON,
                        InvocationOutcome.REJECTED_BY_HUMAN,
                        confirmation,
                    )
                if confirmation == ConfirmationStatus.TIMED_OUT:
                    return self._deny(
                        record.record_id,
                        request,
                        verdict,
                        CONFIRMATION_TIMEOUT_REASON,
                        InvocationOutcome.REJECTED_BY_HUMAN,
                        confirmation,
                    )
                self.audit.update_record_outcome(
                    record.record_id,
                    InvocationState.ALLOWED,
                    outcome=InvocationOutcome.CONFIRMED,
                )
            else:
                self.audit.update_record_outcome(
                    record.record_id,
                    InvocationState.ALLOWED,
                    verdict=verdict,
                    reason=verdict.reason,
                )

            state = InvocationState.ALLOWED
            return await self._forward(record.record_id, request, verdict, confirmation)
        except asyncio.CancelledError:
            self._record_abort(record.record_id, state, CANCELLED_REASON)
            raise
        except StoreUnavailableError:
            # The audit sink is failing; no further writes are attempted
            raise
        except Exception as e:
            logger.error("Mediation of %s failed (record %s): %s", request.tool_name, record.record_id, e)
            self._record_abort(record.record_id, state, ABORTED_REASON, error=f"{type(e).__name__}: {e}")
            raise

    def _resolve(self, record_id: str, request: InvocationRequest) -> InvocationVerdict:
        try:
            policies = self.snapshots.get(request.tool_name, request.agent_id)
        except StoreUnavailableError as e:
            logger.error("Rule store unavailable for %s, blocking it: %s", request.tool_name, e.message)
            try:
                self.audit.update_record_outcome(
                    record_id,
                    InvocationState.DENIED,
                    outcome=InvocationOutcome.BLOCKED,
                    reason=STORE_UNAVAILABLE_REASON,
                    error=e.message,
                )
            except StoreUnavailableError as audit_error:
                logger.error("Could not record blocked invocation %s: %s", record_id, audit_error.message)
            raise
        return self.resolver.resolve_request(request, policies)

    def _report_defects(self, record_id: str, verdict: InvocationVerdict) -> None:
        for defect in verdict.defective_rules:
            self.audit.report_defective_rule(record_id, defect)

    def _deny(
        self,
        record_id: str,
        request: InvocationRequest,
        verdict: InvocationVerdict,
        reason: str,
        outcome: InvocationOutcome,
        confirmation: ConfirmationStatus | None = None,
    ) -> MediationResult:
        self.audit.update_record_outcome(
            record_id,
            InvocationState.DENIED,
            outcome=outcome,
            verdict=verdict,
            reason=reason,
        )
        logger.info("Denied %s (record %s): %s", request.tool_name, record_id, reason)
        return MediationResult(
            record_id=record_id,
            tool_name=request.tool_name,
            arguments=dict(request.arguments),
            state=InvocationState.DENIED,
            outcome=outcome,
            verdict=verdict,
            reason=reason,
            confirmation=confirmation,
            confirmation_timeout_seconds=self.config.confirmation_timeout_seconds,
        )

    async def _confirm(
        self,
        record_id: str,
        request: InvocationRequest,
        verdict: InvocationVerdict,
    ) -> ConfirmationStatus:
        self.audit.update_record_outcome(
            record_id,
            InvocationState.PENDING_CONFIRMATION,
            outcome=InvocationOutcome.AWAITING_CONFIRMATION,
            verdict=verdict,
            reason=verdict.reason,
        )
        return await self.broker.request_confirmation(
            record_id,
            verdict.reason,
            timeout=self.config.confirmation_timeout_seconds,
            tool_name=request.tool_name,
            arguments=request.arguments,
        )

    async def _forward(
        self,
        record_id: str,
        request: InvocationRequest,
        verdict: InvocationVerdict,
        confirmation: ConfirmationStatus | None,
    ) -> MediationResult:
        context = ToolContext(
            record_id=record_id,
            agent_id=request.agent_id,
            session_id=request.session_id,
        )
        timeout = self.config.provider_timeout_seconds
        error: ProviderError | None = None
        try:
            output = await asyncio.wait_for(
                self.provider.invoke_tool(request.tool_name, dict(request.arguments), context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = ToolTimeoutError(
                tool=request.tool_name,
                tool_args=dict(request.arguments),
                timeout_seconds=timeout,
            )
        except ProviderError as e:
            error = e
        except Exception as e:
            error = ToolExecutionError(
                tool=request.tool_name,
                tool_args=dict(request.arguments),
                underlying_error=f"{type(e).__name__}: {e}",
            )

        if error is not None:
            logger.warning("Tool %s failed (record %s): %s", request.tool_name, record_id, error.message)
            self.audit.update_record_outcome(
                record_id,
                InvocationState.FAILED,
                outcome=InvocationOutcome.EXECUTED_ERROR,
                error=error.message,
            )
            return MediationResult(
                record_id=record_id,
                tool_name=request.tool_name,
                arguments=dict(request.arguments),
                state=InvocationState.FAILED,
                outcome=InvocationOutcome.EXECUTED_ERROR,
                verdict=verdict,
                reason=verdict.reason,
                error=error.message,
                confirmation=confirmation,
                provider_error=error,
            )

        try:
            self.audit.update_record_outcome(
                record_id,
                InvocationState.COMPLETED,
                outcome=InvocationOutcome.EXECUTED_SUCCESS,
                output=output.data,
            )
        except StoreUnavailableError as e:
            logger.error(
                "Tool %s executed but its completion was not recorded (record %s): %s",
                request.tool_name,
                record_id,
                e.message,
            )
            e.context["tool_executed"] = True
            e.context["record_id"] = record_id
            e.context["output"] = output.data
            raise
        return MediationResult(
            record_id=record_id,
            tool_name=request.tool_name,
            arguments=dict(request.arguments),
            state=InvocationState.COMPLETED,
            outcome=InvocationOutcome.EXECUTED_SUCCESS,
            verdict=verdict,
            reason=verdict.reason,
            output=output.data,
            confirmation=confirmation,
        )

    def _record_abort(
        self,
        record_id: str,
        state: InvocationState,
        reason: str,
        error: str | None = None,
    ) -> None:
        # Leave no record stuck in a non-terminal state
        if state == InvocationState.ALLOWED:
            final, outcome = InvocationState.FAILED, InvocationOutcome.EXECUTED_ERROR
        else:
            final, outcome = InvocationState.DENIED, InvocationOutcome.BLOCKED
        try:
            self.audit.update_record_outcome(
                record_id,
                final,
                outcome=outcome,
                reason=reason,
                error=error,
            )
        except StoreUnavailableError as e:
            logger.error("Could not record abort of %s: %s", record_id, e.message)
