"""
Human confirmation of held tool invocations.

When a verdict requires confirmation, the mediating task suspends on a future
keyed by the invocation record id. Whatever surface the human uses (CLI,
chat, web) resolves it from the outside through approve() or reject(). If
nobody answers within the timeout the request resolves as timed out.

A waiting request holds no store lock and no thread; it is just a pending
future on the event loop.

Usage:
    broker = ConfirmationBroker(notifier=LoggingNotifier())
    status = await broker.request_confirmation(record_id, "sends email", timeout=300)

    # elsewhere, possibly from another thread:
    broker.approve(record_id)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from toolgate.schema import ConfirmationStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingConfirmation:
    """Information about a held invocation, handed to notifiers."""

    record_id: str
    reason: str
    timeout_seconds: float
    tool_name: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=utcnow)


class ConfirmationNotifier(Protocol):
    """Hook that tells a human-facing surface about pending requests."""

    def on_pending(self, pending: PendingConfirmation) -> None:
        ...

    def on_resolved(self, pending: PendingConfirmation, status: ConfirmationStatus) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes to the log."""

    def on_pending(self, pending: PendingConfirmation) -> None:
        logger.info(
            "Confirmation required for %s (record %s): %s",
            pending.tool_name or "tool",
            pending.record_id,
            pending.reason,
        )

    def on_resolved(self, pending: PendingConfirmation, status: ConfirmationStatus) -> None:
        logger.info("Confirmation for record %s resolved: %s", pending.record_id, status.value)


@dataclass
class _Waiter:
    info: PendingConfirmation
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop


class ConfirmationBroker:
    """
    Registry of suspended confirmation requests keyed by record id.

    approve() and reject() may be called from the event loop or from any
    other thread. Resolving an unknown or already-resolved record is a no-op
    that returns False.
    """

    def __init__(self, notifier: ConfirmationNotifier | None = None) -> None:
        self.notifier = notifier
        self._waiters: dict[str, _Waiter] = {}

    async def request_confirmation(
        self,
        record_id: str,
        reason: str,
        timeout: float,
        tool_name: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> ConfirmationStatus:
        """
        Suspend until the request is approved, rejected or times out.

        Raises:
            ValueError: If a request for this record is already pending

        Anything the notifier raises propagates after the request is dropped.
        """
        if record_id in self._waiters:
            msg = f"Confirmation already pending for record {record_id}"
            raise ValueError(msg)

        loop = asyncio.get_running_loop()
        info = PendingConfirmation(
            record_id=record_id,
            reason=reason,
            timeout_seconds=timeout,
            tool_name=tool_name,
            arguments=dict(arguments or {}),
        )
        waiter = _Waiter(info=info, future=loop.create_future(), loop=loop)
        self._waiters[record_id] = waiter

        try:
            if self.notifier is not None:
                self.notifier.on_pending(info)
            status = await asyncio.wait_for(waiter.future, timeout=timeout)
        except asyncio.TimeoutError:
            status = ConfirmationStatus.TIMED_OUT
        finally:
            self._waiters.pop(record_id, None)

        if self.notifier is not None:
            self.notifier.on_resolved(info, status)
        return status

    def approve(self, record_id: str) -> bool:
        """Approve a pending request. Returns False if none is pending."""
        return self._resolve(record_id, ConfirmationStatus.APPROVED)

    def reject(self, record_id: str) -> bool:
        """Reject a pending request. Returns False if none is pending."""
        return self._resolve(record_id, ConfirmationStatus.REJECTED)

    def pending(self) -> list[PendingConfirmation]:
        """Requests currently waiting for an answer, oldest first."""
        waiters = sorted(self._waiters.values(), key=lambda w: w.info.requested_at)
        return [w.info for w in waiters]

    def is_pending(self, record_id: str) -> bool:
        return record_id in self._waiters

    def _resolve(self, record_id: str, status: ConfirmationStatus) -> bool:
        waiter = self._waiters.get(record_id)
        if waiter is None or waiter.future.done():
            return False

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is waiter.loop:
            _set_status(waiter.future, status)
        else:
            waiter.loop.call_soon_threadsafe(_set_status, waiter.future, status)
        return True

    def __len__(self) -> int:
        return len(self._waiters)


def _set_status(future: asyncio.Future, status: ConfirmationStatus) -> None:
    # The wait may have timed out between lookup and delivery
    if not future.done():
        future.set_result(status)
