"""
Unit tests for the confirmation broker.

Tests cover:
- Approve and reject while suspended
- Timeout resolution
- Resolution from another thread
- Unknown and duplicate records
- Notifier hooks
"""

import asyncio
import threading

import pytest

from toolgate.confirmation import ConfirmationBroker, LoggingNotifier, PendingConfirmation
from toolgate.schema import ConfirmationStatus


class RecordingNotifier:
    """Notifier that keeps every call."""

    def __init__(self) -> None:
        self.pending: list[PendingConfirmation] = []
        self.resolved: list[tuple[str, ConfirmationStatus]] = []

    def on_pending(self, pending: PendingConfirmation) -> None:
        self.pending.append(pending)

    def on_resolved(self, pending: PendingConfirmation, status: ConfirmationStatus) -> None:
        self.resolved.append((pending.record_id, status))


class FailingNotifier(RecordingNotifier):
    """Notifier whose delivery of pending requests always fails."""

    def on_pending(self, pending: PendingConfirmation) -> None:
        raise RuntimeError("notification channel down")


async def _wait_until_pending(broker: ConfirmationBroker, record_id: str) -> None:
    for _ in range(100):
        if broker.is_pending(record_id):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{record_id} never became pending")


class TestConfirmationBroker:
    """Tests for ConfirmationBroker."""

    async def test_approve(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "sends email", timeout=5))
        await _wait_until_pending(broker, "r1")

        assert broker.approve("r1") is True
        assert await task == ConfirmationStatus.APPROVED
        assert not broker.is_pending("r1")
        assert len(broker) == 0

    async def test_reject(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "sends email", timeout=5))
        await _wait_until_pending(broker, "r1")

        assert broker.reject("r1") is True
        assert await task == ConfirmationStatus.REJECTED

    async def test_timeout(self) -> None:
        broker = ConfirmationBroker()
        status = await broker.request_confirmation("r1", "sends email", timeout=0.01)

        assert status == ConfirmationStatus.TIMED_OUT
        assert not broker.is_pending("r1")

    async def test_late_answer_ignored(self) -> None:
        broker = ConfirmationBroker()
        await broker.request_confirmation("r1", "x", timeout=0.01)
        assert broker.approve("r1") is False

    async def test_unknown_record(self) -> None:
        broker = ConfirmationBroker()
        assert broker.approve("nope") is False
        assert broker.reject("nope") is False

    async def test_second_answer_ignored(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "x", timeout=5))
        await _wait_until_pending(broker, "r1")

        assert broker.reject("r1") is True
        assert broker.approve("r1") is False
        assert await task == ConfirmationStatus.REJECTED

    async def test_duplicate_request(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "x", timeout=5))
        await _wait_until_pending(broker, "r1")

        with pytest.raises(ValueError):
            await broker.request_confirmation("r1", "x", timeout=5)

        broker.approve("r1")
        await task

    async def test_approve_from_other_thread(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "x", timeout=5))
        await _wait_until_pending(broker, "r1")

        results: list[bool] = []
        thread = threading.Thread(target=lambda: results.append(broker.approve("r1")))
        thread.start()
        thread.join()

        assert results == [True]
        assert await task == ConfirmationStatus.APPROVED

    async def test_independent_requests(self) -> None:
        """Answering one request leaves the others waiting."""
        broker = ConfirmationBroker()
        first = asyncio.create_task(broker.request_confirmation("r1", "x", timeout=5))
        second = asyncio.create_task(broker.request_confirmation("r2", "y", timeout=5))
        await _wait_until_pending(broker, "r1")
        await _wait_until_pending(broker, "r2")

        broker.reject("r2")
        assert await second == ConfirmationStatus.REJECTED
        assert broker.is_pending("r1")
        assert [p.record_id for p in broker.pending()] == ["r1"]

        broker.approve("r1")
        assert await first == ConfirmationStatus.APPROVED

    async def test_cancelled_waiter_cleaned_up(self) -> None:
        broker = ConfirmationBroker()
        task = asyncio.create_task(broker.request_confirmation("r1", "x", timeout=5))
        await _wait_until_pending(broker, "r1")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not broker.is_pending("r1")


class TestNotifiers:
    """Tests for notifier hooks."""

    async def test_notifier_called(self) -> None:
        notifier = RecordingNotifier()
        broker = ConfirmationBroker(notifier=notifier)
        task = asyncio.create_task(
            broker.request_confirmation(
                "r1",
                "sends email",
                timeout=5,
                tool_name="mail.send",
                arguments={"to": "a@b.c"},
            )
        )
        await _wait_until_pending(broker, "r1")

        (pending,) = notifier.pending
        assert pending.tool_name == "mail.send"
        assert pending.arguments == {"to": "a@b.c"}
        assert pending.timeout_seconds == 5

        broker.approve("r1")
        await task
        assert notifier.resolved == [("r1", ConfirmationStatus.APPROVED)]

    async def test_logging_notifier(self, caplog: pytest.LogCaptureFixture) -> None:
        broker = ConfirmationBroker(notifier=LoggingNotifier())
        with caplog.at_level("INFO", logger="toolgate"):
            await broker.request_confirmation("r1", "sends email", timeout=0.01, tool_name="mail.send")

        messages = [r.getMessage() for r in caplog.records]
        assert any("Confirmation required for mail.send" in m for m in messages)
        assert any("timed_out" in m for m in messages)

    async def test_failing_notifier_leaves_nothing_pending(self) -> None:
        """A notifier error propagates and the request is dropped."""
        notifier = FailingNotifier()
        broker = ConfirmationBroker(notifier=notifier)

        with pytest.raises(RuntimeError, match="notification channel down"):
            await broker.request_confirmation("r1", "sends email", timeout=5)

        assert not broker.is_pending("r1")
        assert len(broker) == 0
        assert broker.approve("r1") is False
        assert notifier.resolved == []

        # The record id can be held again once the channel works
        broker.notifier = None
        task = asyncio.create_task(broker.request_confirmation("r1", "sends email", timeout=5))
        await _wait_until_pending(broker, "r1")
        broker.approve("r1")
        assert await task == ConfirmationStatus.APPROVED
