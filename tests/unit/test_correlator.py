"""Unit tests for request/response correlation."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from server_harness.correlator import Correlator
from server_harness.errors import ProtocolError, ServerExited


def _response(seq: int, body: Any = "ok") -> dict[str, Any]:
    return {"type": "response", "request_seq": seq, "body": body}


def _event(name: str, body: Any = None) -> dict[str, Any]:
    return {"type": "event", "event": name, "body": body}


class TestResponses:
    """Responses resolve the waiter for their sequence number."""

    @pytest.mark.asyncio
    async def test_response_after_await(self) -> None:
        """A waiter registered first resolves when the response arrives."""
        correlator = Correlator()
        future = correlator.await_response(5)
        assert not future.done()
        assert correlator.pending_count == 1

        correlator.handle_message(_response(5))

        assert await future == _response(5)
        assert correlator.pending_count == 0
        assert correlator.buffered_count == 0

    @pytest.mark.asyncio
    async def test_response_before_await(self) -> None:
        """A response that arrives first is buffered and returned on await."""
        correlator = Correlator()
        correlator.handle_message(_response(5))
        assert correlator.buffered_count == 1

        future = correlator.await_response(5)

        assert future.done()
        assert await future == _response(5)
        assert correlator.buffered_count == 0

    @pytest.mark.asyncio
    async def test_race_order_does_not_change_result(self) -> None:
        """Arrival before or after the await yields the same object."""
        early, late = Correlator(), Correlator()
        message = _response(5, {"value": 42})

        early.handle_message(message)
        early_result = await early.await_response(5)

        future = late.await_response(5)
        late.handle_message(message)
        late_result = await future

        assert early_result == late_result == message

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self) -> None:
        """Each waiter gets its own response regardless of arrival order."""
        correlator = Correlator()
        first = correlator.await_response(1)
        second = correlator.await_response(2)

        correlator.handle_message(_response(2, "two"))
        correlator.handle_message(_response(1, "one"))

        assert (await first)["body"] == "one"
        assert (await second)["body"] == "two"

    @pytest.mark.asyncio
    async def test_buffered_response_is_consumed_once(self) -> None:
        """A second await after resolution does not reuse the old reply."""
        correlator = Correlator()
        correlator.handle_message(_response(3))
        assert await correlator.await_response(3) == _response(3)

        again = correlator.await_response(3)
        await asyncio.sleep(0)
        assert not again.done()

        correlator.handle_message(_response(3, "fresh"))
        assert (await again)["body"] == "fresh"

    @pytest.mark.asyncio
    async def test_double_await_rejected(self) -> None:
        """Only one caller may wait on a sequence number."""
        correlator = Correlator()
        correlator.await_response(9)

        with pytest.raises(ValueError):
            correlator.await_response(9)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_can_be_replaced(self) -> None:
        """A waiter whose caller gave up does not block a new await."""
        correlator = Correlator()
        correlator.await_response(9).cancel()

        future = correlator.await_response(9)
        correlator.handle_message(_response(9))
        assert await future == _response(9)

    @pytest.mark.asyncio
    async def test_duplicate_response_replaces_buffered(self) -> None:
        """Two unclaimed replies for one seq keep the latest."""
        correlator = Correlator()
        correlator.handle_message(_response(4, "first"))
        correlator.handle_message(_response(4, "second"))

        assert correlator.buffered_count == 1
        assert (await correlator.await_response(4))["body"] == "second"

    def test_response_without_seq_raises(self) -> None:
        """A reply that cannot be correlated is a protocol error."""
        correlator = Correlator()
        with pytest.raises(ProtocolError):
            correlator.handle_message({"type": "response", "body": "lost"})

    def test_non_object_message_raises(self) -> None:
        """Bare JSON values cannot be correlated."""
        correlator = Correlator()
        with pytest.raises(ProtocolError):
            correlator.handle_message([1, 2, 3])


class TestEvents:
    """Broadcast events go to listeners, completion notices to waiters."""

    @pytest.mark.asyncio
    async def test_broadcast_reaches_listeners_in_order(self) -> None:
        """Every listener sees the event, in registration order."""
        correlator = Correlator()
        calls: list[tuple[str, Any]] = []
        correlator.add_event_listener(lambda e: calls.append(("a", e)))
        correlator.add_event_listener(lambda e: calls.append(("b", e)))

        event = _event("semanticDiag", {"file": "a.ts"})
        correlator.handle_message(event)

        assert calls == [("a", event), ("b", event)]

    @pytest.mark.asyncio
    async def test_broadcast_never_resolves_waiter(self) -> None:
        """A broadcast event carrying request_seq does not complete a request."""
        correlator = Correlator()
        future = correlator.await_response(7)

        correlator.handle_message(_event("telemetry", {"request_seq": 7}))

        await asyncio.sleep(0)
        assert not future.done()
        assert correlator.buffered_count == 0

    @pytest.mark.asyncio
    async def test_completion_event_resolves_waiter(self) -> None:
        """requestCompleted with a nested request_seq completes that request."""
        correlator = Correlator()
        seen: list[Any] = []
        correlator.add_event_listener(seen.append)
        future = correlator.await_response(7)

        event = _event("requestCompleted", {"request_seq": 7})
        correlator.handle_message(event)

        assert await future == event
        assert seen == []

    @pytest.mark.asyncio
    async def test_custom_completion_event_name(self) -> None:
        """The completion event name is configurable."""
        correlator = Correlator(completion_event="done")
        future = correlator.await_response(2)

        correlator.handle_message(_event("done", {"request_seq": 2}))
        assert (await future)["event"] == "done"

    def test_completion_event_without_body_raises(self) -> None:
        """A completion notice must say which request it completes."""
        correlator = Correlator()
        with pytest.raises(ProtocolError):
            correlator.handle_message(_event("requestCompleted"))

    def test_failing_listener_does_not_stop_others(self) -> None:
        """An exception in one listener is logged and the rest still run."""
        correlator = Correlator()
        seen: list[Any] = []

        def broken(event: Any) -> None:
            raise RuntimeError("listener bug")

        correlator.add_event_listener(broken)
        correlator.add_event_listener(seen.append)

        correlator.handle_message(_event("projectLoadingStart"))
        assert len(seen) == 1


class TestFailPending:
    """fail_pending rejects outstanding waiters."""

    @pytest.mark.asyncio
    async def test_rejects_all_waiters(self) -> None:
        """Every pending future gets the error."""
        correlator = Correlator()
        first = correlator.await_response(1)
        second = correlator.await_response(2)

        correlator.fail_pending(ServerExited("gone"))

        for future in (first, second):
            with pytest.raises(ServerExited):
                await future
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_keeps_buffered_replies(self) -> None:
        """Replies that already arrived can still be collected."""
        correlator = Correlator()
        correlator.handle_message(_response(1))

        correlator.fail_pending(ServerExited("gone"))

        assert await correlator.await_response(1) == _response(1)
