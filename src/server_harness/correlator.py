"""Request/response correlation.

Routes every decoded worker message either to the event listeners or to the
caller waiting on its sequence number. Replies can arrive before anyone asks
for them, so the correlation table holds one cell per sequence number:

- _PendingWaiter: a caller is waiting, the reply has not arrived
- _BufferedMessage: the reply arrived, nobody has asked for it yet

A sequence number never has both at once; each arrival or await turns one
into the other, or empties the cell.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .protocol.messages import REQUEST_COMPLETED_EVENT, is_broadcast_event, response_seq

logger = logging.getLogger(__name__)

EventListener = Callable[[Any], None]


@dataclass
class _PendingWaiter:
    future: asyncio.Future[Any]


@dataclass
class _BufferedMessage:
    message: Any


class Correlator:
    """Matches worker replies to pending requests by sequence number."""

    def __init__(self, completion_event: str = REQUEST_COMPLETED_EVENT):
        self._completion_event = completion_event
        self._table: dict[int, _PendingWaiter | _BufferedMessage] = {}
        self._event_listeners: list[EventListener] = []

    @property
    def pending_count(self) -> int:
        """Number of callers waiting for a reply."""
        return sum(1 for cell in self._table.values() if isinstance(cell, _PendingWaiter))

    @property
    def buffered_count(self) -> int:
        """Number of replies received before anyone awaited them."""
        return sum(1 for cell in self._table.values() if isinstance(cell, _BufferedMessage))

    def add_event_listener(self, listener: EventListener) -> None:
        """Register a listener for broadcast events."""
        self._event_listeners.append(listener)

    def handle_message(self, message: Any) -> None:
        """Route one decoded message.

        Raises:
            ProtocolError: If a non-broadcast message carries no sequence number.
        """
        if is_broadcast_event(message, self._completion_event):
            self._broadcast(message)
            return

        seq = response_seq(message)
        cell = self._table.pop(seq, None)

        if isinstance(cell, _PendingWaiter) and not cell.future.done():
            logger.debug(f"Delivering response for seq {seq}")
            cell.future.set_result(message)
            return

        if isinstance(cell, _BufferedMessage):
            logger.warning(f"Duplicate response for seq {seq}, replacing buffered reply")

        self._table[seq] = _BufferedMessage(message)

    def await_response(self, seq: int) -> asyncio.Future[Any]:
        """Return a future resolved with the reply for `seq`.

        If the reply is already buffered the future is returned resolved and
        the buffered copy is dropped, so a later await for the same `seq`
        waits for a new reply.

        Raises:
            ValueError: If another caller is already waiting on `seq`.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        cell = self._table.get(seq)

        if isinstance(cell, _BufferedMessage):
            del self._table[seq]
            future.set_result(cell.message)
        elif isinstance(cell, _PendingWaiter) and not cell.future.done():
            raise ValueError(f"Already awaiting a response for seq {seq}")
        else:
            self._table[seq] = _PendingWaiter(future)

        return future

    def fail_pending(self, exc: BaseException) -> None:
        """Reject every outstanding waiter with `exc`. Buffered replies are kept."""
        for seq, cell in list(self._table.items()):
            if not isinstance(cell, _PendingWaiter):
                continue
            del self._table[seq]
            if not cell.future.done():
                cell.future.set_exception(exc)

    def _broadcast(self, message: Any) -> None:
        # Copy so listeners registered during delivery see the next event, not this one
        for listener in list(self._event_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception(f"Error in event listener for {message.get('event')!r}")
