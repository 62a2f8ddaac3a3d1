"""
Response ordering buffer.

Synthesis for each reply fragment runs independently and completes in any
order. The buffer holds completed payloads until every lower index has been
released, so the caller hears fragments in the order they were written.
"""

import asyncio
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class ResponseOrderingBuffer:
    """
    Re-serializes indexed payloads into strictly ascending order.

    `release` is called synchronously, once per index, in order 0, 1, 2, ...
    A missing index stalls everything above it. With `skip_timeout_ms` > 0 the
    buffer gives up on a missing index after that long and moves on.
    """

    def __init__(
        self,
        release: Callable[[int, bytes], None],
        *,
        skip_timeout_ms: int = 0,
        stream_sid: str = "",
    ):
        self._release = release
        self._skip_timeout_s = skip_timeout_ms / 1000.0
        self._stream_sid = stream_sid
        self._cursor = 0
        self._pending: Dict[int, bytes] = {}
        self._closed = False
        self._skip_task: Optional[asyncio.Task] = None
        self.skipped = 0
        self.dropped = 0

    @property
    def cursor(self) -> int:
        """The next index expected for release."""
        return self._cursor

    @property
    def pending_indices(self) -> list[int]:
        return sorted(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, index: int, payload: bytes) -> None:
        """Accept a completed fragment and release whatever is now contiguous."""
        if self._closed:
            logger.debug("Ordering buffer closed, dropping fragment", stream_sid=self._stream_sid, fragment_index=index)
            return

        if index < self._cursor or index in self._pending:
            self.dropped += 1
            logger.warning(
                "Dropping duplicate or stale fragment",
                stream_sid=self._stream_sid,
                fragment_index=index,
                cursor=self._cursor,
            )
            return

        if index != self._cursor:
            self._pending[index] = payload
            logger.debug(
                "Fragment buffered out of order",
                stream_sid=self._stream_sid,
                fragment_index=index,
                cursor=self._cursor,
            )
            self._arm_skip_timer()
            return

        self._emit(index, payload)
        self._drain()

    def close(self) -> None:
        """Drop held payloads; later pushes are ignored."""
        self._closed = True
        self._pending.clear()
        self._cancel_skip_timer()

    def _emit(self, index: int, payload: bytes) -> None:
        self._cursor = index + 1
        self._release(index, payload)

    def _drain(self) -> None:
        while not self._closed and self._cursor in self._pending:
            index = self._cursor
            self._emit(index, self._pending.pop(index))

        # The cursor moved, so any remaining gap gets a fresh timeout.
        self._cancel_skip_timer()
        if self._pending:
            self._arm_skip_timer()

    def _arm_skip_timer(self) -> None:
        if self._skip_timeout_s <= 0:
            return
        if self._skip_task and not self._skip_task.done():
            return
        self._skip_task = asyncio.create_task(self._skip_after(self._cursor))

    def _cancel_skip_timer(self) -> None:
        if self._skip_task and not self._skip_task.done():
            self._skip_task.cancel()
        self._skip_task = None

    async def _skip_after(self, waiting_for: int) -> None:
        try:
            await asyncio.sleep(self._skip_timeout_s)
        except asyncio.CancelledError:
            return

        self._skip_task = None
        if self._closed or self._cursor != waiting_for or not self._pending:
            return

        next_index = min(self._pending)
        self.skipped += next_index - self._cursor
        logger.warning(
            "Skipping missing fragments after timeout",
            stream_sid=self._stream_sid,
            missing_from=self._cursor,
            missing_to=next_index - 1,
        )
        self._cursor = next_index
        self._drain()
