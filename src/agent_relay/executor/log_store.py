"""In-memory append-only log store with replay and live fan-out.

One store exists per spawned process. Every appended line is kept for the
lifetime of the store so that a viewer attaching late still sees the full
output, while subscribers already attached receive lines as they arrive.

Each subscription owns its own bounded buffer. The producer never waits on a
consumer: when a subscriber falls more than ``max_buffered`` live lines
behind, it is detached and observes an overflow end-of-stream instead.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterator
from enum import Enum
from types import TracebackType
from uuid import uuid4

from agent_relay.executor.errors import StoreClosedError
from agent_relay.executor.models import LogLine, StreamKind, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_BUFFER = 10_000


class StreamEnd(str, Enum):
    """Why a subscription stopped receiving lines."""

    CLOSED = "closed"
    OVERFLOW = "overflow"
    DETACHED = "detached"


class Subscription:
    """Ordered view over a store: full history first, then live lines."""

    def __init__(
        self,
        store: LogBroadcastStore,
        history: list[LogLine],
        max_buffered: int,
    ) -> None:
        self._store = store
        self._cond = threading.Condition()
        self._buffer: deque[LogLine] = deque(history)
        self._replay_remaining = len(history)
        self._max_buffered = max_buffered
        self._end: StreamEnd | None = None

    @property
    def end_reason(self) -> StreamEnd | None:
        """Reason the stream ended; None while still attached."""

        with self._cond:
            return self._end

    @property
    def overflowed(self) -> bool:
        return self.end_reason == StreamEnd.OVERFLOW

    def get(self, timeout: float | None = None) -> LogLine | None:
        """Return the next line, or None once the stream has ended.

        Buffered lines are always drained before the end-of-stream signal.
        Raises ``TimeoutError`` if nothing arrives within ``timeout`` seconds.
        """

        with self._cond:
            ready = self._cond.wait_for(
                lambda: bool(self._buffer) or self._end is not None,
                timeout=timeout,
            )
            if not ready:
                raise TimeoutError("No log line received before timeout")
            if self._buffer:
                if self._replay_remaining:
                    self._replay_remaining -= 1
                return self._buffer.popleft()
            return None

    def __iter__(self) -> Iterator[LogLine]:
        while True:
            line = self.get()
            if line is None:
                return
            yield line

    def close(self) -> None:
        """Detach from the store; buffered lines remain readable."""

        self._store._detach(self)  # noqa: SLF001
        self._finish(StreamEnd.DETACHED)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def _deliver(self, line: LogLine) -> bool:
        with self._cond:
            if self._end is not None:
                return False
            if len(self._buffer) - self._replay_remaining >= self._max_buffered:
                self._end = StreamEnd.OVERFLOW
                self._cond.notify_all()
                return False
            self._buffer.append(line)
            self._cond.notify_all()
            return True

    def _finish(self, reason: StreamEnd) -> None:
        with self._cond:
            if self._end is None:
                self._end = reason
            self._cond.notify_all()


class LogBroadcastStore:
    """Append-only multi-subscriber channel for one process's output."""

    def __init__(
        self,
        store_id: str | None = None,
        *,
        max_buffered: int = DEFAULT_SUBSCRIBER_BUFFER,
    ) -> None:
        if max_buffered <= 0:
            raise ValueError("max_buffered must be > 0")
        self.store_id = store_id or str(uuid4())
        self.max_buffered = max_buffered
        self._lock = threading.Lock()
        self._lines: list[LogLine] = []
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def append(self, stream: StreamKind | str, content: str) -> LogLine:
        """Store one line under the next sequence number and fan it out."""

        kind = StreamKind(stream)
        with self._lock:
            if self._closed:
                raise StoreClosedError(f"Log store {self.store_id} is closed")
            line = LogLine(
                stream=kind,
                content=_strip_terminator(content),
                sequence=len(self._lines) + 1,
                timestamp=utc_now(),
            )
            self._lines.append(line)
            dropped = [sub for sub in self._subscribers if not sub._deliver(line)]  # noqa: SLF001
            for subscription in dropped:
                self._subscribers.remove(subscription)

        if dropped:
            logger.warning(
                "Disconnected %d slow subscriber(s) from store=%s at sequence=%d",
                len(dropped),
                self.store_id,
                line.sequence,
            )
        return line

    def subscribe(self, max_buffered: int | None = None) -> Subscription:
        """Attach a subscriber that replays history before live lines."""

        with self._lock:
            if self._closed:
                raise StoreClosedError(f"Log store {self.store_id} is closed")
            subscription = Subscription(
                self,
                history=list(self._lines),
                max_buffered=max_buffered or self.max_buffered,
            )
            self._subscribers.append(subscription)
            return subscription

    def history(self, from_sequence: int = 1) -> list[LogLine]:
        """Return stored lines starting at ``from_sequence`` (1-based)."""

        with self._lock:
            return self._lines[max(0, from_sequence - 1) :]

    def close(self) -> None:
        """Mark the store terminal and end every live subscription once."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = self._subscribers
            self._subscribers = []
        for subscription in subscribers:
            subscription._finish(StreamEnd.CLOSED)  # noqa: SLF001

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)


def _strip_terminator(content: str) -> str:
    if content.endswith("\r\n"):
        return content[:-2]
    if content.endswith("\n"):
        return content[:-1]
    return content
