from __future__ import annotations

import threading

import allure
import pytest

from agent_relay.executor.errors import StoreClosedError
from agent_relay.executor.log_store import LogBroadcastStore, StreamEnd
from agent_relay.executor.models import StreamKind

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Log Broadcast Store"),
]


def test_subscriber_receives_history_then_end_of_stream() -> None:
    store = LogBroadcastStore()
    store.append(StreamKind.STDOUT, "A\n")
    store.append(StreamKind.STDOUT, "B\n")

    subscription = store.subscribe()
    first = subscription.get(timeout=1)
    second = subscription.get(timeout=1)
    store.close()

    assert (first.sequence, first.content) == (1, "A")
    assert (second.sequence, second.content) == (2, "B")
    assert subscription.get(timeout=1) is None
    assert subscription.end_reason == StreamEnd.CLOSED


def test_late_subscriber_gets_full_history_before_new_lines() -> None:
    store = LogBroadcastStore()
    for index in range(5):
        store.append(StreamKind.STDOUT, f"line {index}")

    subscription = store.subscribe()
    store.append(StreamKind.STDERR, "after attach")
    store.close()

    received = list(subscription)
    assert [line.content for line in received] == [
        "line 0",
        "line 1",
        "line 2",
        "line 3",
        "line 4",
        "after attach",
    ]
    assert received[-1].stream == StreamKind.STDERR


def test_sequences_are_strictly_increasing_without_gaps_under_concurrency() -> None:
    store = LogBroadcastStore()
    subscription = store.subscribe()

    def _produce(prefix: str) -> None:
        for index in range(200):
            store.append(StreamKind.STDOUT, f"{prefix}-{index}")

    threads = [threading.Thread(target=_produce, args=(name,)) for name in ("a", "b", "c")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    store.close()

    sequences = [line.sequence for line in subscription]
    assert sequences == list(range(1, 601))


def test_append_strips_exactly_one_line_terminator() -> None:
    store = LogBroadcastStore()

    assert store.append(StreamKind.STDOUT, "crlf\r\n").content == "crlf"
    assert store.append(StreamKind.STDOUT, "double\n\n").content == "double\n"
    assert store.append(StreamKind.STDOUT, "none").content == "none"


def test_append_and_subscribe_after_close_raise() -> None:
    store = LogBroadcastStore()
    store.append(StreamKind.STDOUT, "kept")
    store.close()
    store.close()

    with pytest.raises(StoreClosedError):
        store.append(StreamKind.STDOUT, "late")
    with pytest.raises(StoreClosedError):
        store.subscribe()
    assert [line.content for line in store.history()] == ["kept"]


def test_slow_subscriber_is_disconnected_without_blocking_producer() -> None:
    store = LogBroadcastStore(max_buffered=3)
    slow = store.subscribe()
    fast = store.subscribe(max_buffered=100)

    for index in range(10):
        store.append(StreamKind.STDOUT, str(index))

    assert store.subscriber_count == 1
    assert [slow.get(timeout=1).content for _ in range(3)] == ["0", "1", "2"]
    assert slow.get(timeout=1) is None
    assert slow.overflowed
    assert fast.get(timeout=1).content == "0"


def test_replayed_history_does_not_count_against_live_buffer() -> None:
    store = LogBroadcastStore(max_buffered=2)
    for index in range(5):
        store.append(StreamKind.STDOUT, f"old {index}")

    subscription = store.subscribe()
    store.append(StreamKind.STDOUT, "new 0")
    store.append(StreamKind.STDOUT, "new 1")

    assert not subscription.overflowed
    assert len([subscription.get(timeout=1) for _ in range(7)]) == 7


def test_detached_subscription_drains_buffer_then_ends() -> None:
    store = LogBroadcastStore()
    store.append(StreamKind.SYSTEM, "hello")

    with store.subscribe() as subscription:
        pass

    assert store.subscriber_count == 0
    assert subscription.get(timeout=1).content == "hello"
    assert subscription.get(timeout=1) is None
    assert subscription.end_reason == StreamEnd.DETACHED


def test_get_times_out_when_nothing_arrives() -> None:
    store = LogBroadcastStore()
    subscription = store.subscribe()

    with pytest.raises(TimeoutError):
        subscription.get(timeout=0.05)


def test_history_from_sequence_is_one_based() -> None:
    store = LogBroadcastStore()
    for content in ("a", "b", "c"):
        store.append(StreamKind.STDOUT, content)

    assert [line.content for line in store.history(from_sequence=2)] == ["b", "c"]
    assert len(store) == 3
