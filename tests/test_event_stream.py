import asyncio
import json
import threading
import time

from common.schemas import PaymentStatus
from payment_service.event_stream import EventSource, EventSubscription, PollingEventSource, format_sse

from conftest import make_session


class ScriptedSource(EventSource):
    """Hands out prepared batches, then blocks until closed"""

    def __init__(self, batches, error=None):
        self.batches = list(batches)
        self.error = error
        self.closed = threading.Event()

    def fetch(self, timeout):
        if self.batches:
            return self.batches.pop(0)
        if self.error is not None:
            raise self.error
        self.closed.wait(timeout)
        return []

    def close(self):
        self.closed.set()


def test_subscription_delivers_events_in_order_and_closes_source():
    source = ScriptedSource([[{"type": "payment.created", "session_id": "a"}], [{"type": "payment.confirmed", "session_id": "a"}]])

    async def consume():
        received = []
        async with EventSubscription(source, maxsize=10, poll_timeout=0.01) as subscription:
            async for event in subscription:
                received.append(event["type"])
                if len(received) == 2:
                    break
        return received

    assert asyncio.run(consume()) == ["payment.created", "payment.confirmed"]
    assert source.closed.is_set()


def test_subscription_drops_oldest_when_consumer_lags():
    events = [{"type": "payment.created", "session_id": str(i)} for i in range(5)]
    source = ScriptedSource([events], error=RuntimeError("feed gone"))

    async def consume():
        subscription = EventSubscription(source, maxsize=3, poll_timeout=0.01).start()
        await asyncio.sleep(0.2)
        received = [event["session_id"] async for event in subscription]
        await subscription.close()
        return received, subscription.dropped

    received, dropped = asyncio.run(consume())

    # The end-of-stream marker also takes a slot in the bounded queue
    assert received == ["3", "4"]
    assert dropped == 3


class SlowSource(EventSource):
    """Records whether close() ever overlapped a running fetch"""

    def __init__(self, fetch_seconds):
        self.fetch_seconds = fetch_seconds
        self.fetching = False
        self.closed_during_fetch = None
        self.close_calls = 0

    def fetch(self, timeout):
        self.fetching = True
        time.sleep(self.fetch_seconds)
        self.fetching = False
        return []

    def close(self):
        self.close_calls += 1
        self.closed_during_fetch = self.fetching


def test_close_waits_for_in_flight_fetch_before_closing_source():
    source = SlowSource(fetch_seconds=0.1)

    async def consume():
        subscription = EventSubscription(source, poll_timeout=0.1).start()
        await asyncio.sleep(0.03)
        assert source.fetching
        await subscription.close()
        await subscription.close()

    asyncio.run(consume())

    assert source.close_calls == 1
    assert source.closed_during_fetch is False


def test_unstarted_subscription_still_closes_source():
    source = SlowSource(fetch_seconds=0)
    asyncio.run(EventSubscription(source).close())
    assert source.close_calls == 1


def test_subscription_ends_when_source_fails():
    source = ScriptedSource([], error=ConnectionError("broker unreachable"))

    async def consume():
        async with EventSubscription(source, poll_timeout=0.01) as subscription:
            return [event async for event in subscription]

    assert asyncio.run(consume()) == []


def test_polling_source_emits_only_changes(store, clock):
    first = make_session(clock)
    store.put(first)
    source = PollingEventSource(store, sleep=lambda _: None)

    assert source.fetch(0) == []

    second = make_session(clock)
    store.put(second)
    confirmed = first.model_copy(update={"status": PaymentStatus.CONFIRMED, "version": 1})
    store.compare_and_put(confirmed, expected_version=0)

    events = source.fetch(0)
    assert sorted((e["type"], e["session_id"]) for e in events) == sorted([
        ("payment.created", second.id),
        ("payment.confirmed", first.id),
    ])
    assert source.fetch(0) == []


def test_format_sse():
    frame = format_sse({"type": "payment.executed", "session_id": "a"})
    assert frame.startswith("event: payment.executed\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"type": "payment.executed", "session_id": "a"}
