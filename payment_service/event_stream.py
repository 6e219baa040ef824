"""
Read-only feed of session transitions.

A subscription owns a producer task that pulls batches from an EventSource
and pushes them into a bounded queue. When the consumer falls behind, the
oldest queued event is dropped; consumers must tolerate gaps and fall back to
polling the list/get endpoints. If the source breaks, the subscription ends.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Dict, List, Optional, Tuple

from confluent_kafka import KafkaException

from common.kafka import EVENT_CONFIRMED, EVENT_CREATED, EVENT_EXECUTED, EVENT_EXPIRED, EVENT_FAILED, get_consumer
from common.redis_client import SessionStore
from common.schemas import PaymentStatus
from common.settings import Settings

logger = logging.getLogger(__name__)

STATUS_EVENTS = {
    PaymentStatus.PENDING: EVENT_CREATED,
    PaymentStatus.CONFIRMED: EVENT_CONFIRMED,
    PaymentStatus.EXECUTED: EVENT_EXECUTED,
    PaymentStatus.EXPIRED: EVENT_EXPIRED,
    PaymentStatus.FAILED: EVENT_FAILED,
}

_CLOSED = object()


class EventSource:
    """Blocking source of event dicts; fetch() is called from a worker thread"""

    def fetch(self, timeout: float) -> List[dict]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class KafkaEventSource(EventSource):
    def __init__(self, consumer):
        self.consumer = consumer

    @classmethod
    def from_settings(cls, settings: Settings) -> "KafkaEventSource":
        # Every subscriber gets its own group so each sees the full feed from now on
        group_id = f"{settings.event_stream_group}-{uuid.uuid4().hex[:12]}"
        return cls(get_consumer(settings, group_id, [settings.payment_events_topic], offset_reset="latest"))

    def fetch(self, timeout: float) -> List[dict]:
        msg = self.consumer.poll(timeout)
        if msg is None:
            return []
        if msg.error():
            raise KafkaException(msg.error())
        try:
            return [json.loads(msg.value())]
        except ValueError:
            logger.warning("Skipping undecodable payment event")
            return []

    def close(self) -> None:
        self.consumer.close()


class PollingEventSource(EventSource):
    """Synthesizes events by diffing the newest page of sessions between polls"""

    def __init__(self, store: SessionStore, page_size: int = 100, sleep=time.sleep):
        self.store = store
        self.page_size = page_size
        self._seen: Dict[str, Tuple[int, PaymentStatus]] = {}
        self._primed = False
        self._sleep = sleep

    def fetch(self, timeout: float) -> List[dict]:
        if self._primed:
            self._sleep(timeout)
        sessions, _ = self.store.list_sessions(limit=self.page_size)
        events = []
        for session in reversed(sessions):
            marker = (session.version, session.status)
            if self._seen.get(session.id) == marker:
                continue
            self._seen[session.id] = marker
            if not self._primed:
                continue
            events.append({
                "type": STATUS_EVENTS[session.status],
                "session_id": session.id,
                "payload": session.model_dump(mode="json"),
                "timestamp": session.updated_at.isoformat(),
            })
        self._primed = True
        return events


class EventSubscription:
    def __init__(self, source: EventSource, maxsize: int = 100, poll_timeout: float = 1.0):
        self.source = source
        self.poll_timeout = poll_timeout
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._task: Optional[asyncio.Task] = None
        self._fetch: Optional[asyncio.Future] = None
        self._stopping = False
        self._source_closed = False

    def start(self) -> "EventSubscription":
        if self._task is None:
            self._task = asyncio.create_task(self._produce())
        return self

    async def _produce(self) -> None:
        try:
            while not self._stopping:
                # Shielded so a cancel never abandons a fetch that still holds the source
                self._fetch = asyncio.ensure_future(asyncio.to_thread(self.source.fetch, self.poll_timeout))
                batch = await asyncio.shield(self._fetch)
                for event in batch:
                    self._offer(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Payment event source failed, ending subscription: {e}")
        finally:
            self._offer(_CLOSED)
            if self._fetch is not None and not self._fetch.done():
                await asyncio.wait([self._fetch])
            # The source is only closed once no fetch is running against it
            await self._close_source()

    def _offer(self, item) -> None:
        while True:
            try:
                self.queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        """Stop after the in-flight fetch returns (at most poll_timeout), then close the source"""
        self._stopping = True
        if self._task is None:
            await self._close_source()
            return
        task, self._task = self._task, None
        await task

    async def _close_source(self) -> None:
        if not self._source_closed:
            self._source_closed = True
            await asyncio.to_thread(self.source.close)

    async def __aenter__(self) -> "EventSubscription":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def format_sse(event: dict) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event, default=str)}\n\n"
