"""
Fan-out of session state changes to the event bus and the merchant webhook.
Both sinks are best effort: failures are logged and never raised.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import requests
from confluent_kafka import KafkaException

from common.schemas import PaymentEvent, PaymentSession, WebhookEnvelope
from common.security import signature_headers
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)


class NotificationFanout:
    def __init__(
        self,
        producer=None,
        topic: str = "payment_session_events",
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        webhook_timeout: float = 10.0,
        flush_timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.producer = producer
        self.topic = topic
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.webhook_timeout = webhook_timeout
        self.flush_timeout = flush_timeout
        self._http = session or requests.Session()

    def notify(self, event_type: str, session: PaymentSession) -> None:
        timestamp = datetime.now(timezone.utc)
        self.publish_event(event_type, session, timestamp)
        self.send_webhook(event_type, session, timestamp)

    def publish_event(self, event_type: str, session: PaymentSession, timestamp: datetime) -> None:
        if self.producer is None:
            return
        event = PaymentEvent(type=event_type, session_id=session.id, payload=session, timestamp=timestamp)
        try:
            self.producer.produce(
                self.topic,
                key=session.id.encode("utf-8"),
                value=event.model_dump_json().encode("utf-8"),
            )
            remaining = self.producer.flush(self.flush_timeout)
            if remaining:
                logger.error(f"{remaining} payment event(s) still queued after flush", extra={
                    "session_id": session.id,
                    "event_type": event_type,
                })
        except (KafkaException, BufferError) as e:
            logger.error(f"Failed to publish {event_type} event: {e}", extra={
                "session_id": session.id,
                "event_type": event_type,
            })

    def send_webhook(self, event_type: str, session: PaymentSession, timestamp: datetime) -> None:
        if not self.webhook_url:
            return
        body = WebhookEnvelope(type=event_type, session=session, timestamp=timestamp).model_dump_json().encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            **signature_headers(body, self.webhook_secret),
            **get_trace_headers(),
        }
        try:
            response = self._http.post(self.webhook_url, data=body, headers=headers, timeout=self.webhook_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to dispatch merchant webhook: {e}", extra={
                "session_id": session.id,
                "event_type": event_type,
            })
