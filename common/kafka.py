from confluent_kafka import Producer, Consumer
from common.settings import Settings

def create_producer(settings: Settings) -> Producer:
    return Producer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "enable.idempotence": True,
        "acks": "all",
    })

def get_consumer(settings: Settings, group_id: str, topics: list[str], offset_reset: str = "earliest") -> Consumer:
    c = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group_id,
        "auto.offset.reset": offset_reset,
        "enable.auto.commit": False,
    })
    c.subscribe(topics)
    return c

EVENT_CREATED   = "payment.created"
EVENT_CONFIRMED = "payment.confirmed"
EVENT_EXECUTED  = "payment.executed"
EVENT_EXPIRED   = "payment.expired"
EVENT_FAILED    = "payment.failed"
