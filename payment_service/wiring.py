from dataclasses import dataclass, field
from typing import Callable, Dict

from common.circuit_breaker import CircuitBreaker, breaker_timeout, provider_breaker, zcash_rpc_breaker
from common.kafka import create_producer
from common.redis_client import SessionStore
from common.settings import Settings
from payment_service.detector import DepositDetector, ZcashRpcClient
from payment_service.dispatcher import SettlementDispatcher, SwapProviderClient
from payment_service.engine import ReconciliationEngine
from payment_service.event_stream import EventSource, KafkaEventSource, PollingEventSource
from payment_service.notifier import NotificationFanout
from payment_service.sessions import AddressAllocator, PaymentSessionService


@dataclass
class ServiceContainer:
    store: SessionStore
    engine: ReconciliationEngine
    sessions: PaymentSessionService
    event_source_factory: Callable[[], EventSource]
    breakers: Dict[str, CircuitBreaker] = field(default_factory=dict)
    stream_queue_size: int = 100
    stream_poll_timeout: float = 1.0


def build_container(settings: Settings) -> ServiceContainer:
    """Construct every external handle once, at process start"""
    store = SessionStore.from_url(settings.redis_url, settings.session_retention_seconds)

    rpc_breaker = zcash_rpc_breaker(timeout=breaker_timeout(settings.zcash_rpc_timeout_seconds))
    detector = DepositDetector(
        ZcashRpcClient.from_settings(settings),
        breaker=rpc_breaker,
        address_type=settings.zcash_address_type,
    )

    swap_breaker = provider_breaker(timeout=breaker_timeout(settings.provider_timeout_seconds))
    dispatcher = SettlementDispatcher(
        SwapProviderClient.from_settings(settings),
        source_currency=settings.source_currency,
        destination_currency=settings.destination_currency,
        native_decimals=settings.native_decimals,
        breaker=swap_breaker,
    )

    notifier = NotificationFanout(
        producer=create_producer(settings) if settings.events_enabled else None,
        topic=settings.payment_events_topic,
        webhook_url=settings.merchant_webhook_url,
        webhook_secret=settings.merchant_webhook_secret,
        webhook_timeout=settings.webhook_timeout_seconds,
    )

    engine = ReconciliationEngine(
        store,
        detector,
        dispatcher,
        notifier,
        concurrency=settings.sweep_concurrency,
        lock_seconds=settings.settlement_lock_seconds,
    )

    sessions = PaymentSessionService(
        store,
        engine,
        AddressAllocator(store, detector),
        confirmations_required=settings.payment_confirmations_required,
        default_expiry_seconds=settings.session_expiry_seconds,
    )

    if settings.events_enabled:
        def event_source_factory() -> EventSource:
            return KafkaEventSource.from_settings(settings)
    else:
        def event_source_factory() -> EventSource:
            return PollingEventSource(store)

    return ServiceContainer(
        store=store,
        engine=engine,
        sessions=sessions,
        event_source_factory=event_source_factory,
        breakers={b.name: b for b in (rpc_breaker, swap_breaker)},
        stream_queue_size=settings.event_stream_queue_size,
        stream_poll_timeout=settings.event_stream_poll_timeout_seconds,
    )
