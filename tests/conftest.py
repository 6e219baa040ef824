"""
Shared fixtures: a fakeredis-backed session store and programmable fakes for
the source-ledger node, the settlement provider and the notification sinks.
"""
import asyncio
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import fakeredis
import pytest

from common.redis_client import SessionStore
from common.schemas import PaymentSession, PaymentStatus, RecordOnly, TransferNative
from payment_service.engine import ReconciliationEngine
from payment_service.transitions import DepositMatch, SettlementReceipt

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeDetector:
    """Returns whatever `result` holds; raises it if it is an exception"""

    def __init__(self, result=None):
        self.result = result
        self.calls = []
        self.addresses = iter(f"zs1fake{i:04d}" for i in range(10_000))
        self.allocation_error: Optional[Exception] = None
        self.on_detect = None

    async def detect(self, address, amount_requested, confirmations_required):
        self.calls.append((address, amount_requested, confirmations_required))
        if self.on_detect is not None:
            self.on_detect()
        await asyncio.sleep(0)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    async def allocate_address(self) -> str:
        if self.allocation_error is not None:
            raise self.allocation_error
        return next(self.addresses)


class FakeDispatcher:
    def __init__(self, receipt: Optional[SettlementReceipt] = None, delay: float = 0.0):
        self.receipt = receipt or SettlementReceipt(
            provider_order_id="X",
            provider_deposit_address="Y",
            settlement_tx_id="Z",
            provider_status="created",
        )
        self.delay = delay
        self.error: Optional[Exception] = None
        self.calls: List = []
        self.on_dispatch = None

    async def dispatch(self, action) -> SettlementReceipt:
        self.calls.append(action)
        if self.on_dispatch is not None:
            self.on_dispatch(action)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.receipt


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def notify(self, event_type: str, session: PaymentSession) -> None:
        with self._lock:
            self.events.append((event_type, session.id, session.status))

    def types(self) -> List[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(redis_client):
    return SessionStore(redis_client, retention_seconds=7 * 24 * 3600)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, detector, dispatcher, notifier, clock):
    return ReconciliationEngine(store, detector, dispatcher, notifier, clock=clock, concurrency=4, lock_seconds=30)


def make_session(
    clock: FakeClock,
    status: PaymentStatus = PaymentStatus.PENDING,
    amount: str = "1.0",
    confirmations: int = 3,
    action=None,
    expires_in: int = 3600,
    created_at: Optional[datetime] = None,
    **fields,
) -> PaymentSession:
    created = created_at or clock()
    return PaymentSession(
        id=str(uuid.uuid4()),
        deposit_address=f"zs1{uuid.uuid4().hex}",
        amount_requested=Decimal(amount),
        confirmations_required=confirmations,
        target_action=action or TransferNative(destination="DestSo1anaAddress", amount=1_500_000_000),
        status=status,
        created_at=created,
        updated_at=created,
        expires_at=created + timedelta(seconds=expires_in),
        **fields,
    )


def deposit(confirmations: int = 3, amount: str = "1.0", tx_id: str = "zec-tx-1") -> DepositMatch:
    return DepositMatch(tx_id=tx_id, amount=Decimal(amount), confirmations=confirmations)


def record_only() -> RecordOnly:
    return RecordOnly()
