import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional

from common.error_handling import BusinessLogicError, ErrorCodes, ServiceError
from common.kafka import EVENT_CREATED
from common.redis_client import SessionStore
from common.schemas import CreatePaymentRequest, PaymentSession, PaymentStatus, SessionPage
from payment_service.engine import ReconciliationEngine
from payment_service.exceptions import AddressAllocationError

logger = logging.getLogger(__name__)


class AddressAllocator:
    """Hands out deposit addresses: pre-provisioned pool first, fresh from the node otherwise"""

    def __init__(self, store: SessionStore, detector):
        self.store = store
        self.detector = detector

    async def allocate(self) -> str:
        pooled = self.store.pop_pooled_address()
        if pooled:
            return pooled
        return await self.detector.allocate_address()


class PaymentSessionService:
    def __init__(
        self,
        store: SessionStore,
        engine: ReconciliationEngine,
        allocator: AddressAllocator,
        confirmations_required: int,
        default_expiry_seconds: int,
    ):
        self.store = store
        self.engine = engine
        self.allocator = allocator
        self.confirmations_required = confirmations_required
        self.default_expiry_seconds = default_expiry_seconds

    async def create_session(self, request: CreatePaymentRequest) -> PaymentSession:
        expires_in = request.expires_in_seconds or self.default_expiry_seconds
        if expires_in > self.store.retention_seconds:
            # The record would leave the store before it could expire
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR,
                f"expires_in_seconds must not exceed {self.store.retention_seconds}",
                field="expires_in_seconds",
            )

        try:
            deposit_address = await self.allocator.allocate()
        except AddressAllocationError as e:
            raise ServiceError(ErrorCodes.ADDRESS_ALLOCATION_FAILED, "Failed to allocate a deposit address", e)

        now = self.engine.clock()
        session = PaymentSession(
            id=str(uuid.uuid4()),
            deposit_address=deposit_address,
            amount_requested=request.amount_requested,
            confirmations_required=self.confirmations_required,
            target_action=request.target_action,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=expires_in),
            merchant_id=request.merchant_id,
            metadata=request.metadata,
        )

        self.store.put(session)
        self.store.prune_index(now)
        logger.info(f"Payment session {session.id} created", extra={
            "session_id": session.id,
            "merchant_id": session.merchant_id,
        })
        await asyncio.to_thread(self.engine.notifier.notify, EVENT_CREATED, session)
        return session

    def list_sessions(self, cursor: Optional[str] = None, limit: int = 20) -> SessionPage:
        sessions, next_cursor = self.store.list_sessions(cursor=cursor, limit=limit)
        return SessionPage(sessions=sessions, next_cursor=next_cursor)

    async def get_session(self, session_id: str) -> PaymentSession:
        session = await self.engine.refresh(session_id)
        if session is None:
            raise BusinessLogicError(ErrorCodes.SESSION_NOT_FOUND, f"Payment session {session_id} not found")
        return session
