"""
Pure state transitions for payment sessions.

Every function takes the previously read session and returns a new record
with the status changed, the version bumped and `updated_at` set. Nothing here
touches the store or the network.

    pending -> confirmed -> executed
    pending -> confirmed -> failed
    pending -> failed          (detection error)
    pending -> expired

Before the provider is called, a confirmed session is claimed with a version
bump so that only one worker can ever reach the provider for it.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from common.schemas import PaymentSession, PaymentStatus
from payment_service.exceptions import InvalidTransition

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.CONFIRMED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.EXECUTED, PaymentStatus.FAILED}),
    PaymentStatus.EXECUTED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class DepositMatch:
    tx_id: str
    amount: Decimal
    confirmations: int


@dataclass(frozen=True)
class SettlementReceipt:
    provider_order_id: str
    provider_deposit_address: str
    settlement_tx_id: str
    provider_status: str


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _advance(session: PaymentSession, target: PaymentStatus, now: datetime, **changes) -> PaymentSession:
    if not can_transition(session.status, target):
        raise InvalidTransition(session.id, session.status.value, target.value)
    return session.model_copy(update={
        **changes,
        "status": target,
        "updated_at": now,
        "version": session.version + 1,
    })


def is_expired(session: PaymentSession, now: datetime) -> bool:
    return session.status == PaymentStatus.PENDING and now >= session.expires_at


def expire(session: PaymentSession, now: datetime) -> PaymentSession:
    return _advance(session, PaymentStatus.EXPIRED, now)


def confirm(session: PaymentSession, deposit: DepositMatch, now: datetime) -> PaymentSession:
    return _advance(session, PaymentStatus.CONFIRMED, now, source_tx_id=session.source_tx_id or deposit.tx_id)


def claim_dispatch(session: PaymentSession, now: datetime) -> PaymentSession:
    """Mark a confirmed session as handed to the provider. Status is unchanged."""
    if session.status != PaymentStatus.CONFIRMED or session.settlement_dispatched or session.dispatch_claimed:
        raise InvalidTransition(session.id, session.status.value, "dispatching")
    return session.model_copy(update={
        "dispatch_claimed_at": now,
        "updated_at": now,
        "version": session.version + 1,
    })


def execute(session: PaymentSession, receipt: SettlementReceipt, now: datetime) -> PaymentSession:
    if session.settlement_dispatched:
        raise InvalidTransition(session.id, "settled", PaymentStatus.EXECUTED.value)
    return _advance(
        session,
        PaymentStatus.EXECUTED,
        now,
        provider_order_id=receipt.provider_order_id,
        provider_deposit_address=receipt.provider_deposit_address,
        settlement_tx_id=receipt.settlement_tx_id,
        provider_status=receipt.provider_status,
    )


def fail(session: PaymentSession, reason: str, now: datetime) -> PaymentSession:
    return _advance(session, PaymentStatus.FAILED, now, error_reason=reason)
