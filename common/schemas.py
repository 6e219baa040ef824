import base64
import binascii
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator

class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    EXPIRED = "expired"
    FAILED = "failed"

ACTIVE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.CONFIRMED})
TERMINAL_STATUSES = frozenset({PaymentStatus.EXECUTED, PaymentStatus.EXPIRED, PaymentStatus.FAILED})

# Native amounts are u64 smallest units on the destination ledger
MAX_NATIVE_AMOUNT = 2**64 - 1

# Hard ceiling on a requested expiry; the store retention window is checked on create
MAX_EXPIRES_IN_SECONDS = 365 * 24 * 3600

class FailureReason:
    DETECTION_FAILED = "detection_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    UNSUPPORTED_ACTION = "unsupported_action"

# Target actions executed on the destination ledger

class RecordOnly(BaseModel):
    type: Literal["record_only"] = "record_only"

class TransferNative(BaseModel):
    type: Literal["transfer_native"] = "transfer_native"
    destination: str = Field(min_length=1)
    amount: int = Field(gt=0, le=MAX_NATIVE_AMOUNT, description="Amount in the destination ledger's smallest unit")

class TransferToken(BaseModel):
    type: Literal["transfer_token"] = "transfer_token"
    destination: str = Field(min_length=1)
    token_id: str = Field(min_length=1)
    amount: str = Field(pattern=r"^\d+$")
    decimals: int = Field(ge=0)

class ProgramAccount(BaseModel):
    pubkey: str = Field(min_length=1)
    is_signer: bool = False
    is_writable: bool = False

class ProgramInvoke(BaseModel):
    type: Literal["program_invoke"] = "program_invoke"
    program_id: str = Field(min_length=1)
    accounts: List[ProgramAccount] = Field(min_length=1)
    data: str = Field(min_length=1, description="Base64 encoded instruction data")

    @field_validator("data")
    @classmethod
    def check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("instruction data must be base64 encoded")
        return value

TargetAction = Annotated[
    Union[RecordOnly, TransferNative, TransferToken, ProgramInvoke],
    Field(discriminator="type"),
]

class PaymentSession(BaseModel):
    id: str
    deposit_address: str = Field(min_length=1)
    amount_requested: Decimal = Field(gt=0)
    confirmations_required: int = Field(ge=1)
    target_action: TargetAction
    status: PaymentStatus = PaymentStatus.PENDING
    source_tx_id: Optional[str] = None
    settlement_tx_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    provider_deposit_address: Optional[str] = None
    provider_status: Optional[str] = None
    dispatch_claimed_at: Optional[datetime] = None
    error_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    merchant_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def settlement_dispatched(self) -> bool:
        return bool(self.settlement_tx_id or self.provider_order_id)

    @property
    def dispatch_claimed(self) -> bool:
        """A worker has committed to calling the provider for this session"""
        return self.dispatch_claimed_at is not None

class CreatePaymentRequest(BaseModel):
    amount_requested: Decimal = Field(gt=0)
    target_action: TargetAction
    merchant_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    expires_in_seconds: Optional[int] = Field(default=None, gt=0, le=MAX_EXPIRES_IN_SECONDS)

class SessionPage(BaseModel):
    sessions: List[PaymentSession]
    next_cursor: Optional[str] = None

class PaymentEvent(BaseModel):
    """Envelope published to the payment events topic"""
    type: Literal["payment.created", "payment.confirmed", "payment.executed", "payment.expired", "payment.failed"]
    session_id: str
    payload: PaymentSession
    timestamp: datetime

class WebhookEnvelope(BaseModel):
    type: str
    session: PaymentSession
    timestamp: datetime

class SweepSummary(BaseModel):
    visited: int = 0
    expired: int = 0
    confirmed: int = 0
    executed: int = 0
    failed: int = 0
    errors: int = 0
