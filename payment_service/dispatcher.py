"""
Settlement dispatch through the external swap provider.

Only `transfer_native` can be settled this way: the provider receives the
source-ledger deposit and pays the destination address in the destination
ledger's native coin.
"""
import asyncio
import logging
from decimal import Decimal, localcontext
from typing import Any, Dict, Optional

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, breaker_timeout, provider_breaker
from common.schemas import ProgramInvoke, RecordOnly, TransferNative, TransferToken
from common.settings import Settings
from common.tracing import get_trace_headers
from payment_service.exceptions import ProviderResponseError, SettlementError, UnsupportedActionError
from payment_service.transitions import SettlementReceipt

logger = logging.getLogger(__name__)

ORDER_ID_FIELDS = ("id", "transaction_id", "order_id", "transactionId")
DEPOSIT_ADDRESS_FIELDS = ("payin_address", "deposit_address", "wallet_address")


def to_display_amount(smallest_units: int, decimals: int) -> str:
    """Exact conversion of an integer smallest-unit amount to a decimal string (lamports -> SOL)."""
    digits = len(str(abs(smallest_units)))
    with localcontext() as ctx:
        # Enough precision that neither scaling nor normalizing can round
        ctx.prec = max(ctx.prec, digits + decimals + 1)
        value = Decimal(smallest_units).scaleb(-decimals).normalize()
        return format(value, "f")


def _first_string(payload: Dict[str, Any], fields) -> Optional[str]:
    for field in fields:
        value = payload.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def normalize_provider_response(data: Any) -> SettlementReceipt:
    if not isinstance(data, dict):
        raise ProviderResponseError("provider response is not a JSON object")
    result = data["result"] if isinstance(data.get("result"), dict) else data

    order_id = _first_string(result, ORDER_ID_FIELDS)
    if not order_id:
        raise ProviderResponseError("provider response missing transaction identifier")
    deposit_address = _first_string(result, DEPOSIT_ADDRESS_FIELDS)
    if not deposit_address:
        raise ProviderResponseError("provider response missing deposit address")

    return SettlementReceipt(
        provider_order_id=order_id,
        provider_deposit_address=deposit_address,
        # Until the provider reports the payout tx, its order id is the settlement reference
        settlement_tx_id=_first_string(result, ("tx_to", "txTo")) or order_id,
        provider_status=_first_string(result, ("status",)) or "created",
    )


class SwapProviderClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        provider_name: str,
        fixed_rate: bool = False,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.provider_name = provider_name
        self.fixed_rate = fixed_rate
        self.timeout = timeout
        self._http = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SwapProviderClient":
        return cls(
            settings.provider_api_base_url,
            settings.provider_api_key,
            settings.provider_name,
            fixed_rate=settings.provider_fixed_rate,
            timeout=settings.provider_timeout_seconds,
        )

    def create_transaction(
        self,
        currency_from: str,
        currency_to: str,
        amount: str,
        destination_address: str,
        destination_tag: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "provider_name": self.provider_name,
            "currency_from": currency_from,
            "currency_to": currency_to,
            "to_address": destination_address,
            "amount": amount,
            "fixed": self.fixed_rate,
        }
        if destination_tag:
            payload["to_extra_id"] = destination_tag

        response = self._http.post(
            f"{self.base_url}/createTransaction",
            json=payload,
            headers={
                "Authorization": self.api_key,
                "Accept": "application/json",
                **get_trace_headers(),
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()


class SettlementDispatcher:
    def __init__(
        self,
        client: SwapProviderClient,
        source_currency: str = "zec",
        destination_currency: str = "sol",
        native_decimals: int = 9,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client
        self.source_currency = source_currency
        self.destination_currency = destination_currency
        self.native_decimals = native_decimals
        self.breaker = breaker or provider_breaker(timeout=breaker_timeout(client.timeout))

    async def dispatch(self, action) -> SettlementReceipt:
        if isinstance(action, TransferNative):
            return await self._swap_native(action)
        if isinstance(action, (RecordOnly, TransferToken, ProgramInvoke)):
            raise UnsupportedActionError(action.type)
        raise UnsupportedActionError(getattr(action, "type", type(action).__name__))

    async def _swap_native(self, action: TransferNative) -> SettlementReceipt:
        amount = to_display_amount(action.amount, self.native_decimals)
        try:
            data = await self.breaker.call(
                self.client.create_transaction,
                self.source_currency,
                self.destination_currency,
                amount,
                action.destination,
            )
        except (requests.RequestException, ValueError) as exc:
            logger.error(f"Provider createTransaction failed: {exc}")
            raise SettlementError(f"provider request failed: {exc}") from exc
        except CircuitBreakerException as exc:
            raise SettlementError(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise SettlementError(f"provider call timed out after {self.breaker.config.timeout}s") from exc

        receipt = normalize_provider_response(data)
        logger.info(f"Provider order {receipt.provider_order_id} created for {amount} {self.destination_currency}")
        return receipt
