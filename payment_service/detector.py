"""
Deposit detection on the source ledger (zcashd JSON-RPC).

The RPC client is synchronous; DepositDetector runs it through a circuit
breaker (which enforces the call timeout) and retries transport failures.
"""
import asyncio
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, zcash_rpc_breaker
from common.retry import RetryConfig, retry_async
from common.settings import Settings
from payment_service.exceptions import AddressAllocationError, DetectionError, DetectionUnavailable
from payment_service.transitions import DepositMatch

logger = logging.getLogger(__name__)

ZCASH_RPC_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=[DetectionUnavailable],
)

RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


class ZcashRpcClient:
    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        username: Optional[str] = None,
        password: Optional[str] = None,
        cookie_path: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._username = username
        self._password = password
        self._cookie_path = cookie_path
        self._http = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ZcashRpcClient":
        return cls(
            settings.zcash_rpc_url,
            timeout=settings.zcash_rpc_timeout_seconds,
            username=settings.zcash_rpc_username,
            password=settings.zcash_rpc_password,
            cookie_path=settings.zcash_rpc_cookie_path,
        )

    def _auth(self) -> Optional[Tuple[str, str]]:
        if self._cookie_path:
            # zcashd writes "__cookie__:<password>" and rotates it on restart
            try:
                with open(self._cookie_path, encoding="utf-8") as fh:
                    user, _, password = fh.read().strip().partition(":")
            except OSError as exc:
                raise DetectionUnavailable(f"cannot read zcash rpc cookie: {exc}") from exc
            return user, password
        if self._username and self._password:
            return self._username, self._password
        return None

    def call(self, method: str, params: Optional[list] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": str(uuid.uuid4()), "method": method, "params": params or []}
        try:
            response = self._http.post(self._url, json=payload, auth=self._auth(), timeout=self._timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise DetectionUnavailable(f"zcash rpc {method} unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        # zcashd reports RPC errors with HTTP 500 or 404 plus an error object
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise DetectionError(f"Zcash RPC error: {error.get('code')} {error.get('message')}")
        if response.status_code in RETRYABLE_HTTP_STATUSES:
            raise DetectionUnavailable(f"zcash rpc {method} returned HTTP {response.status_code}")
        if not isinstance(body, dict) or "result" not in body:
            raise DetectionError(f"zcash rpc {method} returned no result")

        logger.debug(f"Zcash RPC call method={method} status={response.status_code}")
        return body["result"]

    def generate_shielded_address(self, address_type: str = "sapling") -> str:
        address = self.call("z_getnewaddress", [address_type])
        if not isinstance(address, str) or not address:
            raise DetectionError("z_getnewaddress returned no address")
        return address

    def list_received_by_address(self, address: str, min_confirmations: int = 0) -> List[dict]:
        received = self.call("z_listreceivedbyaddress", [address, min_confirmations])
        if not isinstance(received, list):
            raise DetectionError("z_listreceivedbyaddress returned a non-list result")
        return received


def find_qualifying_deposit(received: List[dict], amount_requested: Decimal, confirmations_required: int) -> Optional[DepositMatch]:
    """First received note that covers the amount with enough confirmations"""
    for entry in received:
        try:
            tx_id = entry["txid"]
            amount = Decimal(str(entry["amount"]))
            confirmations = int(entry.get("confirmations", 0))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise DetectionError(f"malformed received note: {entry!r}") from exc

        if amount >= amount_requested and confirmations >= confirmations_required:
            return DepositMatch(tx_id=tx_id, amount=amount, confirmations=confirmations)

        if amount >= amount_requested:
            logger.debug(f"Deposit {tx_id} seen with {confirmations}/{confirmations_required} confirmations")
    return None


class DepositDetector:
    def __init__(
        self,
        client: ZcashRpcClient,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: RetryConfig = ZCASH_RPC_RETRY_CONFIG,
        address_type: str = "sapling",
    ):
        self.client = client
        self.breaker = breaker or zcash_rpc_breaker(timeout=20.0)
        self.retry_config = retry_config
        self.address_type = address_type

    async def _call(self, func, *args):
        try:
            return await self.breaker.call(func, *args)
        except CircuitBreakerException as exc:
            raise DetectionUnavailable(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise DetectionUnavailable(f"zcash rpc timed out after {self.breaker.config.timeout}s") from exc

    async def detect(self, address: str, amount_requested: Decimal, confirmations_required: int) -> Optional[DepositMatch]:
        """
        Look for a deposit at `address` of at least `amount_requested` with at
        least `confirmations_required` confirmations.

        Returns None when nothing qualifies yet. Raises DetectionUnavailable
        when the node could not be reached after retries and DetectionError
        when it answered with something unusable.
        """
        received = await retry_async(self._call, self.retry_config, self.client.list_received_by_address, address, 0)
        return find_qualifying_deposit(received, amount_requested, confirmations_required)

    async def allocate_address(self) -> str:
        try:
            return await retry_async(
                self._call, self.retry_config, self.client.generate_shielded_address, self.address_type
            )
        except DetectionError as exc:
            raise AddressAllocationError(str(exc)) from exc
