import asyncio
import unittest
from unittest.mock import MagicMock

import pytest
import requests

from common.circuit_breaker import provider_breaker
from common.schemas import RecordOnly, TransferNative, TransferToken
from payment_service.dispatcher import (
    SettlementDispatcher,
    SwapProviderClient,
    normalize_provider_response,
    to_display_amount,
)
from payment_service.exceptions import ProviderResponseError, SettlementError, UnsupportedActionError


class TestUnitConversion(unittest.TestCase):
    def test_lamports_to_sol_is_exact(self):
        self.assertEqual(to_display_amount(1_000_000_000, 9), "1")
        self.assertEqual(to_display_amount(1_500_000_000, 9), "1.5")
        self.assertEqual(to_display_amount(1, 9), "0.000000001")
        self.assertEqual(to_display_amount(10_000_000_000, 9), "10")
        self.assertEqual(to_display_amount(123_456_789_123_456_789, 9), "123456789.123456789")

    def test_u64_ceiling_is_exact(self):
        self.assertEqual(to_display_amount(2**64 - 1, 9), "18446744073.709551615")

    def test_amounts_beyond_default_precision_are_not_rounded(self):
        self.assertEqual(to_display_amount(10**30 + 1, 9), "1000000000000000000000.000000001")

    def test_zero_decimals(self):
        self.assertEqual(to_display_amount(42, 0), "42")


class TestNormalizeProviderResponse(unittest.TestCase):
    def test_plain_fields(self):
        receipt = normalize_provider_response({"id": "X", "payin_address": "Y", "tx_to": "Z", "status": "waiting"})
        self.assertEqual(receipt.provider_order_id, "X")
        self.assertEqual(receipt.provider_deposit_address, "Y")
        self.assertEqual(receipt.settlement_tx_id, "Z")
        self.assertEqual(receipt.provider_status, "waiting")

    def test_wrapped_result_and_alternate_names(self):
        receipt = normalize_provider_response({"result": {"order_id": "o-1", "wallet_address": "addr"}})
        self.assertEqual(receipt.provider_order_id, "o-1")
        self.assertEqual(receipt.provider_deposit_address, "addr")
        self.assertEqual(receipt.settlement_tx_id, "o-1")
        self.assertEqual(receipt.provider_status, "created")

    def test_missing_identifier_fails_loudly(self):
        with self.assertRaises(ProviderResponseError):
            normalize_provider_response({"payin_address": "Y"})

    def test_missing_deposit_address_fails_loudly(self):
        with self.assertRaises(ProviderResponseError):
            normalize_provider_response({"transactionId": "X", "deposit_address": ""})

    def test_non_object_response(self):
        with self.assertRaises(ProviderResponseError):
            normalize_provider_response(["X", "Y"])


def provider(response=None, error=None):
    http = MagicMock()
    if error is not None:
        http.post.side_effect = error
    else:
        http.post.return_value = response
    client = SwapProviderClient("https://provider.test/v1/", "key-123", "flashift", fixed_rate=True, timeout=7, session=http)
    return client, http


def ok_response(body):
    response = MagicMock()
    response.json.return_value = body
    response.raise_for_status.return_value = None
    return response


def test_native_transfer_is_swapped_with_display_amount():
    client, http = provider(ok_response({"id": "X", "payin_address": "Y", "tx_to": "Z"}))
    dispatcher = SettlementDispatcher(client, breaker=provider_breaker(5.0))

    receipt = asyncio.run(dispatcher.dispatch(TransferNative(destination="SoDest", amount=2_500_000_000)))

    assert receipt.provider_order_id == "X"
    args, kwargs = http.post.call_args
    assert args[0] == "https://provider.test/v1/createTransaction"
    assert kwargs["json"] == {
        "provider_name": "flashift",
        "currency_from": "zec",
        "currency_to": "sol",
        "to_address": "SoDest",
        "amount": "2.5",
        "fixed": True,
    }
    assert kwargs["headers"]["Authorization"] == "key-123"
    assert kwargs["timeout"] == 7


@pytest.mark.parametrize("action", [RecordOnly(), TransferToken(destination="d", token_id="m", amount="5", decimals=2)])
def test_other_variants_are_rejected_without_calling_provider(action):
    client, http = provider()
    dispatcher = SettlementDispatcher(client, breaker=provider_breaker(5.0))

    with pytest.raises(UnsupportedActionError) as exc_info:
        asyncio.run(dispatcher.dispatch(action))

    assert exc_info.value.action_type == action.type
    http.post.assert_not_called()


def test_http_failure_becomes_settlement_error():
    client, _ = provider(error=requests.ConnectionError("provider down"))
    dispatcher = SettlementDispatcher(client, breaker=provider_breaker(5.0))

    with pytest.raises(SettlementError):
        asyncio.run(dispatcher.dispatch(TransferNative(destination="d", amount=1)))


def test_malformed_provider_response_is_a_provider_response_error():
    client, _ = provider(ok_response({"status": "created"}))
    dispatcher = SettlementDispatcher(client, breaker=provider_breaker(5.0))

    with pytest.raises(ProviderResponseError):
        asyncio.run(dispatcher.dispatch(TransferNative(destination="d", amount=1)))
