"""
Unit tests for the pure session state machine
"""
import unittest
from datetime import timedelta

from common.schemas import FailureReason, PaymentStatus
from payment_service import transitions
from payment_service.exceptions import InvalidTransition
from payment_service.transitions import SettlementReceipt

from conftest import FakeClock, deposit, make_session

RECEIPT = SettlementReceipt(
    provider_order_id="X", provider_deposit_address="Y", settlement_tx_id="Z", provider_status="waiting"
)


class TestTransitionTable(unittest.TestCase):
    def test_terminal_states_have_no_exits(self):
        for status in (PaymentStatus.EXECUTED, PaymentStatus.EXPIRED, PaymentStatus.FAILED):
            for target in PaymentStatus:
                self.assertFalse(transitions.can_transition(status, target), f"{status} -> {target}")

    def test_confirmed_cannot_expire_or_go_back(self):
        self.assertFalse(transitions.can_transition(PaymentStatus.CONFIRMED, PaymentStatus.EXPIRED))
        self.assertFalse(transitions.can_transition(PaymentStatus.CONFIRMED, PaymentStatus.PENDING))

    def test_pending_cannot_skip_to_executed(self):
        self.assertFalse(transitions.can_transition(PaymentStatus.PENDING, PaymentStatus.EXECUTED))


class TestTransitions(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.session = make_session(self.clock, expires_in=60)

    def test_expiry_boundary_is_inclusive(self):
        self.assertFalse(transitions.is_expired(self.session, self.session.expires_at - timedelta(microseconds=1)))
        self.assertTrue(transitions.is_expired(self.session, self.session.expires_at))

    def test_confirmed_session_is_never_expired(self):
        confirmed = transitions.confirm(self.session, deposit(), self.clock())
        self.assertFalse(transitions.is_expired(confirmed, confirmed.expires_at + timedelta(days=1)))

    def test_confirm_records_source_tx_and_bumps_version(self):
        self.clock.advance(5)
        confirmed = transitions.confirm(self.session, deposit(tx_id="zec-abc"), self.clock())

        self.assertEqual(confirmed.status, PaymentStatus.CONFIRMED)
        self.assertEqual(confirmed.source_tx_id, "zec-abc")
        self.assertEqual(confirmed.version, self.session.version + 1)
        self.assertEqual(confirmed.updated_at, self.clock())
        self.assertEqual(confirmed.created_at, self.session.created_at)
        # The input record is left untouched
        self.assertEqual(self.session.status, PaymentStatus.PENDING)

    def test_execute_copies_provider_receipt(self):
        confirmed = transitions.confirm(self.session, deposit(), self.clock())
        executed = transitions.execute(confirmed, RECEIPT, self.clock())

        self.assertEqual(executed.status, PaymentStatus.EXECUTED)
        self.assertEqual(executed.provider_order_id, "X")
        self.assertEqual(executed.provider_deposit_address, "Y")
        self.assertEqual(executed.settlement_tx_id, "Z")
        self.assertEqual(executed.provider_status, "waiting")
        self.assertTrue(executed.settlement_dispatched)

    def test_execute_refuses_an_already_dispatched_session(self):
        confirmed = transitions.confirm(self.session, deposit(), self.clock())
        dispatched = confirmed.model_copy(update={"provider_order_id": "earlier"})
        with self.assertRaises(InvalidTransition):
            transitions.execute(dispatched, RECEIPT, self.clock())

    def test_claim_bumps_version_and_keeps_status(self):
        confirmed = transitions.confirm(self.session, deposit(), self.clock())
        self.clock.advance(1)
        claimed = transitions.claim_dispatch(confirmed, self.clock())

        self.assertEqual(claimed.status, PaymentStatus.CONFIRMED)
        self.assertEqual(claimed.version, confirmed.version + 1)
        self.assertEqual(claimed.dispatch_claimed_at, self.clock())
        self.assertFalse(claimed.settlement_dispatched)
        with self.assertRaises(InvalidTransition):
            transitions.claim_dispatch(claimed, self.clock())

        executed = transitions.execute(claimed, RECEIPT, self.clock())
        self.assertEqual(executed.status, PaymentStatus.EXECUTED)

    def test_only_confirmed_sessions_can_be_claimed(self):
        with self.assertRaises(InvalidTransition):
            transitions.claim_dispatch(self.session, self.clock())

    def test_fail_sets_reason(self):
        failed = transitions.fail(self.session, FailureReason.DETECTION_FAILED, self.clock())
        self.assertEqual(failed.status, PaymentStatus.FAILED)
        self.assertEqual(failed.error_reason, "detection_failed")
        self.assertTrue(failed.is_terminal)

    def test_terminal_session_rejects_further_changes(self):
        expired = transitions.expire(self.session, self.session.expires_at)
        with self.assertRaises(InvalidTransition) as ctx:
            transitions.confirm(expired, deposit(), self.clock())
        self.assertEqual(ctx.exception.current, "expired")
        self.assertEqual(ctx.exception.target, "confirmed")


if __name__ == "__main__":
    unittest.main()
