"""
Payment session reconciliation engine.

A sweep visits every id in the pending-set index and, per session, runs:

1. load (skip and unindex if the record is gone)
2. expiry check for pending sessions
3. deposit detection for pending sessions
4. settlement dispatch for confirmed sessions that were never dispatched

On-demand refresh runs the same per-session routine for one id.

Every transition is written with a version check (compare-and-put) and is
only fanned out after the write succeeded. The dispatch decision is taken
under a per-session lock, re-checked against a fresh read and then claimed
with a versioned write before the provider is called. Only the worker whose
claim landed reaches the provider, even if the lock expires mid-call.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from common.kafka import EVENT_CONFIRMED, EVENT_EXECUTED, EVENT_EXPIRED, EVENT_FAILED
from common.redis_client import SessionStore
from common.schemas import ACTIVE_STATUSES, FailureReason, PaymentSession, PaymentStatus, SweepSummary
from common.tracing import payments_tracer
from payment_service import transitions
from payment_service.exceptions import DetectionUnavailable, UnsupportedActionError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    def __init__(
        self,
        store: SessionStore,
        detector,
        dispatcher,
        notifier,
        clock: Callable[[], datetime] = utcnow,
        concurrency: int = 8,
        lock_seconds: int = 60,
    ):
        self.store = store
        self.detector = detector
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.clock = clock
        self.concurrency = max(1, concurrency)
        self.lock_seconds = lock_seconds

    async def run_sweep(self) -> SweepSummary:
        """One pass over the pending set. Sessions are processed in parallel."""
        summary = SweepSummary()
        with payments_tracer.start_span("payments.sweep") as span:
            ids = self.store.pending_ids()
            span.add_tag("pending.count", len(ids))
            semaphore = asyncio.Semaphore(self.concurrency)

            async def visit(session_id: str):
                async with semaphore:
                    return await self._reconcile(session_id)

            results = await asyncio.gather(*(visit(i) for i in ids), return_exceptions=True)

            for session_id, result in zip(ids, results):
                summary.visited += 1
                if isinstance(result, Exception):
                    summary.errors += 1
                    logger.error(f"Reconciliation of session {session_id} crashed: {result!r}", extra={
                        "session_id": session_id,
                    })
                    continue
                before, after = result
                if after is None or before is None or after.status == before:
                    continue
                if after.status == PaymentStatus.EXPIRED:
                    summary.expired += 1
                elif after.status == PaymentStatus.FAILED:
                    summary.failed += 1
                elif after.status == PaymentStatus.EXECUTED:
                    summary.executed += 1
                    if before == PaymentStatus.PENDING:
                        summary.confirmed += 1
                elif after.status == PaymentStatus.CONFIRMED:
                    summary.confirmed += 1

            for key, value in summary.model_dump().items():
                span.add_tag(f"sweep.{key}", value)

        logger.info(f"Sweep finished: {summary.model_dump()}")
        return summary

    async def refresh(self, session_id: str) -> Optional[PaymentSession]:
        """Force progress on one session and return its current record"""
        session = self.store.get(session_id)
        if session is None or session.status not in ACTIVE_STATUSES:
            return session
        _, current = await self._reconcile(session_id)
        return current

    async def _reconcile(self, session_id: str) -> Tuple[Optional[PaymentStatus], Optional[PaymentSession]]:
        session = self.store.get(session_id)
        if session is None:
            # The record outlived its retention TTL; nothing left to reconcile
            self.store.remove_pending(session_id)
            return None, None
        before = session.status

        if session.is_terminal:
            self.store.remove_pending(session_id)
            return before, session

        now = self.clock()
        if transitions.is_expired(session, now):
            return before, await self._commit(session, transitions.expire(session, now), EVENT_EXPIRED)

        if session.status == PaymentStatus.PENDING:
            session = await self._detect(session)
            if session is None or session.status != PaymentStatus.CONFIRMED:
                return before, session

        session = self.store.get(session_id)
        if session is not None and session.status == PaymentStatus.CONFIRMED and not session.settlement_dispatched:
            if session.dispatch_claimed:
                logger.warning(f"Session {session.id} was claimed for settlement at {session.dispatch_claimed_at} "
                               f"without a recorded outcome; check the provider before intervening", extra={
                    "session_id": session.id,
                })
                return before, session
            session = await self._settle(session)
        return before, session

    async def _detect(self, session: PaymentSession) -> Optional[PaymentSession]:
        try:
            match = await self.detector.detect(
                session.deposit_address, session.amount_requested, session.confirmations_required
            )
        except DetectionUnavailable as e:
            # Transport trouble: stay pending, the next sweep tries again
            logger.warning(f"Deposit detection unavailable for session {session.id}: {e}", extra={
                "session_id": session.id,
            })
            return session
        except Exception as e:
            logger.error(f"Deposit detection failed for session {session.id}: {e}", extra={
                "session_id": session.id,
                "reason": FailureReason.DETECTION_FAILED,
            })
            return await self._commit(
                session, transitions.fail(session, FailureReason.DETECTION_FAILED, self.clock()), EVENT_FAILED
            )

        if match is None:
            return session

        logger.info(f"Deposit {match.tx_id} confirmed for session {session.id} ({match.confirmations} confirmations)")
        return await self._commit(session, transitions.confirm(session, match, self.clock()), EVENT_CONFIRMED)

    async def _settle(self, session: PaymentSession) -> Optional[PaymentSession]:
        token = self.store.acquire_lock(session.id, self.lock_seconds)
        if token is None:
            logger.info(f"Settlement for session {session.id} already in flight elsewhere")
            return session

        try:
            # Re-read under the lock; a concurrent worker may already have settled it
            current = self.store.get(session.id)
            if (current is None or current.status != PaymentStatus.CONFIRMED
                    or current.settlement_dispatched or current.dispatch_claimed):
                return current

            claimed = transitions.claim_dispatch(current, self.clock())
            if not self.store.compare_and_put(claimed, expected_version=current.version):
                logger.info(f"Settlement for session {current.id} claimed by another worker")
                return self.store.get(current.id)
            current = claimed

            try:
                receipt = await self.dispatcher.dispatch(current.target_action)
            except UnsupportedActionError as e:
                logger.error(f"Session {current.id} cannot be settled: {e}", extra={
                    "session_id": current.id,
                    "reason": FailureReason.UNSUPPORTED_ACTION,
                })
                return await self._commit(
                    current, transitions.fail(current, FailureReason.UNSUPPORTED_ACTION, self.clock()), EVENT_FAILED
                )
            except Exception as e:
                logger.error(f"Settlement failed for session {current.id}: {e}", extra={
                    "session_id": current.id,
                    "reason": FailureReason.SETTLEMENT_FAILED,
                })
                return await self._commit(
                    current, transitions.fail(current, FailureReason.SETTLEMENT_FAILED, self.clock()), EVENT_FAILED
                )

            return await self._commit(current, transitions.execute(current, receipt, self.clock()), EVENT_EXECUTED)
        finally:
            self.store.release_lock(session.id, token)

    async def _commit(self, previous: PaymentSession, updated: PaymentSession, event_type: str) -> Optional[PaymentSession]:
        """Persist a transition against the version we read, then fan it out"""
        if not self.store.compare_and_put(updated, expected_version=previous.version):
            logger.info(f"Session {previous.id} changed concurrently; dropping {updated.status.value} transition")
            return self.store.get(previous.id)

        logger.info(f"Session {updated.id}: {previous.status.value} -> {updated.status.value}")
        await asyncio.to_thread(self.notifier.notify, event_type, updated)
        return updated
