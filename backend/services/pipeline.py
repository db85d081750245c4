"""
Composition root of the order pipeline.

``OrderPipeline`` wires the services around one database session and the
two external collaborators, and runs each entry point inside an execution
record. HTTP routes and ARQ tasks both go through it.
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import utc_now
from schemas.pipeline import (
    DuplicateCleanupMode,
    DuplicateCleanupSummary,
    PaymentVerificationResult,
    ReconciliationSummary,
    RecoverySummary,
    RetrySweepSummary,
    SplitSummary,
)
from services.automated_gifts import AutomatedExecutionTracker
from services.duplicate_orders import DuplicateOrderDetector
from services.execution_log import track_execution
from services.fulfillment import FulfillmentService
from services.fulfillment_dispatcher import FulfillmentDispatcher, HttpFulfillmentDispatcher
from services.order_splitter import OrderSplitter
from services.payment_gateway import PaymentGateway, StripePaymentGateway
from services.payment_verification import PaymentVerifier
from services.reconciliation import PaymentReconciliationService
from services.retry_scheduler import RetryScheduler, RetrySweep


class OrderPipeline:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        dispatcher: Optional[FulfillmentDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.gateway = gateway or StripePaymentGateway()
        self.dispatcher = dispatcher or HttpFulfillmentDispatcher()
        self.now = now

        self.tracker = AutomatedExecutionTracker(db)
        self.retry_scheduler = RetryScheduler(db, tracker=self.tracker, now=now)
        self.fulfillment = FulfillmentService(db, self.dispatcher, retry_scheduler=self.retry_scheduler)
        self.verifier = PaymentVerifier(db, self.gateway, sleep=sleep)
        self.splitter = OrderSplitter(db, self.fulfillment)
        self.reconciliation = PaymentReconciliationService(db, self.verifier, self.splitter, now=now)
        self.retry_sweep = RetrySweep(db, self.fulfillment, sleep=sleep, now=now)
        self.duplicates = DuplicateOrderDetector(db, self.dispatcher)

    async def verify_payment(
        self,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> PaymentVerificationResult:
        return await self.verifier.verify(session_id, payment_intent_id, max_attempts=max_attempts)

    async def run_payment_reconciliation(self) -> ReconciliationSummary:
        async with track_execution(self.db, "payment_reconciliation", now=self.now) as record:
            summary = await self.reconciliation.run_payment_reconciliation()
            record.set_counts(
                processed=summary.checked + summary.failed,
                succeeded=summary.checked,
                failed=summary.failed,
                skipped=summary.skipped,
            )
            record.metadata = {
                "reconciled": summary.reconciled,
                "dispatched": summary.dispatched,
                "discrepancies": len(summary.discrepancies),
            }
        return summary

    async def run_order_recovery(self) -> RecoverySummary:
        async with track_execution(self.db, "order_recovery", now=self.now) as record:
            summary = await self.reconciliation.run_order_recovery_monitor()
            record.set_counts(
                processed=summary.checked,
                succeeded=summary.checked - summary.failed,
                failed=summary.failed,
                skipped=summary.skipped,
            )
            record.metadata = {"recovered": summary.recovered, "redispatched": summary.redispatched}
        return summary

    async def process_due_retries(self) -> RetrySweepSummary:
        async with track_execution(self.db, "retry_sweep", now=self.now) as record:
            summary = await self.retry_sweep.process_due_retries()
            record.set_counts(
                processed=summary.processed,
                succeeded=summary.succeeded,
                failed=summary.failed_permanently + len(summary.errors),
                skipped=summary.skipped,
            )
            record.metadata = {"rescheduled": summary.rescheduled}
        return summary

    async def run_duplicate_cleanup(
        self, mode: DuplicateCleanupMode = DuplicateCleanupMode.REPORT
    ) -> DuplicateCleanupSummary:
        async with track_execution(self.db, f"duplicate_{DuplicateCleanupMode(mode).value}", now=self.now) as record:
            summary = await self.duplicates.run(mode)
            record.set_counts(
                processed=summary.duplicate_orders,
                succeeded=summary.cancelled,
                failed=summary.failed,
                skipped=summary.skipped,
            )
            record.metadata = {"groups_found": summary.groups_found}
        return summary

    async def split_order(self, order_id: UUID) -> SplitSummary:
        async with track_execution(self.db, "split_order", now=self.now) as record:
            summary = await self.splitter.split_and_dispatch(order_id)
            record.set_counts(
                processed=max(summary.total_split_orders, 1),
                succeeded=summary.dispatched,
                failed=summary.failed,
                skipped=summary.awaiting_address,
            )
            record.metadata = {"order_id": str(order_id), "outcome": summary.outcome.value}
        return summary
