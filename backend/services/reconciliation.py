"""
Scheduled payment reconciliation and order recovery sweeps.

Both sweeps process orders one at a time. A failure on one order is rolled
back, logged, audited and counted; the sweep then continues with the next.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import utc_now
from core.utils.logging import structured_logger
from models.orders import Order, OrderStatus, PaymentStatus
from schemas.pipeline import ReconciliationSummary, RecoverySummary, SweepError
from services.audit import AuditService
from services.order_splitter import OrderSplitter
from services.payment_verification import PaymentVerifier

logger = logging.getLogger(__name__)

RECONCILABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PAYMENT_VERIFICATION_FAILED)


class PaymentReconciliationService:
    def __init__(
        self,
        db: AsyncSession,
        verifier: PaymentVerifier,
        splitter: OrderSplitter,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.verifier = verifier
        self.splitter = splitter
        self.audit = AuditService(db)
        self.now = now

    async def run_payment_reconciliation(self) -> ReconciliationSummary:
        """
        Check recent pending and verification-failed orders against the
        gateway. Corrected orders are sent on to splitting and dispatch.
        """
        summary = ReconciliationSummary()
        since = self.now() - timedelta(hours=settings.RECONCILIATION_LOOKBACK_HOURS)
        order_ids = await self._select_ids(
            and_(
                Order.status.in_(RECONCILABLE_STATUSES),
                Order.stripe_payment_intent_id.isnot(None),
                Order.created_at >= since,
            ),
            settings.RECONCILIATION_BATCH_SIZE,
        )
        logger.info(f"Payment reconciliation checking {len(order_ids)} orders")

        for order_id in order_ids:
            try:
                order = await self.db.get(Order, order_id, populate_existing=True)
                if order is None or order.status not in RECONCILABLE_STATUSES:
                    summary.skipped += 1
                    continue

                result = await self.verifier.reconcile_order(order)
                summary.checked += 1
                summary.discrepancies.extend(result.discrepancies)
                if result.corrected:
                    summary.reconciled += 1
                    split = await self.splitter.split_and_dispatch(order_id)
                    if split.dispatched:
                        summary.dispatched += 1
            except Exception as e:
                summary.failed += 1
                await self._record_error("payment_reconciliation", order_id, e, summary.errors)

        structured_logger.info(
            message="Payment reconciliation complete",
            job="payment_reconciliation",
            metadata=summary.model_dump(mode="json", exclude={"discrepancies", "errors"}),
        )
        return summary

    async def run_order_recovery_monitor(self) -> RecoverySummary:
        """
        Phase 1 recovers ``payment_verification_failed`` orders whose payment
        did go through. Phase 2 re-dispatches paid ``processing`` orders that
        never received a fulfillment reference.
        """
        summary = RecoverySummary()
        now = self.now()

        stuck_ids = await self._select_ids(
            and_(
                Order.status == OrderStatus.PAYMENT_VERIFICATION_FAILED,
                Order.created_at >= now - timedelta(hours=settings.RECONCILIATION_LOOKBACK_HOURS),
            ),
            settings.RECOVERY_BATCH_SIZE,
        )
        for order_id in stuck_ids:
            try:
                order = await self.db.get(Order, order_id, populate_existing=True)
                if order is None or order.status != OrderStatus.PAYMENT_VERIFICATION_FAILED:
                    summary.skipped += 1
                    continue
                summary.checked += 1
                result = await self.verifier.reconcile_order(order)
                if not result.corrected:
                    continue
                summary.recovered += 1
                self.audit.record(
                    action="order_recovered",
                    status="recovered",
                    order_id=order_id,
                    payment_reference=order.payment_reference,
                    metadata={"phase": "payment_verification_failed"},
                )
                await self.db.commit()
                split = await self.splitter.split_and_dispatch(order_id)
                if split.dispatched:
                    summary.redispatched += 1
            except Exception as e:
                summary.failed += 1
                await self._record_error("order_recovery", order_id, e, summary.errors)

        undispatched_ids = await self._select_ids(
            and_(
                Order.status == OrderStatus.PROCESSING,
                Order.payment_status == PaymentStatus.SUCCEEDED,
                Order.fulfillment_reference.is_(None),
                Order.fulfillment_request_id.is_(None),
                # split parents are fulfilled through their children
                or_(Order.is_split_order.is_(False), Order.parent_order_id.isnot(None)),
                Order.created_at >= now - timedelta(hours=settings.UNDISPATCHED_LOOKBACK_HOURS),
            ),
            settings.UNDISPATCHED_BATCH_SIZE,
        )
        for order_id in undispatched_ids:
            try:
                summary.checked += 1
                self.audit.record(
                    action="order_redispatch",
                    status="attempted",
                    order_id=order_id,
                    metadata={"phase": "processing_without_reference"},
                )
                await self.db.commit()
                order = await self.db.get(Order, order_id, populate_existing=True)
                if order.parent_order_id is not None:
                    outcome = await self.splitter.fulfillment.dispatch(order, expected_status=OrderStatus.PROCESSING)
                    dispatched = outcome.dispatched
                else:
                    dispatched = bool((await self.splitter.split_and_dispatch(order_id)).dispatched)
                if dispatched:
                    summary.redispatched += 1
                else:
                    summary.skipped += 1
            except Exception as e:
                summary.failed += 1
                await self._record_error("order_recovery", order_id, e, summary.errors)

        structured_logger.info(
            message="Order recovery monitor complete",
            job="order_recovery",
            metadata=summary.model_dump(mode="json", exclude={"errors"}),
        )
        return summary

    async def _select_ids(self, criteria, limit: int) -> List:
        result = await self.db.execute(
            select(Order.id)
            .where(criteria)
            .order_by(Order.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _record_error(self, job: str, order_id, error: Exception, errors: List[SweepError]):
        await self.db.rollback()
        message = str(error) or type(error).__name__
        errors.append(SweepError(order_id=order_id, error=message))
        structured_logger.error(
            message=f"{job} failed for order",
            order_id=order_id,
            job=job,
            exception=error,
        )
        self.audit.record(
            action=f"{job}_error",
            status="error",
            order_id=order_id,
            error_details={"error": message, "type": type(error).__name__},
        )
        await self.db.commit()
