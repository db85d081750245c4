"""
Retry scheduling for failed fulfillment dispatches.

Lifecycle of a dispatch attempt::

    pending -> processing -> (retry_pending -> processing)* -> completed | failed

``RetryScheduler`` decides what happens after a failed dispatch and
``RetrySweep`` re-dispatches orders whose retry is due.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import utc_now
from core.utils.logging import structured_logger
from models.orders import Order, OrderStatus
from schemas.pipeline import RetrySweepSummary, SweepError
from services.audit import AuditService
from services.automated_gifts import AutomatedExecutionTracker
from services.order_state import transition_order

if TYPE_CHECKING:
    from services.fulfillment import FulfillmentService

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
MAX_RETRIES_MESSAGE = "Max retry attempts exceeded. Please try again manually."


def backoff(attempt: int, schedule_hours: Sequence[float] = None) -> timedelta:
    """
    Delay before retry number ``attempt`` (1-based).

    With the default schedule: 1 -> 1h, 2 -> 4h, 3 -> 12h. Attempts beyond
    the schedule reuse its last entry. ``attempt < 1`` raises ValueError.
    """
    if schedule_hours is None:
        schedule_hours = settings.ORDER_RETRY_BACKOFF_HOURS
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if not schedule_hours:
        raise ValueError("backoff schedule must not be empty")
    index = min(attempt, len(schedule_hours)) - 1
    return timedelta(hours=schedule_hours[index])


def normalize_fulfillment_method(order: Order, supported: Optional[str] = None) -> Optional[str]:
    """
    Return the method an order must be retried with, or None when its
    current method is already the supported one. The order is not modified.
    """
    supported = supported or settings.FULFILLMENT_METHOD
    if order.fulfillment_method == supported:
        return None
    if order.fulfillment_method in settings.LEGACY_FULFILLMENT_METHODS:
        logger.info(
            f"Order {order.id} uses legacy fulfillment method '{order.fulfillment_method}', "
            f"rewriting to '{supported}'"
        )
    else:
        logger.warning(
            f"Order {order.id} has unsupported fulfillment method '{order.fulfillment_method}', "
            f"rewriting to '{supported}'"
        )
    return supported


@dataclass
class RetryDecision:
    applied: bool
    terminal: bool
    retry_count: int
    next_retry_at: Optional[datetime] = None


class RetryScheduler:
    def __init__(
        self,
        db: AsyncSession,
        tracker: Optional[AutomatedExecutionTracker] = None,
        max_retries: Optional[int] = None,
        schedule_hours: Optional[Sequence[float]] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.tracker = tracker or AutomatedExecutionTracker(db)
        self.audit = AuditService(db)
        self.max_retries = max_retries if max_retries is not None else settings.ORDER_MAX_RETRIES
        self.schedule_hours = schedule_hours or settings.ORDER_RETRY_BACKOFF_HOURS
        self.now = now

    async def record_dispatch_failure(self, order: Order, error: str) -> RetryDecision:
        """
        Account for a failed dispatch of an order currently in ``processing``.

        Below the retry cap the order moves to ``retry_pending`` with the next
        backoff; at the cap it becomes ``failed`` and the linked automated
        execution, if any, is marked failed. Does not commit.
        """
        previous_count = order.retry_count or 0
        new_count = previous_count + 1
        criteria = [Order.retry_count == previous_count]

        if new_count >= self.max_retries:
            applied = await transition_order(
                self.db, order, OrderStatus.FAILED,
                expected_status=OrderStatus.PROCESSING,
                extra_criteria=criteria,
                retry_count=new_count,
                next_retry_at=None,
                fulfillment_status=MAX_RETRIES_EXCEEDED,
            )
            if applied:
                self.audit.record(
                    action=MAX_RETRIES_EXCEEDED,
                    status="failed",
                    order_id=order.id,
                    error_details={"error": error},
                    metadata={"retry_count": new_count, "max_retries": self.max_retries},
                )
                await self.tracker.mark_failed(order.id, MAX_RETRIES_MESSAGE)
                structured_logger.error(
                    message="Order failed permanently after exhausting retries",
                    order_id=order.id,
                    metadata={"retry_count": new_count, "error": error},
                )
            return RetryDecision(applied=applied, terminal=True, retry_count=new_count)

        next_retry_at = self.now() + backoff(new_count, self.schedule_hours)
        applied = await transition_order(
            self.db, order, OrderStatus.RETRY_PENDING,
            expected_status=OrderStatus.PROCESSING,
            extra_criteria=criteria,
            retry_count=new_count,
            next_retry_at=next_retry_at,
            fulfillment_status="dispatch_failed",
        )
        if applied:
            self.audit.record(
                action="retry_scheduled",
                status="retry_pending",
                order_id=order.id,
                error_details={"error": error},
                metadata={"retry_count": new_count, "next_retry_at": next_retry_at.isoformat()},
            )
            logger.info(f"Order {order.id} scheduled for retry {new_count} at {next_retry_at.isoformat()}")
        return RetryDecision(
            applied=applied, terminal=False, retry_count=new_count, next_retry_at=next_retry_at
        )


class RetrySweep:
    """
    Re-dispatches due ``retry_pending`` orders, sequentially and with a fixed
    pause between orders. Safe to run concurrently with itself: every order
    is claimed with a conditional update and lost claims count as skipped.
    """

    def __init__(
        self,
        db: AsyncSession,
        fulfillment: "FulfillmentService",
        batch_size: Optional[int] = None,
        item_delay: Optional[float] = None,
        per_order_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.fulfillment = fulfillment
        self.audit = AuditService(db)
        self.batch_size = batch_size or settings.RETRY_SWEEP_BATCH_SIZE
        self.item_delay = item_delay if item_delay is not None else settings.SWEEP_ITEM_DELAY_SECONDS
        self.per_order_timeout = per_order_timeout or settings.PER_ORDER_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.ORDER_MAX_RETRIES
        self.sleep = sleep
        self.now = now

    async def due_order_ids(self):
        result = await self.db.execute(
            select(Order.id)
            .where(
                Order.status == OrderStatus.RETRY_PENDING,
                Order.next_retry_at <= self.now(),
                Order.retry_count < self.max_retries,
            )
            .order_by(Order.created_at.asc())
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def process_due_retries(self) -> RetrySweepSummary:
        summary = RetrySweepSummary()
        order_ids = await self.due_order_ids()
        logger.info(f"Retry sweep found {len(order_ids)} due orders")

        for index, order_id in enumerate(order_ids):
            if index > 0 and self.item_delay:
                await self.sleep(self.item_delay)

            summary.processed += 1
            try:
                outcome = await asyncio.wait_for(
                    self._retry_order(order_id), timeout=self.per_order_timeout
                )
            except Exception as e:
                await self._record_item_error(order_id, e, summary)
                continue

            if outcome == "submitted":
                summary.succeeded += 1
            elif outcome == "retry_scheduled":
                summary.rescheduled += 1
            elif outcome == "failed":
                summary.failed_permanently += 1
            else:
                summary.skipped += 1

        return summary

    async def _retry_order(self, order_id) -> str:
        order = await self.db.get(Order, order_id, populate_existing=True)
        if order is None or order.status != OrderStatus.RETRY_PENDING:
            return "skipped"

        if order.fulfillment_reference or order.fulfillment_request_id:
            # Submitted by an earlier attempt whose bookkeeping failed; do not resubmit.
            claimed = await transition_order(
                self.db, order, OrderStatus.PROCESSING,
                expected_status=OrderStatus.RETRY_PENDING,
                next_retry_at=None,
            )
            if claimed:
                self.audit.record(
                    action="retry_skipped_already_dispatched",
                    status="processing",
                    order_id=order.id,
                    metadata={"fulfillment_reference": order.fulfillment_reference},
                )
            await self.db.commit()
            return "already_dispatched" if claimed else "skipped"

        claim_values = {"next_retry_at": None}
        previous_method = order.fulfillment_method
        normalized = normalize_fulfillment_method(order)
        if normalized:
            claim_values["fulfillment_method"] = normalized

        outcome = await self.fulfillment.dispatch(
            order, expected_status=OrderStatus.RETRY_PENDING, claim_values=claim_values
        )
        if normalized and outcome.status != "skipped":
            self.audit.record(
                action="fulfillment_method_normalized",
                status=order.status.value,
                order_id=order.id,
                metadata={"from": previous_method, "to": normalized},
            )
            await self.db.commit()
        return outcome.status

    async def _record_item_error(self, order_id, error: Exception, summary: RetrySweepSummary):
        await self.db.rollback()
        message = str(error) or type(error).__name__
        summary.errors.append(SweepError(order_id=order_id, error=message))
        structured_logger.error(
            message="Retry sweep failed to process order",
            order_id=order_id,
            job="retry_sweep",
            exception=error,
        )
        self.audit.record(
            action="retry_sweep_error",
            status="error",
            order_id=order_id,
            error_details={"error": message, "type": type(error).__name__},
        )
        await self.db.commit()
