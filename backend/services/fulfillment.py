"""
Dispatch of paid orders to the fulfillment dispatcher.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import ValidationException
from core.utils.logging import structured_logger
from models.orders import Order, OrderStatus, PaymentStatus
from services.audit import AuditService
from services.fulfillment_dispatcher import DispatchResult, FulfillmentDispatcher
from services.order_state import transition_order
from services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    # submitted, retry_scheduled, failed, skipped
    status: str
    external_reference: Optional[str] = None
    request_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def dispatched(self) -> bool:
        return self.status == "submitted"


class FulfillmentService:
    def __init__(
        self,
        db: AsyncSession,
        dispatcher: FulfillmentDispatcher,
        retry_scheduler: Optional[RetryScheduler] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.retry_scheduler = retry_scheduler or RetryScheduler(db)
        self.audit = AuditService(db)
        self.timeout = timeout or settings.FULFILLMENT_TIMEOUT_SECONDS

    async def dispatch(
        self,
        order: Order,
        expected_status: Optional[OrderStatus] = None,
        claim_values: Optional[Dict[str, Any]] = None,
    ) -> DispatchOutcome:
        """
        Claim ``order`` into ``processing`` and submit it to the dispatcher.

        The claim is a conditional update on ``expected_status`` (the loaded
        status by default); an order already ``processing`` is only claimed
        while it has no fulfillment reference. A lost claim returns a
        ``skipped`` outcome. Failures go to the retry scheduler. Commits.
        """
        if order.payment_status != PaymentStatus.SUCCEEDED:
            raise ValidationException(
                message=f"Order {order.order_number} is not paid and cannot be dispatched"
            )

        expected = OrderStatus(expected_status or order.status)
        criteria = []
        if expected == OrderStatus.PROCESSING:
            criteria = [
                Order.fulfillment_reference.is_(None),
                Order.fulfillment_request_id.is_(None),
            ]

        claimed = await transition_order(
            self.db, order, OrderStatus.PROCESSING,
            expected_status=expected,
            extra_criteria=criteria,
            **(claim_values or {}),
        )
        if not claimed:
            logger.info(f"Order {order.id} was claimed elsewhere, skipping dispatch")
            return DispatchOutcome(status="skipped")
        # Make the claim visible before the slow external call.
        await self.db.commit()

        result = await self._submit(order)
        if result.success:
            return await self._record_submission(order, result)
        return await self._record_failure(order, result)

    async def _submit(self, order: Order) -> DispatchResult:
        try:
            return await asyncio.wait_for(
                self.dispatcher.submit(str(order.id)), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return DispatchResult(success=False, error=f"Dispatch timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Dispatcher raised for order {order.id}: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__)

    async def _record_submission(self, order: Order, result: DispatchResult) -> DispatchOutcome:
        applied = await transition_order(
            self.db, order, OrderStatus.PROCESSING,
            expected_status=OrderStatus.PROCESSING,
            fulfillment_reference=result.external_reference,
            fulfillment_request_id=result.request_id,
            fulfillment_status="submitted",
        )
        if not applied:
            structured_logger.warning(
                message="Order left processing while being dispatched; submission not recorded",
                order_id=order.id,
                metadata={"request_id": result.request_id, "reference": result.external_reference},
            )
        self.audit.record(
            action="dispatch_submitted",
            status="processing" if applied else "conflict",
            order_id=order.id,
            metadata={
                "request_id": result.request_id,
                "fulfillment_reference": result.external_reference,
                "fulfillment_method": order.fulfillment_method,
            },
        )
        await self.db.commit()
        structured_logger.info(
            message="Order submitted for fulfillment",
            order_id=order.id,
            metadata={"request_id": result.request_id},
        )
        return DispatchOutcome(
            status="submitted",
            external_reference=result.external_reference,
            request_id=result.request_id,
        )

    async def _record_failure(self, order: Order, result: DispatchResult) -> DispatchOutcome:
        error = result.error or "Fulfillment dispatch failed"
        structured_logger.warning(
            message="Fulfillment dispatch failed",
            order_id=order.id,
            metadata={"error": error, "retry_count": order.retry_count},
        )
        decision = await self.retry_scheduler.record_dispatch_failure(order, error)
        await self.db.commit()

        if not decision.applied:
            return DispatchOutcome(status="skipped", error=error)
        return DispatchOutcome(
            status="failed" if decision.terminal else "retry_scheduled",
            request_id=result.request_id,
            error=error,
        )
