"""
Payment verification: reconciles an order's stored payment state with the
payment gateway, which is the system of record for charges.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import APIException, ValidationException
from core.utils.logging import structured_logger
from models.orders import Order, OrderStatus, PaymentStatus
from schemas.pipeline import (
    BulkVerificationItem,
    BulkVerificationResult,
    Discrepancy,
    DiscrepancyKind,
    PaymentVerificationResult,
    VerificationOutcome,
)
from services.audit import AuditService
from services.order_state import set_payment_status, transition_order
from services.payment_gateway import (
    GatewayPayment,
    GatewayPaymentStatus,
    PaymentGateway,
    PaymentReference,
    PaymentReferenceKind,
)

logger = logging.getLogger(__name__)

VERIFICATION_METHOD = "stripe_api"
VERIFICATION_TIMEOUT = "verification timeout"

# Statuses a recovered payment moves straight into processing from.
CORRECTABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_VERIFICATION_FAILED,
    OrderStatus.PROCESSING,
})

# Unpaid statuses a declined charge moves straight into failed from.
REJECTABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_VERIFICATION_FAILED,
})


def amount_to_cents(amount: float) -> int:
    return int((Decimal(str(amount or 0)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class _Evaluation:
    outcome: Optional[VerificationOutcome]
    action: str
    corrected: bool = False
    discrepancies: List[Discrepancy] = field(default_factory=list)
    error: Optional[str] = None


class PaymentVerifier:
    """
    Compares gateway state with the Order Store and repairs drift.

    A gateway ``succeeded`` for an order not yet marked paid is corrected
    with one conditional update; amount mismatches and impossible status
    combinations are only recorded as discrepancies for manual review.
    Every call appends exactly one audit entry.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        amount_tolerance_cents: Optional[int] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.sleep = sleep
        self.audit = AuditService(db)
        self.amount_tolerance_cents = (
            amount_tolerance_cents if amount_tolerance_cents is not None
            else settings.PAYMENT_AMOUNT_TOLERANCE_CENTS
        )

    async def verify(
        self,
        session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        delays: Optional[Sequence[float]] = None,
    ) -> PaymentVerificationResult:
        """
        Poll the gateway until a terminal state is seen or attempts run out.
        Exactly one of ``session_id`` or ``payment_intent_id`` must be given.

        ``delays[i]`` is slept before attempt ``i + 1``; the last delay is
        reused when there are more attempts than delays. Exhausting the
        attempts while still pending yields a ``failed`` result with error
        ``verification timeout`` and leaves the order untouched.
        """
        if not session_id and not payment_intent_id:
            raise ValidationException(message="Either session_id or payment_intent_id is required")
        if session_id and payment_intent_id:
            raise ValidationException(message="Pass only one of session_id or payment_intent_id")

        reference = (
            PaymentReference.session(session_id) if session_id
            else PaymentReference.payment_intent(payment_intent_id)
        )
        max_attempts = max_attempts or settings.PAYMENT_VERIFICATION_MAX_ATTEMPTS
        delays = tuple(delays if delays is not None else settings.PAYMENT_VERIFICATION_DELAYS_SECONDS) or (0,)

        order = None
        payment = None
        last_error = None
        for attempt in range(1, max_attempts + 1):
            delay = delays[min(attempt - 1, len(delays) - 1)]
            if delay:
                await self.sleep(delay)

            try:
                payment = await self.gateway.get_payment_status(reference)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Gateway lookup for {reference.value} failed on attempt {attempt}/{max_attempts}: {last_error}"
                )
                continue

            order = await self.find_order(reference, payment)
            if order is None:
                logger.info(f"No order found yet for {reference.value}, treating as pending")
                continue

            evaluation = await self._evaluate(order, payment)
            if evaluation.outcome is not None:
                return await self._finish(reference, order, payment, evaluation, attempt)

        return await self._finish_timeout(reference, order, payment, max_attempts, last_error)

    async def quick_verification(
        self, session_id: Optional[str] = None, payment_intent_id: Optional[str] = None
    ) -> PaymentVerificationResult:
        return await self.verify(session_id, payment_intent_id, max_attempts=1, delays=(0,))

    async def bulk_verification(
        self, items: Sequence[BulkVerificationItem]
    ) -> List[BulkVerificationResult]:
        """Quick-verify each item in turn, pausing briefly between gateway calls."""
        results = []
        for index, item in enumerate(items):
            if index > 0:
                await self.sleep(settings.BULK_VERIFICATION_DELAY_SECONDS)
            try:
                # Order rows carry both references; the checkout session is checked first.
                if item.session_id:
                    result = await self.quick_verification(session_id=item.session_id)
                else:
                    result = await self.quick_verification(payment_intent_id=item.payment_intent_id)
            except APIException as e:
                result = PaymentVerificationResult(
                    outcome=VerificationOutcome.FAILED, error=e.message
                )
            results.append(BulkVerificationResult(order_id=item.order_id, result=result))
        return results

    async def reconcile_order(self, order: Order) -> PaymentVerificationResult:
        """
        One-shot check of an already loaded order, as used by the sweeps.
        Gateway errors propagate to the caller.
        """
        if order.stripe_payment_intent_id:
            reference = PaymentReference.payment_intent(order.stripe_payment_intent_id)
        elif order.stripe_session_id:
            reference = PaymentReference.session(order.stripe_session_id)
        else:
            raise ValidationException(message=f"Order {order.order_number} has no payment reference")

        payment = await self.gateway.get_payment_status(reference)
        evaluation = await self._evaluate(order, payment)
        if evaluation.outcome is None and not evaluation.discrepancies:
            evaluation.action = "payment_pending"
        return await self._finish(reference, order, payment, evaluation, attempts=1)

    async def find_order(self, reference: PaymentReference, payment: Optional[GatewayPayment] = None) -> Optional[Order]:
        # Split children inherit the parent's references; only the parent is addressed.
        query = select(Order).where(Order.parent_order_id.is_(None))
        if reference.kind == PaymentReferenceKind.SESSION:
            found = await self._first(query.where(Order.stripe_session_id == reference.value))
            if found is None and payment is not None and payment.payment_intent_id:
                found = await self._first(
                    query.where(Order.stripe_payment_intent_id == payment.payment_intent_id)
                )
            return found
        return await self._first(query.where(Order.stripe_payment_intent_id == reference.value))

    async def _first(self, query) -> Optional[Order]:
        result = await self.db.execute(
            query.order_by(Order.created_at.asc()).limit(1).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def find_discrepancies(self, order: Order, payment: GatewayPayment) -> List[Discrepancy]:
        discrepancies = []
        stored_cents = amount_to_cents(order.total_amount)
        if payment.amount_cents is not None and abs(payment.amount_cents - stored_cents) > self.amount_tolerance_cents:
            discrepancies.append(self._discrepancy(order, payment, DiscrepancyKind.AMOUNT_MISMATCH))

        status_mismatch = (
            (payment.status == GatewayPaymentStatus.CANCELED and order.status != OrderStatus.CANCELLED)
            or (
                payment.status in (GatewayPaymentStatus.CANCELED, GatewayPaymentStatus.FAILED)
                and order.payment_status == PaymentStatus.SUCCEEDED
            )
            or (
                payment.status == GatewayPaymentStatus.SUCCEEDED
                and order.payment_status != PaymentStatus.SUCCEEDED
                and order.status.is_terminal
            )
        )
        if status_mismatch:
            discrepancies.append(self._discrepancy(order, payment, DiscrepancyKind.STATUS_MISMATCH))
        return discrepancies

    def _discrepancy(self, order: Order, payment: GatewayPayment, kind: DiscrepancyKind) -> Discrepancy:
        return Discrepancy(
            order_id=order.id,
            order_number=order.order_number,
            kind=kind,
            stored_amount_cents=amount_to_cents(order.total_amount),
            gateway_amount_cents=payment.amount_cents,
            stored_status=order.status.value,
            stored_payment_status=order.payment_status.value,
            gateway_status=payment.status.value,
        )

    async def _evaluate(self, order: Order, payment: GatewayPayment) -> _Evaluation:
        discrepancies = self.find_discrepancies(order, payment)
        action = "discrepancy_found" if discrepancies else "payment_verified"

        if payment.status == GatewayPaymentStatus.PENDING:
            return _Evaluation(outcome=None, action=action, discrepancies=discrepancies)

        if payment.status == GatewayPaymentStatus.CANCELED:
            return _Evaluation(
                outcome=VerificationOutcome.CANCELED, action=action,
                discrepancies=discrepancies, error="payment canceled",
            )

        if payment.status == GatewayPaymentStatus.FAILED:
            if order.payment_status == PaymentStatus.PENDING and await self._apply_rejection(order):
                action = "payment_failed"
            return _Evaluation(
                outcome=VerificationOutcome.FAILED, action=action,
                discrepancies=discrepancies, error="payment failed",
            )

        # Amount mismatches are reported but never block recording a charge.
        blocked = any(d.kind == DiscrepancyKind.STATUS_MISMATCH for d in discrepancies)
        corrected = False
        if order.payment_status != PaymentStatus.SUCCEEDED and not blocked:
            corrected = await self._apply_correction(order)
            if corrected:
                action = "verification_recovered"
        return _Evaluation(
            outcome=VerificationOutcome.SUCCEEDED, action=action,
            corrected=corrected, discrepancies=discrepancies,
        )

    async def _apply_rejection(self, order: Order) -> bool:
        # A declined charge is final; unpaid orders leave the reconcilable set.
        if order.status in REJECTABLE_STATUSES:
            return await transition_order(
                self.db, order, OrderStatus.FAILED,
                expected_status=order.status,
                extra_criteria=[Order.payment_status == PaymentStatus.PENDING],
                payment_status=PaymentStatus.FAILED,
            )
        return await set_payment_status(
            self.db, order, PaymentStatus.FAILED, expected_payment_status=PaymentStatus.PENDING
        )

    async def _apply_correction(self, order: Order) -> bool:
        observed = order.payment_status
        if order.status in CORRECTABLE_STATUSES:
            return await transition_order(
                self.db, order, OrderStatus.PROCESSING,
                expected_status=order.status,
                extra_criteria=[Order.payment_status == observed],
                payment_status=PaymentStatus.SUCCEEDED,
            )
        return await set_payment_status(
            self.db, order, PaymentStatus.SUCCEEDED, expected_payment_status=observed
        )

    async def _finish(
        self,
        reference: PaymentReference,
        order: Order,
        payment: GatewayPayment,
        evaluation: _Evaluation,
        attempts: int,
    ) -> PaymentVerificationResult:
        outcome = evaluation.outcome or VerificationOutcome.PENDING
        self.audit.record(
            action=evaluation.action,
            status=outcome.value,
            order_id=order.id,
            verification_method=VERIFICATION_METHOD,
            payment_reference=reference.value,
            error_details={"error": evaluation.error} if evaluation.error else None,
            metadata={
                "attempts": attempts,
                "gateway_status": payment.status.value,
                "gateway_amount_cents": payment.amount_cents,
                "corrected": evaluation.corrected,
                "discrepancies": [d.model_dump(mode="json") for d in evaluation.discrepancies],
            },
        )
        await self.db.commit()

        if evaluation.corrected:
            structured_logger.info(
                message="Payment verification recovered order",
                order_id=order.id,
                metadata={"reference": reference.value},
            )
        for discrepancy in evaluation.discrepancies:
            structured_logger.warning(
                message="Payment discrepancy found",
                order_id=order.id,
                metadata=discrepancy.model_dump(mode="json"),
            )

        return PaymentVerificationResult(
            outcome=outcome,
            order_id=order.id,
            order_found=True,
            payment_status=order.payment_status.value,
            order_status=order.status.value,
            gateway_status=payment.status.value,
            corrected=evaluation.corrected,
            discrepancies=evaluation.discrepancies,
            attempts=attempts,
            verification_method=VERIFICATION_METHOD,
            error=evaluation.error,
        )

    async def _finish_timeout(
        self,
        reference: PaymentReference,
        order: Optional[Order],
        payment: Optional[GatewayPayment],
        attempts: int,
        last_error: Optional[str],
    ) -> PaymentVerificationResult:
        self.audit.record(
            action="verification_timeout",
            status="failed",
            order_id=order.id if order else None,
            verification_method=VERIFICATION_METHOD,
            payment_reference=reference.value,
            error_details={"error": VERIFICATION_TIMEOUT, "last_error": last_error},
            metadata={
                "attempts": attempts,
                "gateway_status": payment.status.value if payment else None,
            },
        )
        await self.db.commit()
        structured_logger.warning(
            message="Payment verification timed out",
            order_id=order.id if order else None,
            metadata={"reference": reference.value, "attempts": attempts, "last_error": last_error},
        )
        return PaymentVerificationResult(
            outcome=VerificationOutcome.FAILED,
            order_id=order.id if order else None,
            order_found=order is not None,
            payment_status=order.payment_status.value if order else None,
            order_status=order.status.value if order else None,
            gateway_status=payment.status.value if payment else None,
            attempts=attempts,
            verification_method=VERIFICATION_METHOD,
            error=VERIFICATION_TIMEOUT,
        )
