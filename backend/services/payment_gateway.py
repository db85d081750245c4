"""
Payment gateway collaborator.

The pipeline only needs the authoritative status and amount of a charge.
``StripePaymentGateway`` provides them from Stripe Checkout Sessions and
PaymentIntents; tests substitute any object with the same methods.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import stripe

from core.config import settings
from core.exceptions import ExternalServiceException

logger = logging.getLogger(__name__)


class PaymentReferenceKind(str, Enum):
    SESSION = "session"
    PAYMENT_INTENT = "payment_intent"


@dataclass(frozen=True)
class PaymentReference:
    kind: PaymentReferenceKind
    value: str

    @classmethod
    def session(cls, value: str) -> "PaymentReference":
        return cls(PaymentReferenceKind.SESSION, value)

    @classmethod
    def payment_intent(cls, value: str) -> "PaymentReference":
        return cls(PaymentReferenceKind.PAYMENT_INTENT, value)


class GatewayPaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class GatewayPayment:
    reference: PaymentReference
    status: GatewayPaymentStatus
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None


class PaymentGateway(Protocol):
    async def get_payment_status(self, reference: PaymentReference) -> GatewayPayment:
        ...


PAYMENT_INTENT_STATUS_MAP = {
    "requires_payment_method": GatewayPaymentStatus.PENDING,
    "requires_confirmation": GatewayPaymentStatus.PENDING,
    "requires_action": GatewayPaymentStatus.PENDING,
    "requires_capture": GatewayPaymentStatus.PENDING,
    "processing": GatewayPaymentStatus.PENDING,
    "succeeded": GatewayPaymentStatus.SUCCEEDED,
    "canceled": GatewayPaymentStatus.CANCELED,
}


def map_payment_intent_status(status: Optional[str]) -> GatewayPaymentStatus:
    if status in PAYMENT_INTENT_STATUS_MAP:
        return PAYMENT_INTENT_STATUS_MAP[status]
    if status and status.startswith("requires_"):
        return GatewayPaymentStatus.PENDING
    logger.warning(f"Unknown PaymentIntent status '{status}', treating as failed")
    return GatewayPaymentStatus.FAILED


def map_checkout_session_status(payment_status: Optional[str], status: Optional[str]) -> GatewayPaymentStatus:
    if payment_status in ("paid", "no_payment_required"):
        return GatewayPaymentStatus.SUCCEEDED
    if status == "expired":
        return GatewayPaymentStatus.CANCELED
    return GatewayPaymentStatus.PENDING


class StripePaymentGateway:
    """Stripe-backed PaymentGateway.

    The SDK is blocking, so each lookup runs in a worker thread bounded by
    ``timeout`` seconds. Stripe errors and timeouts surface as
    ExternalServiceException, which callers treat as transient.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.timeout = timeout if timeout is not None else settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ExternalServiceException(
                message=f"Stripe request timed out after {self.timeout}s", service="stripe"
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error: {e}")
            raise ExternalServiceException(message=f"Stripe error: {str(e)}", service="stripe")

    async def get_payment_status(self, reference: PaymentReference) -> GatewayPayment:
        if reference.kind == PaymentReferenceKind.SESSION:
            session = await self._call(stripe.checkout.Session.retrieve, reference.value)
            return GatewayPayment(
                reference=reference,
                status=map_checkout_session_status(
                    getattr(session, "payment_status", None), getattr(session, "status", None)
                ),
                amount_cents=getattr(session, "amount_total", None),
                currency=getattr(session, "currency", None),
                payment_intent_id=_intent_id(getattr(session, "payment_intent", None)),
            )

        intent = await self._call(stripe.PaymentIntent.retrieve, reference.value)
        return GatewayPayment(
            reference=reference,
            status=map_payment_intent_status(getattr(intent, "status", None)),
            amount_cents=getattr(intent, "amount", None),
            currency=getattr(intent, "currency", None),
            payment_intent_id=getattr(intent, "id", reference.value),
        )

    async def cancel(self, reference: PaymentReference) -> bool:
        if reference.kind != PaymentReferenceKind.PAYMENT_INTENT:
            raise ExternalServiceException(
                message="Only payment intents can be cancelled", service="stripe"
            )
        intent = await self._call(stripe.PaymentIntent.cancel, reference.value)
        return getattr(intent, "status", None) == "canceled"


def _intent_id(value) -> Optional[str]:
    # Checkout returns either the id or an expanded PaymentIntent
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)
