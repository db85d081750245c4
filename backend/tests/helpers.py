"""Fakes and small helpers shared by the pipeline tests"""
import itertools
from datetime import datetime, timedelta, timezone

from models import Order, OrderStatus, PaymentStatus
from services.audit import AuditService
from services.fulfillment_dispatcher import DispatchResult
from services.payment_gateway import GatewayPayment, GatewayPaymentStatus

_order_numbers = itertools.count(1)


class FakePaymentGateway:
    """
    Replays queued gateway answers. A queued GatewayPaymentStatus is wrapped
    into a GatewayPayment for the requested reference, exceptions are raised
    and the last answer repeats once the queue is down to one.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    async def get_payment_status(self, reference):
        self.calls.append(reference)
        if not self.responses:
            raise AssertionError(f"Unexpected gateway lookup for {reference.value}")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, GatewayPaymentStatus):
            return GatewayPayment(reference=reference, status=response)
        return response


class FakeFulfillmentDispatcher:
    """Records submissions; queued results are used first, then every submit succeeds"""

    def __init__(self, *results):
        self.results = list(results)
        self.submitted = []
        self.cancelled = []
        self.cancel_result = DispatchResult(success=True)

    async def submit(self, order_id):
        self.submitted.append(order_id)
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            n = len(self.submitted)
            result = DispatchResult(success=True, external_reference=f"zma-ref-{n}", request_id=f"req-{n}")
        return result

    async def cancel(self, reference):
        self.cancelled.append(reference)
        if isinstance(self.cancel_result, Exception):
            raise self.cancel_result
        return DispatchResult(
            success=self.cancel_result.success,
            request_id=reference,
            error=self.cancel_result.error,
        )


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def build_order(**overrides) -> Order:
    n = next(_order_numbers)
    values = dict(
        order_number=f"ORD-TEST-{n:05d}",
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        stripe_payment_intent_id=f"pi_test_{n}",
        subtotal=50.0,
        total_amount=50.0,
        items=[],
    )
    values.update(overrides)
    return Order(**values)


async def reload(db, order_or_id) -> Order:
    order_id = getattr(order_or_id, "id", order_or_id)
    return await db.get(Order, order_id, populate_existing=True)


async def audit_actions(db, order_id):
    return [entry.action for entry in await AuditService(db).list_for_order(order_id)]


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
