"""
Tests for payment verification against the gateway
"""
import pytest

from core.exceptions import ExternalServiceException, ValidationException
from models.orders import OrderStatus, PaymentStatus
from schemas.pipeline import BulkVerificationItem, DiscrepancyKind, VerificationOutcome
from services.payment_gateway import (
    GatewayPayment,
    GatewayPaymentStatus,
    PaymentReference,
)
from services.payment_verification import PaymentVerifier, amount_to_cents
from tests.helpers import audit_actions, reload


@pytest.fixture
def verifier(db_session, gateway, sleep):
    return PaymentVerifier(db_session, gateway, sleep=sleep, amount_tolerance_cents=1)


def intent_payment(intent_id, status=GatewayPaymentStatus.SUCCEEDED, amount_cents=None):
    return GatewayPayment(
        reference=PaymentReference.payment_intent(intent_id),
        status=status,
        amount_cents=amount_cents,
        currency="usd",
        payment_intent_id=intent_id,
    )


class TestAmountToCents:

    def test_rounds_half_up(self):
        assert amount_to_cents(19.99) == 1999
        assert amount_to_cents(0.285) == 29
        assert amount_to_cents(None) == 0


class TestVerify:

    @pytest.mark.asyncio
    async def test_succeeded_payment_corrects_pending_order(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_recover", total_amount=50.0)
        gateway.queue(intent_payment("pi_recover", amount_cents=5000))

        result = await verifier.verify(payment_intent_id="pi_recover", max_attempts=3, delays=(0,))

        assert result.outcome == VerificationOutcome.SUCCEEDED
        assert result.corrected is True
        assert result.order_id == order.id
        assert result.attempts == 1
        assert result.discrepancies == []

        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.payment_status == PaymentStatus.SUCCEEDED
        assert await audit_actions(db_session, order.id) == ["verification_recovered"]

    @pytest.mark.asyncio
    async def test_repeated_verification_is_a_no_op(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_twice")
        gateway.queue(GatewayPaymentStatus.SUCCEEDED)

        first = await verifier.verify(payment_intent_id="pi_twice", delays=(0,))
        second = await verifier.verify(payment_intent_id="pi_twice", delays=(0,))

        assert first.corrected is True
        assert second.corrected is False
        assert second.outcome == VerificationOutcome.SUCCEEDED
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PROCESSING
        actions = await audit_actions(db_session, order.id)
        assert sorted(actions) == ["payment_verified", "verification_recovered"]

    @pytest.mark.asyncio
    async def test_polls_until_terminal(self, make_order, gateway, sleep, verifier):
        await make_order(stripe_payment_intent_id="pi_slow")
        gateway.queue(GatewayPaymentStatus.PENDING, GatewayPaymentStatus.SUCCEEDED)

        result = await verifier.verify(payment_intent_id="pi_slow", max_attempts=3, delays=(0, 5, 15))

        assert result.outcome == VerificationOutcome.SUCCEEDED
        assert result.attempts == 2
        assert sleep.calls == [5]

    @pytest.mark.asyncio
    async def test_still_pending_after_all_attempts_times_out(
        self, db_session, make_order, gateway, sleep, verifier
    ):
        order = await make_order(stripe_payment_intent_id="pi_stuck")
        gateway.queue(GatewayPaymentStatus.PENDING)

        result = await verifier.verify(payment_intent_id="pi_stuck", max_attempts=3, delays=(0, 5, 15))

        assert result.outcome == VerificationOutcome.FAILED
        assert result.error == "verification timeout"
        assert result.attempts == 3
        assert sleep.calls == [5, 15]
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PENDING
        assert stored.payment_status == PaymentStatus.PENDING
        assert await audit_actions(db_session, order.id) == ["verification_timeout"]

    @pytest.mark.asyncio
    async def test_unknown_reference_is_treated_as_pending(self, gateway, verifier):
        gateway.queue(GatewayPaymentStatus.SUCCEEDED)

        result = await verifier.verify(payment_intent_id="pi_nobody", max_attempts=2, delays=(0,))

        assert result.outcome == VerificationOutcome.FAILED
        assert result.order_found is False
        assert result.error == "verification timeout"
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_missing_reference_is_rejected(self, verifier):
        with pytest.raises(ValidationException):
            await verifier.verify()

    @pytest.mark.asyncio
    async def test_both_references_are_rejected(self, gateway, verifier):
        with pytest.raises(ValidationException):
            await verifier.verify(session_id="cs_both", payment_intent_id="pi_both")
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_gateway_errors_are_retried(self, make_order, gateway, verifier):
        await make_order(stripe_payment_intent_id="pi_flaky")
        gateway.queue(
            ExternalServiceException(message="Stripe request timed out", service="stripe"),
            GatewayPaymentStatus.SUCCEEDED,
        )

        result = await verifier.verify(payment_intent_id="pi_flaky", max_attempts=3, delays=(0,))

        assert result.outcome == VerificationOutcome.SUCCEEDED
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_failed_payment_makes_the_order_terminal(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_declined")
        gateway.queue(GatewayPaymentStatus.FAILED)

        result = await verifier.verify(payment_intent_id="pi_declined", delays=(0,))

        assert result.outcome == VerificationOutcome.FAILED
        assert result.error == "payment failed"
        stored = await reload(db_session, order)
        assert stored.payment_status == PaymentStatus.FAILED
        assert stored.status == OrderStatus.FAILED
        assert await audit_actions(db_session, order.id) == ["payment_failed"]

    @pytest.mark.asyncio
    async def test_canceled_payment_is_reported_not_corrected(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_canceled")
        gateway.queue(GatewayPaymentStatus.CANCELED)

        result = await verifier.verify(payment_intent_id="pi_canceled", delays=(0,))

        assert result.outcome == VerificationOutcome.CANCELED
        assert [d.kind for d in result.discrepancies] == [DiscrepancyKind.STATUS_MISMATCH]
        assert (await reload(db_session, order)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_reported_but_payment_is_recorded(
        self, db_session, make_order, gateway, verifier
    ):
        order = await make_order(stripe_payment_intent_id="pi_short", total_amount=50.0)
        gateway.queue(intent_payment("pi_short", amount_cents=5005))

        result = await verifier.verify(payment_intent_id="pi_short", delays=(0,))

        assert result.outcome == VerificationOutcome.SUCCEEDED
        assert result.corrected is True
        assert len(result.discrepancies) == 1
        discrepancy = result.discrepancies[0]
        assert discrepancy.kind == DiscrepancyKind.AMOUNT_MISMATCH
        assert discrepancy.stored_amount_cents == 5000
        assert discrepancy.gateway_amount_cents == 5005

        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.payment_status == PaymentStatus.SUCCEEDED
        assert stored.total_amount == 50.0
        assert await audit_actions(db_session, order.id) == ["verification_recovered"]

    @pytest.mark.asyncio
    async def test_declined_verification_failed_order_is_failed(self, db_session, make_order, gateway, verifier):
        order = await make_order(
            stripe_payment_intent_id="pi_declined_late",
            status=OrderStatus.PAYMENT_VERIFICATION_FAILED,
        )
        gateway.queue(GatewayPaymentStatus.FAILED)

        await verifier.verify(payment_intent_id="pi_declined_late", delays=(0,))

        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.FAILED
        assert stored.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_amount_within_tolerance_is_accepted(self, make_order, gateway, verifier):
        await make_order(stripe_payment_intent_id="pi_penny", total_amount=50.0)
        gateway.queue(intent_payment("pi_penny", amount_cents=5001))

        result = await verifier.verify(payment_intent_id="pi_penny", delays=(0,))

        assert result.corrected is True
        assert result.discrepancies == []

    @pytest.mark.asyncio
    async def test_succeeded_payment_status_never_regresses(self, db_session, make_order, gateway, verifier):
        order = await make_order(
            stripe_payment_intent_id="pi_paid",
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.SUCCEEDED,
        )
        gateway.queue(GatewayPaymentStatus.FAILED)

        result = await verifier.verify(payment_intent_id="pi_paid", delays=(0,))

        assert result.outcome == VerificationOutcome.FAILED
        assert [d.kind for d in result.discrepancies] == [DiscrepancyKind.STATUS_MISMATCH]
        assert (await reload(db_session, order)).payment_status == PaymentStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_session_lookup_falls_back_to_payment_intent(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_behind_session", stripe_session_id=None)
        gateway.queue(GatewayPayment(
            reference=PaymentReference.session("cs_checkout"),
            status=GatewayPaymentStatus.SUCCEEDED,
            payment_intent_id="pi_behind_session",
        ))

        result = await verifier.verify(session_id="cs_checkout", delays=(0,))

        assert result.order_id == order.id
        assert result.corrected is True

    @pytest.mark.asyncio
    async def test_cancelled_order_with_late_payment_is_flagged(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_late", status=OrderStatus.CANCELLED)
        gateway.queue(GatewayPaymentStatus.SUCCEEDED)

        result = await verifier.verify(payment_intent_id="pi_late", delays=(0,))

        assert result.corrected is False
        assert [d.kind for d in result.discrepancies] == [DiscrepancyKind.STATUS_MISMATCH]
        assert (await reload(db_session, order)).payment_status == PaymentStatus.PENDING


class TestSingleChecks:

    @pytest.mark.asyncio
    async def test_quick_verification_makes_one_attempt(self, make_order, gateway, sleep, verifier):
        await make_order(stripe_payment_intent_id="pi_quick")
        gateway.queue(GatewayPaymentStatus.PENDING)

        result = await verifier.quick_verification(payment_intent_id="pi_quick")

        assert result.outcome == VerificationOutcome.FAILED
        assert result.error == "verification timeout"
        assert result.attempts == 1
        assert len(gateway.calls) == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_reconcile_order_records_pending_payment(self, db_session, make_order, gateway, verifier):
        order = await make_order(stripe_payment_intent_id="pi_known")
        gateway.queue(GatewayPaymentStatus.PENDING)

        result = await verifier.reconcile_order(order)

        assert result.outcome == VerificationOutcome.PENDING
        assert result.corrected is False
        assert (await reload(db_session, order)).payment_status == PaymentStatus.PENDING
        assert await audit_actions(db_session, order.id) == ["payment_pending"]

    @pytest.mark.asyncio
    async def test_reconcile_order_needs_a_reference(self, make_order, verifier):
        order = await make_order(stripe_payment_intent_id=None, stripe_session_id=None)

        with pytest.raises(ValidationException):
            await verifier.reconcile_order(order)


class TestBulkVerification:

    @pytest.mark.asyncio
    async def test_each_item_is_checked_once_with_a_pause(self, make_order, gateway, sleep, verifier):
        from core.config import settings

        order = await make_order(stripe_payment_intent_id="pi_bulk")
        gateway.queue(GatewayPaymentStatus.SUCCEEDED)

        results = await verifier.bulk_verification([
            BulkVerificationItem(order_id=order.id, payment_intent_id="pi_bulk"),
            BulkVerificationItem(),
        ])

        assert [r.order_id for r in results] == [order.id, None]
        assert results[0].result.outcome == VerificationOutcome.SUCCEEDED
        assert results[0].result.attempts == 1
        assert results[1].result.outcome == VerificationOutcome.FAILED
        assert "required" in results[1].result.error
        assert sleep.calls == [settings.BULK_VERIFICATION_DELAY_SECONDS]

    @pytest.mark.asyncio
    async def test_item_with_both_references_checks_the_session(self, make_order, gateway, verifier):
        order = await make_order(stripe_session_id="cs_both", stripe_payment_intent_id="pi_both")
        gateway.queue(GatewayPaymentStatus.SUCCEEDED)

        (item,) = await verifier.bulk_verification([
            BulkVerificationItem(order_id=order.id, session_id="cs_both", payment_intent_id="pi_both"),
        ])

        assert item.result.outcome == VerificationOutcome.SUCCEEDED
        assert item.result.order_id == order.id
        assert gateway.calls == [PaymentReference.session("cs_both")]
