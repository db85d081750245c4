"""
Tests for the Stripe payment gateway adapter
"""
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from core.exceptions import ExternalServiceException
from services.payment_gateway import (
    GatewayPaymentStatus,
    PaymentReference,
    StripePaymentGateway,
    map_checkout_session_status,
    map_payment_intent_status,
)


class TestStatusMapping:

    @pytest.mark.parametrize("stripe_status, expected", [
        ("succeeded", GatewayPaymentStatus.SUCCEEDED),
        ("processing", GatewayPaymentStatus.PENDING),
        ("requires_payment_method", GatewayPaymentStatus.PENDING),
        ("requires_something_new", GatewayPaymentStatus.PENDING),
        ("canceled", GatewayPaymentStatus.CANCELED),
        ("mystery", GatewayPaymentStatus.FAILED),
        (None, GatewayPaymentStatus.FAILED),
    ])
    def test_payment_intent_status(self, stripe_status, expected):
        assert map_payment_intent_status(stripe_status) == expected

    def test_checkout_session_status(self):
        assert map_checkout_session_status("paid", "complete") == GatewayPaymentStatus.SUCCEEDED
        assert map_checkout_session_status("no_payment_required", "complete") == GatewayPaymentStatus.SUCCEEDED
        assert map_checkout_session_status("unpaid", "expired") == GatewayPaymentStatus.CANCELED
        assert map_checkout_session_status("unpaid", "open") == GatewayPaymentStatus.PENDING


class TestStripePaymentGateway:

    @pytest.fixture
    def gateway(self):
        return StripePaymentGateway(api_key="sk_test_123", timeout=5)

    @pytest.mark.asyncio
    async def test_payment_intent_lookup(self, gateway):
        intent = SimpleNamespace(id="pi_123", status="succeeded", amount=5000, currency="usd")

        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent) as mock_retrieve:
            payment = await gateway.get_payment_status(PaymentReference.payment_intent("pi_123"))

        assert payment.status == GatewayPaymentStatus.SUCCEEDED
        assert payment.amount_cents == 5000
        assert payment.payment_intent_id == "pi_123"
        mock_retrieve.assert_called_once_with("pi_123", api_key="sk_test_123")

    @pytest.mark.asyncio
    async def test_checkout_session_lookup(self, gateway, monkeypatch):
        def fake_retrieve(session_id, **params):
            return SimpleNamespace(
                id=session_id, payment_status="paid", status="complete",
                amount_total=2599, currency="usd", payment_intent="pi_from_session",
            )

        monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

        payment = await gateway.get_payment_status(PaymentReference.session("cs_123"))

        assert payment.status == GatewayPaymentStatus.SUCCEEDED
        assert payment.amount_cents == 2599
        assert payment.payment_intent_id == "pi_from_session"

    @pytest.mark.asyncio
    async def test_stripe_errors_become_external_service_errors(self, gateway, monkeypatch):
        def fake_retrieve(intent_id, **params):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

        with pytest.raises(ExternalServiceException) as exc_info:
            await gateway.get_payment_status(PaymentReference.payment_intent("pi_123"))
        assert exc_info.value.service == "stripe"

    @pytest.mark.asyncio
    async def test_slow_lookup_times_out(self, monkeypatch):
        def fake_retrieve(intent_id, **params):
            time.sleep(0.3)
            return SimpleNamespace(id=intent_id, status="succeeded", amount=100, currency="usd")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
        gateway = StripePaymentGateway(api_key="sk_test_123", timeout=0.05)

        with pytest.raises(ExternalServiceException) as exc_info:
            await gateway.get_payment_status(PaymentReference.payment_intent("pi_slow"))
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_only_payment_intents_can_be_cancelled(self, gateway):
        with pytest.raises(ExternalServiceException):
            await gateway.cancel(PaymentReference.session("cs_123"))
