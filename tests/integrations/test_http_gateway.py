import json

import httpx
import pytest

from guidebook.core.enums import PaymentRecordStatus
from guidebook.core.exceptions import (
    AuthorizationDeclinedException,
    ProcessorUnavailableException,
    RefundFailedException,
)
from guidebook.integrations.http_gateway import HttpIntentGateway
from guidebook.integrations.payment_gateway import BillingDetails, PaymentIntentRequest

PRIMARY = "https://payments.test/api/bookings/create-deposit-payment"
FALLBACK = "https://payments.test/api/create-payment-intent"
REFUNDS = "https://payments.test/api/refunds"
LOOKUP = "https://payments.test/api/payment-intents/{intent_id}"
ACTIONS = "https://payments.test/api/payment-intents/{intent_id}/{action}"


def _request(**overrides):
    params = dict(
        amount_cents=25000,
        currency="usd",
        booking_id="01J0000000000000000000BOOK",
        leg="deposit",
        idempotency_key="01J0000000000000000000BOOK:deposit:1",
    )
    params.update(overrides)
    return PaymentIntentRequest(**params)


def _gateway(handler, **kwargs):
    return HttpIntentGateway(
        intent_endpoints=[PRIMARY, FALLBACK],
        refund_endpoint=REFUNDS,
        intent_lookup_endpoint=LOOKUP,
        intent_action_endpoint=ACTIONS,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestCreatePaymentIntent:
    def test_primary_endpoint_answers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, json={"client_secret": "pi_123_secret_abc", "intent_id": "pi_123", "status": "succeeded"}
            )

        result = _gateway(handler).create_payment_intent(
            _request(billing_details=BillingDetails(email="ada@example.com", postal_code="94110"))
        )

        assert result.intent_id == "pi_123"
        assert result.status == PaymentRecordStatus.CAPTURED
        assert len(seen) == 1
        assert seen[0].headers["Idempotency-Key"] == "01J0000000000000000000BOOK:deposit:1"
        body = json.loads(seen[0].content)
        assert body["amount_cents"] == 25000
        assert body["metadata"] == {"booking_id": "01J0000000000000000000BOOK", "leg": "deposit"}
        assert body["billing_details"] == {"email": "ada@example.com", "address": {"postal_code": "94110"}}

    def test_falls_back_when_primary_fails(self):
        def handler(request):
            if str(request.url) == PRIMARY:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json={"clientSecret": "pi_456_secret_xyz", "status": "requires_action"})

        result = _gateway(handler).create_payment_intent(_request())

        assert result.intent_id == "pi_456"
        assert result.client_secret == "pi_456_secret_xyz"
        assert result.status == PaymentRecordStatus.INITIATED

    def test_falls_back_when_primary_unreachable(self):
        def handler(request):
            if str(request.url) == PRIMARY:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"payment_intent_id": "pi_789", "status": "requires_capture"})

        result = _gateway(handler).create_payment_intent(_request())

        assert result.intent_id == "pi_789"
        assert result.status == PaymentRecordStatus.AUTHORIZED

    def test_body_without_secret_or_id_is_skipped(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            if str(request.url) == PRIMARY:
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"id": "pi_999", "status": "succeeded"})

        result = _gateway(handler).create_payment_intent(_request())

        assert calls == [PRIMARY, FALLBACK]
        assert result.intent_id == "pi_999"

    def test_every_endpoint_failing_is_unavailable(self):
        def handler(request):
            return httpx.Response(503, text="maintenance")

        with pytest.raises(ProcessorUnavailableException) as exc_info:
            _gateway(handler).create_payment_intent(_request())

        assert exc_info.value.message == "Unable to initialize payment"

    def test_decline_stops_fallback(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(402, json={"message": "Card declined", "decline_code": "insufficient_funds"})

        with pytest.raises(AuthorizationDeclinedException) as exc_info:
            _gateway(handler).create_payment_intent(_request())

        assert calls == [PRIMARY]
        assert exc_info.value.details == {"decline_code": "insufficient_funds"}

    def test_requires_an_endpoint(self):
        with pytest.raises(ValueError):
            HttpIntentGateway(intent_endpoints=[])


class TestRefund:
    def test_refund_posts_with_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "re_1", "amount_cents": 12500})

        result = _gateway(handler).refund("pi_123", 12500, "key:refund:1")

        assert result.refund_id == "re_1"
        assert result.amount_cents == 12500
        assert seen[0].headers["Idempotency-Key"] == "key:refund:1"
        assert json.loads(seen[0].content) == {"intent_id": "pi_123", "amount_cents": 12500}

    def test_refund_error_status(self):
        def handler(request):
            return httpx.Response(500)

        with pytest.raises(RefundFailedException):
            _gateway(handler).refund("pi_123", 100, "key:refund:1")

    def test_refund_without_endpoint(self):
        gateway = HttpIntentGateway(intent_endpoints=[PRIMARY])

        with pytest.raises(RefundFailedException):
            gateway.refund("pi_123", 100, "key:refund:1")


class TestRetrieveIntent:
    def test_lookup_formats_url(self):
        def handler(request):
            assert str(request.url) == "https://payments.test/api/payment-intents/pi_123"
            return httpx.Response(200, json={"status": "succeeded", "amount": 25000})

        result = _gateway(handler).retrieve_intent("pi_123")

        assert result.intent_id == "pi_123"
        assert result.status == PaymentRecordStatus.CAPTURED
        assert result.amount_cents == 25000

    def test_lookup_failure_is_unavailable(self):
        def handler(request):
            return httpx.Response(502)

        with pytest.raises(ProcessorUnavailableException):
            _gateway(handler).retrieve_intent("pi_123")


class TestIntentActions:
    def test_capture_posts_amount_with_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "succeeded", "amount_cents": 15000})

        result = _gateway(handler).capture_intent("pi_123", 15000, "key:refund:1")

        assert str(seen[0].url) == "https://payments.test/api/payment-intents/pi_123/capture"
        assert seen[0].headers["Idempotency-Key"] == "key:refund:1"
        assert json.loads(seen[0].content) == {"amount_cents": 15000}
        assert result.intent_id == "pi_123"
        assert result.status == PaymentRecordStatus.CAPTURED

    def test_cancel_hits_cancel_action(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "canceled"})

        result = _gateway(handler).cancel_intent("pi_123", "key:refund:1")

        assert seen == ["https://payments.test/api/payment-intents/pi_123/cancel"]
        assert result.status == PaymentRecordStatus.FAILED

    def test_action_failure_is_unavailable(self):
        def handler(request):
            return httpx.Response(502)

        with pytest.raises(ProcessorUnavailableException):
            _gateway(handler).capture_intent("pi_123", 100, "key:capture")

    def test_action_without_endpoint(self):
        gateway = HttpIntentGateway(intent_endpoints=[PRIMARY])

        with pytest.raises(ProcessorUnavailableException):
            gateway.cancel_intent("pi_123", "key:refund:1")
