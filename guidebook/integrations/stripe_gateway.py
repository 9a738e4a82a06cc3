"""Stripe-backed PaymentGateway."""

from __future__ import annotations

import logging
from typing import Any, Dict

import stripe

from ..core.exceptions import (
    AuthorizationDeclinedException,
    ProcessorUnavailableException,
    RefundFailedException,
    ServiceException,
)
from .payment_gateway import (
    PaymentIntentRequest,
    PaymentIntentResult,
    RefundResult,
    normalize_intent_status,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    value = getattr(obj, key, None)
    if value is None and hasattr(obj, "get"):
        value = obj.get(key)
    return default if value is None else value


class StripePaymentGateway:
    """
    Creates confirmed PaymentIntents with an explicit idempotency key.

    Network retries are disabled at the SDK level; the orchestrator owns
    retry policy so every retry demonstrably reuses the original key.
    """

    name = "stripe"

    def __init__(self, api_key: str):
        if not api_key:
            raise ServiceException("Stripe secret key is not configured", code="STRIPE_NOT_CONFIGURED")
        stripe.api_key = api_key
        stripe.max_network_retries = 0

    def _to_result(self, pi: Any) -> PaymentIntentResult:
        return PaymentIntentResult(
            intent_id=str(_get(pi, "id")),
            status=normalize_intent_status(_get(pi, "status")),
            client_secret=_get(pi, "client_secret"),
            amount_cents=_get(pi, "amount"),
        )

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        params: Dict[str, Any] = {
            "amount": request.amount_cents,
            "currency": request.currency,
            "metadata": {**request.metadata, "platform": "guidebook"},
            "capture_method": "automatic" if request.capture else "manual",
        }
        if request.payment_method_ref:
            params["payment_method"] = request.payment_method_ref
            params["confirm"] = True
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        if request.billing_details and request.billing_details.email:
            params["receipt_email"] = request.billing_details.email

        try:
            pi = stripe.PaymentIntent.create(**params, idempotency_key=request.idempotency_key)
        except stripe.CardError as e:
            logger.info(
                "stripe_card_declined",
                extra={"idempotency_key": request.idempotency_key, "decline_code": e.code},
            )
            raise AuthorizationDeclinedException(e.user_message or None, decline_code=e.code)
        except _TRANSIENT_ERRORS as e:
            logger.warning(f"Stripe unavailable creating payment intent: {str(e)}")
            raise ProcessorUnavailableException(f"Payment processor unavailable: {str(e)}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating payment intent: {str(e)}")
            raise ServiceException(f"Failed to create payment intent: {str(e)}")

        result = self._to_result(pi)
        if request.payment_method_ref and _get(pi, "status") == "requires_payment_method":
            # Confirmation with the supplied method failed without a CardError
            raise AuthorizationDeclinedException()
        return result

    def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating refund for {intent_id}: {str(e)}")
            raise RefundFailedException(f"Failed to refund payment: {str(e)}")
        status = _get(refund, "status", "succeeded")
        if status in ("failed", "canceled"):
            raise RefundFailedException(f"Refund {_get(refund, 'id')} ended in status {status}")
        return RefundResult(
            refund_id=str(_get(refund, "id")),
            amount_cents=int(_get(refund, "amount", amount_cents)),
            status=status,
        )

    def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        try:
            pi = stripe.PaymentIntent.retrieve(intent_id)
        except _TRANSIENT_ERRORS as e:
            raise ProcessorUnavailableException(f"Payment processor unavailable: {str(e)}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving payment intent: {str(e)}")
            raise ServiceException(f"Failed to retrieve payment intent: {str(e)}")
        return self._to_result(pi)

    def capture_intent(self, intent_id: str, amount_cents: int, idempotency_key: str) -> PaymentIntentResult:
        try:
            pi = stripe.PaymentIntent.capture(
                intent_id, amount_to_capture=amount_cents, idempotency_key=idempotency_key
            )
        except _TRANSIENT_ERRORS as e:
            raise ProcessorUnavailableException(f"Payment processor unavailable: {str(e)}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error capturing payment intent {intent_id}: {str(e)}")
            raise ServiceException(f"Failed to capture payment intent: {str(e)}")
        return self._to_result(pi)

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentResult:
        try:
            pi = stripe.PaymentIntent.cancel(intent_id, idempotency_key=idempotency_key)
        except _TRANSIENT_ERRORS as e:
            raise ProcessorUnavailableException(f"Payment processor unavailable: {str(e)}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error canceling payment intent {intent_id}: {str(e)}")
            raise ServiceException(f"Failed to cancel payment intent: {str(e)}")
        return self._to_result(pi)
