"""Payment processor adapters."""

from typing import Optional

from ..core.config import Settings, settings as default_settings
from .http_gateway import HttpIntentGateway
from .payment_gateway import (
    BillingDetails,
    PaymentGateway,
    PaymentIntentRequest,
    PaymentIntentResult,
    RefundResult,
    normalize_intent_status,
)
from .stripe_gateway import StripePaymentGateway


def build_payment_gateway(config: Optional[Settings] = None) -> PaymentGateway:
    """Instantiate the gateway selected by ``PAYMENT_GATEWAY``."""
    config = config or default_settings
    if config.payment_gateway == "http":
        return HttpIntentGateway(
            intent_endpoints=config.payment_intent_endpoints,
            refund_endpoint=config.payment_refund_endpoint,
            intent_lookup_endpoint=config.payment_intent_lookup_endpoint,
            intent_action_endpoint=config.payment_intent_action_endpoint,
            timeout=config.payment_timeout_seconds,
        )
    return StripePaymentGateway(config.stripe_secret_key.get_secret_value())


__all__ = [
    "BillingDetails",
    "HttpIntentGateway",
    "PaymentGateway",
    "PaymentIntentRequest",
    "PaymentIntentResult",
    "RefundResult",
    "StripePaymentGateway",
    "build_payment_gateway",
    "normalize_intent_status",
]
